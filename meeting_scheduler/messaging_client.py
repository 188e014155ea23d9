"""
Messaging Gateway Client

Sends email and SMS through the messaging gateway service.
"""
import logging
from typing import List, Optional

import httpx

from meeting_scheduler.models import SendEmailResult, SendSmsResult

logger = logging.getLogger(__name__)


class MessagingClient:
    """Client for the messaging gateway service"""

    def __init__(self, base_url: str, timeout: float = 30):
        """
        Initialize messaging gateway client.

        Args:
            base_url: Base URL of the messaging gateway
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    async def send_email(self, to_addresses: List[str], subject: str, body: str,
                         thread_id: Optional[str] = None) -> SendEmailResult:
        """
        Send an email.

        Args:
            to_addresses: Recipient addresses
            subject: Subject line, sent as-is
            body: Body text, sent as-is
            thread_id: Provider thread to reply in, if any

        Returns:
            SendEmailResult; success is False on any failure, timeouts included
        """
        try:
            logger.info(f"Sending email to {', '.join(to_addresses)}: {subject[:50]}")

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/email/send",
                    json={
                        "to": to_addresses,
                        "subject": subject,
                        "body": body,
                        "thread_id": thread_id,
                    }
                )
                response.raise_for_status()

                data = response.json()
                result = SendEmailResult(
                    success=bool(data.get("success")),
                    provider_thread_id=data.get("thread_id"),
                    provider_message_id=data.get("message_id"),
                    error=data.get("error"),
                )

                if result.success:
                    logger.info(f"Email sent, message_id: {result.provider_message_id}, thread_id: {result.provider_thread_id}")
                else:
                    logger.error(f"Email sending failed: {result.error}")

                return result

        except httpx.TimeoutException as e:
            logger.error(f"Timed out sending email: {e}")
            return SendEmailResult(success=False, error=f"timeout: {e}")
        except httpx.HTTPError as e:
            logger.error(f"HTTP error sending email: {e}")
            return SendEmailResult(success=False, error=str(e))
        except ValueError as e:
            logger.error(f"Invalid response from messaging gateway: {e}")
            return SendEmailResult(success=False, error=str(e))

    async def send_sms(self, to_number: str, body: str) -> SendSmsResult:
        """
        Send an SMS message.

        Args:
            to_number: Recipient phone number
            body: Message text

        Returns:
            SendSmsResult; success is False on any failure
        """
        try:
            logger.info(f"Sending SMS to {to_number}: {body[:50]}...")

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/sms/send",
                    json={"to": to_number, "message": body}
                )
                response.raise_for_status()
                data = response.json()
                return SendSmsResult(
                    success=bool(data.get("success")),
                    provider_message_id=data.get("message_id"),
                    error=data.get("error"),
                )

        except httpx.HTTPError as e:
            logger.error(f"HTTP error sending SMS: {e}")
            return SendSmsResult(success=False, error=str(e))
        except ValueError as e:
            logger.error(f"Invalid response from messaging gateway: {e}")
            return SendSmsResult(success=False, error=str(e))
