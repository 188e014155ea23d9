"""
Text generation client wrapper using Anthropic SDK
"""
import logging
from typing import Dict, Optional

from anthropic import APIConnectionError, APIError, APITimeoutError, AsyncAnthropic, RateLimitError

from meeting_scheduler.errors import GenerationError
from meeting_scheduler.prompt_templates import PromptTemplates

logger = logging.getLogger(__name__)


class TextGenerationClient:
    """Wrapper for Claude API interactions"""

    DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
    MAX_TOKENS = 1024
    TEMPERATURE = 0.7

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 timeout: float = 60, max_retries: int = 2):
        """
        Initialize Claude API client

        Args:
            api_key: Anthropic API key
            model: Model name (defaults to DEFAULT_MODEL)
            timeout: Request timeout in seconds
            max_retries: SDK-level retries for transient failures
        """
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY must be provided or set in environment")

        self.model = model or self.DEFAULT_MODEL
        self.client = AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=max_retries)

    async def generate(self, prompt_template: str, variables: Dict[str, str]) -> str:
        """
        Generate text from a prompt template

        Args:
            prompt_template: Template with {placeholders}
            variables: Values for the placeholders

        Returns:
            Generated text

        Raises:
            GenerationError: If the API call fails or returns no text
        """
        prompt = prompt_template.format(**variables)
        logger.debug(f"Prompt: {prompt[:200]}...")

        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=self.MAX_TOKENS,
                temperature=self.TEMPERATURE,
                system=PromptTemplates.SYSTEM_PROMPT,
                messages=[
                    {"role": "user", "content": prompt}
                ]
            )
        except RateLimitError as e:
            logger.error(f"Rate limit exceeded: {e}")
            raise GenerationError(f"Rate limited: {e}") from e
        except (APIConnectionError, APITimeoutError) as e:
            logger.error(f"Connection error to Claude API: {e}")
            raise GenerationError(f"Connection error: {e}") from e
        except APIError as e:
            logger.error(f"Claude API error: {e}")
            raise GenerationError(str(e)) from e

        text = "".join(block.text for block in message.content if getattr(block, "type", None) == "text").strip()
        if not text:
            raise GenerationError("Empty completion")

        tokens_used = message.usage.input_tokens + message.usage.output_tokens
        logger.info(f"Generated text: {len(text)} chars, {tokens_used} tokens")
        return text

    async def close(self):
        await self.client.close()
