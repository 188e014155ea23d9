"""
Error taxonomy for the negotiation engine.

Retryable errors leave the negotiation untouched and may be retried by the
caller. Invariant violations are fatal to the operation that raised them.
"""
from typing import Optional


class SchedulerError(Exception):
    """Base class for all engine errors"""


class RetryableError(SchedulerError):
    """Transient failure talking to an outside service"""

    retryable = True


class GatewayError(RetryableError):
    """Calendar or messaging gateway call failed or timed out"""

    def __init__(self, gateway: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{gateway} gateway error: {message}")
        self.gateway = gateway
        self.status_code = status_code


class GenerationError(RetryableError):
    """Text generation failed or produced an unusable body"""


class InvariantViolation(SchedulerError):
    """Operation would break a negotiation invariant"""

    retryable = False


class DraftNotFoundError(InvariantViolation):
    """No unsent draft exists for the negotiation"""


class InvalidTransitionError(InvariantViolation):
    """Status transition not allowed from the current status"""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot move negotiation from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class ThreadIdOverwriteError(InvariantViolation):
    """Thread id is already set and cannot be replaced"""


class NegotiationNotFoundError(SchedulerError):
    """No negotiation with the given id"""
