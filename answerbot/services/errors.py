from typing import Optional


class AnswerbotError(Exception):
    """Base error for the message-processing pipeline."""

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class AuthenticationError(AnswerbotError):
    """Bad or missing request signature or worker token."""


class ValidationError(AnswerbotError):
    """Malformed or incomplete payload."""


class DuplicateEvent(AnswerbotError):
    """Event already admitted inside the dedup window."""

    def __init__(self, dedup_key: str):
        self.dedup_key = dedup_key
        super().__init__(f"Duplicate event: {dedup_key}")


class UpstreamTimeout(AnswerbotError):
    """Answer generation exceeded the job budget."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Answer generation timed out after {timeout_seconds:.0f}s")


class UpstreamFailure(AnswerbotError):
    """Answer generation raised or returned nothing usable."""


class DeliveryFailure(AnswerbotError):
    """Chat platform could not be reached after retries."""


class QueueUnavailable(AnswerbotError):
    """Backing store for the job queue is unreachable."""


class DedupUnavailable(AnswerbotError):
    """Authoritative dedup store is unreachable."""


class SlackApiError(AnswerbotError):
    """Slack Web API call rejected; not worth retrying."""

    def __init__(self, method: str, error: str, status_code: Optional[int] = None):
        self.method = method
        self.error = error
        self.status_code = status_code
        super().__init__(f"Slack API {method} failed: {error}")


class SlackRateLimitedError(SlackApiError):
    """Slack rejected the call for rate limiting."""

    def __init__(self, method: str, retry_after: float, status_code: Optional[int] = 429):
        self.retry_after = retry_after
        super().__init__(method, "ratelimited", status_code)


class SlackTransientError(SlackApiError):
    """Network failure or server-side error talking to Slack."""
