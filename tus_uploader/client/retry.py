"""Retry policy for interrupted transfers."""

from typing import Optional

from tus_uploader.exceptions import (
    ProtocolViolation,
    TransferError,
    UploadNotFound,
)


class RetryPolicy:
    """Decide whether and when a failed transfer is attempted again.

    Delays grow exponentially: ``retry_delay * 2**attempt``. Only transfer
    errors that may succeed later are retried: network failures, server
    errors, and the 409/423/429 statuses a TUS server uses for conflicting
    or throttled requests. Protocol violations and expired uploads are not.

    Example:
        >>> policy = RetryPolicy(max_retries=3, retry_delay=0.5)
        >>> policy.delay_for(0)
        0.5
        >>> policy.delay_for(3) is None
        True
    """

    RETRYABLE_STATUS = (409, 423, 429)

    def __init__(self, max_retries: int = 0, retry_delay: float = 1.0):
        """Initialize retry policy.

        Args:
            max_retries: Maximum retry attempts (default: 0, disabled)
            retry_delay: Base delay between retry attempts in seconds (default: 1.0)
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def is_retryable(self, error: Exception) -> bool:
        """Check whether an error may go away on a later attempt."""
        if not isinstance(error, TransferError):
            return False
        if isinstance(error, (ProtocolViolation, UploadNotFound)):
            return False
        status = error.status_code
        return status is None or status >= 500 or status in self.RETRYABLE_STATUS

    def delay_for(self, attempt: int) -> Optional[float]:
        """Get the delay before retry number ``attempt`` (0-based).

        Returns:
            Delay in seconds, or None when retries are exhausted
        """
        if attempt >= self.max_retries:
            return None
        return self.retry_delay * (2**attempt)
