"""Upload statistics tracking for TUS uploads."""

import time
from dataclasses import dataclass


@dataclass
class UploadStats:
    """Statistics for one upload attempt.

    Attributes:
        total_bytes: Total number of bytes to upload
        uploaded_bytes: Number of bytes acknowledged by the server so far
        resumed_from: Offset the attempt started at
        chunks_completed: Number of chunks acknowledged during this attempt
        requests_sent: Number of PATCH requests sent
        requests_failed: Number of PATCH requests that failed
        retries: Number of automatic retries
        start_time: Timestamp when the attempt started
    """

    total_bytes: int
    uploaded_bytes: int = 0
    resumed_from: int = 0
    chunks_completed: int = 0
    requests_sent: int = 0
    requests_failed: int = 0
    retries: int = 0
    start_time: float = 0.0

    def __post_init__(self):
        if self.start_time == 0.0:
            self.start_time = time.time()

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time in seconds."""
        return time.time() - self.start_time

    @property
    def upload_speed(self) -> float:
        """Get upload speed in bytes/second for this attempt."""
        if self.elapsed_time > 0:
            return (self.uploaded_bytes - self.resumed_from) / self.elapsed_time
        return 0.0

    @property
    def upload_speed_mbps(self) -> float:
        """Get upload speed in MB/second."""
        return self.upload_speed / (1024 * 1024)

    @property
    def progress_percent(self) -> float:
        """Get progress as percentage (0-100)."""
        if self.total_bytes > 0:
            return (self.uploaded_bytes / self.total_bytes) * 100
        return 0.0

    @property
    def eta_seconds(self) -> float:
        """Get estimated time to completion in seconds."""
        if self.upload_speed > 0:
            remaining_bytes = self.total_bytes - self.uploaded_bytes
            return remaining_bytes / self.upload_speed
        return 0.0
