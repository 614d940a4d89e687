"""Upload configuration."""

import re
from urllib.parse import urlsplit
from dataclasses import dataclass, field
from typing import Optional

from tus_uploader.exceptions import ConfigError

DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class UploadConfig:
    """Settings for one upload.

    Attributes:
        endpoint: URL used to create a new upload
        chunk_size: Size of one chunk in bytes (default: 1MB)
        request_payload_size: Maximum bytes sent in one PATCH request; several
            chunks are coalesced into a request when this exceeds chunk_size
            (default: chunk_size)
        headers: Custom headers included in all requests
        metadata: Values sent to the server when (and only when) creating the upload
        checksum: Send a SHA1 Upload-Checksum with every PATCH (default: True)
        metadata_encoding: Encoding for metadata values (default: utf-8)
        max_retries: Automatic retries for a failed transfer (default: 0, disabled)
        retry_delay: Base delay between retries in seconds (default: 1.0)
        timeout: Socket timeout for requests in seconds (default: None)
        verify_tls_cert: Verify TLS certificates (default: True)
    """

    endpoint: str
    chunk_size: int = DEFAULT_CHUNK_SIZE
    request_payload_size: Optional[int] = None
    headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    checksum: bool = True
    metadata_encoding: str = "utf-8"
    max_retries: int = 0
    retry_delay: float = 1.0
    timeout: Optional[float] = None
    verify_tls_cert: bool = True

    def __post_init__(self):
        # Mappings are copied so later changes by the caller don't leak in
        object.__setattr__(self, "headers", dict(self.headers or {}))
        object.__setattr__(self, "metadata", dict(self.metadata or {}))
        if self.request_payload_size is None:
            object.__setattr__(self, "request_payload_size", self.chunk_size)

    def validate(self) -> None:
        """Check the configuration.

        Raises:
            ConfigError: If any setting is unusable
        """
        if not self.endpoint:
            raise ConfigError("tus: no endpoint provided")
        parts = urlsplit(self.endpoint)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigError(
                f"tus: endpoint must be an absolute http(s) URL, got {self.endpoint!r}"
            )
        if self.chunk_size < 1:
            raise ConfigError(f"chunk_size must be at least 1 byte, got {self.chunk_size}")
        if self.request_payload_size < self.chunk_size:
            raise ConfigError(
                f"request_payload_size ({self.request_payload_size}) "
                f"must not be smaller than chunk_size ({self.chunk_size})"
            )
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must not be negative, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay must not be negative, got {self.retry_delay}")
        for key in self.metadata:
            if re.search(r"^$|[\s,]+", str(key)):
                raise ConfigError(
                    f'Upload-metadata key "{key}" cannot be empty nor contain spaces or commas.'
                )
