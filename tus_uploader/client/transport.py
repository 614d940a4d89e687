"""TUS protocol transport.

Sessions talk to the server only through a :class:`Transport`. The HTTP
implementation speaks TUS protocol version 1.0.0 as specified at
https://tus.io/protocols/resumable-upload.html
"""

import base64
import hashlib
import logging
import ssl
from abc import ABC, abstractmethod
from threading import Lock
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

from tus_uploader.exceptions import (
    CreateError,
    TransferError,
    UploadCancelled,
    UploadNotFound,
)

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Abstract interface for the requests an upload session performs."""

    @abstractmethod
    def create(
        self, endpoint: str, total_size: int, metadata: dict[str, str], headers: dict[str, str]
    ) -> str:
        """Create a new upload on the server.

        Returns:
            Identity of the new upload

        Raises:
            CreateError: If the server refuses the upload
        """
        pass

    @abstractmethod
    def send_chunk(self, identity: str, offset: int, data: bytes, headers: dict[str, str]) -> int:
        """Append data at offset.

        Returns:
            Offset acknowledged by the server

        Raises:
            TransferError: If the request fails
            UploadCancelled: If the request was cancelled while in flight
        """
        pass

    @abstractmethod
    def head(self, identity: str) -> int:
        """Get the offset the server has stored for an upload.

        Raises:
            UploadNotFound: If the server no longer knows the upload
            TransferError: If the request fails
        """
        pass

    @abstractmethod
    def cancel(self, identity: str) -> None:
        """Cancel the in-flight request for an upload (best-effort)."""
        pass

    @abstractmethod
    def terminate(self, identity: str) -> None:
        """Delete an upload from the server."""
        pass


class _InFlight:
    __slots__ = ("cancelled",)

    def __init__(self):
        self.cancelled = False


class HttpTransport(Transport):
    """TUS transport over ``urllib.request``.

    Version Handling:
        - Uses TUS version 1.0.0
        - Sends "Tus-Resumable: 1.0.0" header with all requests

    urllib cannot interrupt a blocking request, so :meth:`cancel` marks the
    in-flight PATCH and its result is discarded with :class:`UploadCancelled`
    once the response arrives. Use ``timeout`` to bound that wait.

    Example:
        >>> transport = HttpTransport(checksum=True, timeout=30)
        >>> url = transport.create("http://localhost:8080/files", 1024, {}, {})
        >>> transport.send_chunk(url, 0, b"...", {})
    """

    TUS_VERSION = "1.0.0"

    def __init__(
        self,
        checksum: bool = True,
        metadata_encoding: str = "utf-8",
        timeout: Optional[float] = None,
        verify_tls_cert: bool = True,
    ):
        """Initialize HTTP transport.

        Args:
            checksum: Send a SHA1 Upload-Checksum header with chunks (default: True)
            metadata_encoding: Encoding for metadata values (default: utf-8)
            timeout: Socket timeout in seconds (default: None)
            verify_tls_cert: Verify TLS certificates (default: True)
        """
        self.checksum = checksum
        self.metadata_encoding = metadata_encoding
        self.timeout = timeout
        self.verify_tls_cert = verify_tls_cert
        self._ssl_context = None
        if not verify_tls_cert:
            self._ssl_context = ssl.create_default_context()
            self._ssl_context.check_hostname = False
            self._ssl_context.verify_mode = ssl.CERT_NONE
        self._inflight: dict[str, _InFlight] = {}
        self._lock = Lock()

    def _open(self, req: Request):
        kwargs = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        if self._ssl_context is not None:
            kwargs["context"] = self._ssl_context
        return urlopen(req, **kwargs)

    def _headers(self, headers: dict[str, str], **extra: str) -> dict[str, str]:
        return {"Tus-Resumable": self.TUS_VERSION, **extra, **headers}

    def create(
        self, endpoint: str, total_size: int, metadata: dict[str, str], headers: dict[str, str]
    ) -> str:
        """Create a new upload on the server."""
        request_headers = self._headers(headers, **{"Upload-Length": str(total_size)})

        encoded_metadata = self.encode_metadata(metadata)
        if encoded_metadata:
            request_headers["Upload-Metadata"] = ",".join(encoded_metadata)

        try:
            req = Request(endpoint, headers=request_headers, method="POST")
            with self._open(req) as response:
                location = response.headers.get("Location")
                if not location:
                    raise CreateError("Server did not return Location header")

                # Handle relative URLs
                if not location.startswith("http"):
                    location = urljoin(endpoint, location)

                logger.debug(f"Created upload {location} ({total_size} bytes)")
                return location
        except HTTPError as e:
            raise CreateError(
                f"Failed to create upload: {e.reason}",
                status_code=e.code,
                response_content=e.read(),
            ) from e
        except (URLError, OSError, ValueError) as e:
            raise CreateError(f"Failed to create upload: {e}") from e

    def encode_metadata(self, metadata: dict[str, str]) -> list:
        """
        Encode metadata according to TUS protocol specification.

        Args:
            metadata: Dictionary of metadata key-value pairs

        Returns:
            List of encoded metadata strings
        """
        encoded_list = []
        for key, value in metadata.items():
            value_bytes = str(value).encode(self.metadata_encoding)
            encoded_value = base64.b64encode(value_bytes).decode("ascii")
            encoded_list.append(f"{key} {encoded_value}")

        return encoded_list

    def head(self, identity: str) -> int:
        """Get the current upload offset."""
        try:
            req = Request(identity, headers=self._headers({}), method="HEAD")
            with self._open(req) as response:
                offset = response.headers.get("Upload-Offset")
                if offset is None:
                    raise TransferError("Server did not return Upload-Offset header")
                return int(offset)
        except HTTPError as e:
            error_class = UploadNotFound if e.code in (404, 410) else TransferError
            raise error_class(
                f"Failed to get offset: {e.reason}",
                status_code=e.code,
                response_content=e.read(),
            ) from e
        except (URLError, OSError, ValueError) as e:
            raise TransferError(f"Failed to get offset: {e}") from e

    def send_chunk(self, identity: str, offset: int, data: bytes, headers: dict[str, str]) -> int:
        """Upload a chunk of data."""
        request_headers = self._headers(
            headers,
            **{
                "Upload-Offset": str(offset),
                "Content-Type": "application/offset+octet-stream",
                "Content-Length": str(len(data)),
            },
        )

        # Add checksum if enabled
        if self.checksum:
            checksum_bytes = hashlib.sha1(data).digest()
            checksum_b64 = base64.b64encode(checksum_bytes).decode("ascii")
            request_headers["Upload-Checksum"] = f"sha1 {checksum_b64}"

        inflight = _InFlight()
        with self._lock:
            self._inflight[identity] = inflight

        try:
            req = Request(identity, data=data, headers=request_headers, method="PATCH")
            with self._open(req) as response:
                new_offset = response.headers.get("Upload-Offset")
            if inflight.cancelled:
                raise UploadCancelled(f"Request at offset {offset} was cancelled")
            if new_offset is None:
                return offset + len(data)
            return int(new_offset)
        except HTTPError as e:
            if inflight.cancelled:
                raise UploadCancelled(f"Request at offset {offset} was cancelled") from e
            raise TransferError(
                f"Failed to upload chunk at offset {offset}: {e.reason}",
                status_code=e.code,
                response_content=e.read(),
            ) from e
        except (URLError, OSError, ValueError) as e:
            if inflight.cancelled:
                raise UploadCancelled(f"Request at offset {offset} was cancelled") from e
            raise TransferError(f"Failed to upload chunk at offset {offset}: {e}") from e
        finally:
            with self._lock:
                if self._inflight.get(identity) is inflight:
                    del self._inflight[identity]

    def cancel(self, identity: str) -> None:
        """Mark the in-flight request of an upload as cancelled."""
        with self._lock:
            inflight = self._inflight.get(identity)
            if inflight is not None:
                inflight.cancelled = True
                logger.debug(f"Cancelled in-flight request for {identity}")

    def terminate(self, identity: str) -> None:
        """Delete an upload from the server.

        A 404 response is ignored.

        Raises:
            TransferError: If deletion fails
        """
        try:
            req = Request(identity, headers=self._headers({}), method="DELETE")
            with self._open(req):
                pass
        except HTTPError as e:
            if e.code != 404:
                raise TransferError(
                    f"Failed to terminate upload: {e.reason}",
                    status_code=e.code,
                    response_content=e.read(),
                ) from e
        except (URLError, OSError, ValueError) as e:
            raise TransferError(f"Failed to terminate upload: {e}") from e
