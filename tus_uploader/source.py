"""
Byte sources for uploads.

A byte source exposes the total length of the data and reads arbitrary
byte ranges from it. Sessions never hold a file position of their own.
"""

import os
from abc import ABC, abstractmethod
from threading import Lock
from typing import IO, Any

from tus_uploader.exceptions import ConfigError, ReadError


class ByteSource(ABC):
    """Abstract interface for upload data."""

    @abstractmethod
    def length(self) -> int:
        """
        Get the total number of bytes to upload.

        Raises:
            ReadError: If the size cannot be determined
        """
        pass

    @abstractmethod
    def read(self, offset: int, max_bytes: int) -> bytes:
        """
        Read up to max_bytes starting at offset.

        Args:
            offset: Position of the first byte to read
            max_bytes: Maximum number of bytes to return

        Returns:
            The bytes read; shorter than max_bytes only at the end of the data

        Raises:
            ReadError: On I/O failure or if offset exceeds the length
        """
        pass

    def close(self) -> None:
        """Release any resource held by the source."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def _check_range(self, offset: int, max_bytes: int) -> None:
        if offset < 0 or max_bytes < 0:
            raise ReadError(f"Invalid read range: offset={offset}, max_bytes={max_bytes}")
        size = self.length()
        if offset > size:
            raise ReadError(f"Offset {offset} exceeds source length {size}")


class StreamByteSource(ByteSource):
    """
    Byte source backed by a seekable binary stream.

    The stream is not closed by the source unless it was opened by it.
    """

    def __init__(self, stream: IO, owns_stream: bool = False):
        self.stream = stream
        self._owns_stream = owns_stream
        self._lock = Lock()
        self._size = None

    def length(self) -> int:
        if self._size is None:
            with self._lock:
                try:
                    current_pos = self.stream.tell()
                    self.stream.seek(0, os.SEEK_END)
                    self._size = self.stream.tell()
                    self.stream.seek(current_pos)
                except (OSError, ValueError) as e:
                    raise ReadError(f"Cannot determine stream size: {e}") from e
        return self._size

    def read(self, offset: int, max_bytes: int) -> bytes:
        self._check_range(offset, max_bytes)
        with self._lock:
            try:
                self.stream.seek(offset)
                data = self.stream.read(max_bytes)
            except (OSError, ValueError) as e:
                raise ReadError(f"Failed to read {max_bytes} bytes at offset {offset}: {e}") from e
        if isinstance(data, str):
            data = data.encode("utf-8")
        return data

    def close(self) -> None:
        """Close the stream if we own it."""
        if self._owns_stream and not self.stream.closed:
            self.stream.close()


class FileByteSource(StreamByteSource):
    """Byte source reading from a file on disk."""

    def __init__(self, file_path: str):
        """
        Open a file for upload.

        Args:
            file_path: Path to the file

        Raises:
            ReadError: If the file doesn't exist or cannot be opened
        """
        self.file_path = os.fspath(file_path)
        if not os.path.isfile(self.file_path):
            raise ReadError(f"File not found: {self.file_path}")
        try:
            stream = open(self.file_path, "rb")  # noqa: SIM115
        except OSError as e:
            raise ReadError(f"Cannot open {self.file_path}: {e}") from e
        super().__init__(stream, owns_stream=True)


class MemoryByteSource(ByteSource):
    """Byte source over an in-memory buffer."""

    def __init__(self, data: bytes):
        self.data = bytes(data)

    def length(self) -> int:
        return len(self.data)

    def read(self, offset: int, max_bytes: int) -> bytes:
        self._check_range(offset, max_bytes)
        return self.data[offset : offset + max_bytes]


def open_source(file: Any) -> ByteSource:
    """
    Coerce a file reference into a byte source.

    Args:
        file: A ByteSource, a path, a binary stream or a bytes-like object

    Returns:
        ByteSource for the given file

    Raises:
        ConfigError: If no file was given or its type is not supported
        ReadError: If a path cannot be opened
    """
    if file is None or (isinstance(file, (str, bytes)) and not file):
        raise ConfigError("tus: no file or stream to upload provided")
    if isinstance(file, ByteSource):
        return file
    if isinstance(file, (str, os.PathLike)):
        return FileByteSource(file)
    if isinstance(file, (bytes, bytearray, memoryview)):
        return MemoryByteSource(file)
    if hasattr(file, "read") and hasattr(file, "seek"):
        return StreamByteSource(file)
    raise ConfigError(f"tus: unsupported file type {type(file).__name__}")
