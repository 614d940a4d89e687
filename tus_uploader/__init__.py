"""TUS Uploader

A Python client for the TUS resumable upload protocol. Uploads a file in
chunks, survives interruptions and process restarts, and resumes from the
last byte the server acknowledged.
"""

__version__ = "0.1.0"

from tus_uploader.client import (
    HttpTransport,
    SessionState,
    Transport,
    Upload,
    UploadSession,
    UploadStats,
)
from tus_uploader.config import UploadConfig
from tus_uploader.exceptions import (
    ConfigError,
    CreateError,
    ProtocolViolation,
    ReadError,
    TransferError,
    TusCommunicationError,
    TusUploadError,
    UploadCancelled,
    UploadNotFound,
)
from tus_uploader.fingerprint import Fingerprint
from tus_uploader.source import ByteSource, FileByteSource, MemoryByteSource, StreamByteSource
from tus_uploader.store import (
    FileSessionStore,
    MemorySessionStore,
    SessionStore,
    SQLiteSessionStore,
    StoredUpload,
)

__all__ = [
    "Upload",
    "UploadConfig",
    "UploadSession",
    "SessionState",
    "UploadStats",
    "Transport",
    "HttpTransport",
    "ByteSource",
    "FileByteSource",
    "StreamByteSource",
    "MemoryByteSource",
    "SessionStore",
    "MemorySessionStore",
    "FileSessionStore",
    "SQLiteSessionStore",
    "StoredUpload",
    "Fingerprint",
    "TusUploadError",
    "ConfigError",
    "ReadError",
    "UploadCancelled",
    "TusCommunicationError",
    "CreateError",
    "TransferError",
    "ProtocolViolation",
    "UploadNotFound",
]
