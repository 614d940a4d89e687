"""
Session storage interface and implementations for resumable uploads.

Maps a caller-chosen upload key (usually a file fingerprint) to the last
known upload identity and acknowledged offset, so an interrupted upload
can resume across sessions.
"""

import json
import os
import sqlite3
from abc import ABC, abstractmethod
from threading import Lock
from typing import NamedTuple, Optional


class StoredUpload(NamedTuple):
    """Persisted state of one upload."""

    identity: str
    offset: int


class SessionStore(ABC):
    """Abstract interface for session storage implementations."""

    @abstractmethod
    def load(self, key: str) -> Optional[StoredUpload]:
        """
        Retrieve the stored upload for a key.

        Args:
            key: Upload key

        Returns:
            StoredUpload if found, None otherwise
        """
        pass

    @abstractmethod
    def save(self, key: str, identity: str, offset: int) -> None:
        """
        Store the identity and acknowledged offset for a key.

        Args:
            key: Upload key
            identity: Upload identity assigned by the server
            offset: Bytes acknowledged by the server
        """
        pass

    @abstractmethod
    def clear(self, key: str) -> None:
        """
        Remove the stored upload for a key.

        Args:
            key: Upload key
        """
        pass


class MemorySessionStore(SessionStore):
    """Session storage kept in process memory."""

    def __init__(self):
        self._data: dict[str, StoredUpload] = {}
        self._lock = Lock()

    def load(self, key: str) -> Optional[StoredUpload]:
        with self._lock:
            return self._data.get(key)

    def save(self, key: str, identity: str, offset: int) -> None:
        with self._lock:
            self._data[key] = StoredUpload(identity, offset)

    def clear(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class FileSessionStore(SessionStore):
    """
    File-based session storage using JSON.

    Stores upload identities and offsets in a JSON file for persistence
    across sessions.
    """

    def __init__(self, storage_path: str = ".tus_sessions.json"):
        """
        Initialize file-based session storage.

        Args:
            storage_path: Path to JSON file for storing sessions
        """
        self.storage_path = storage_path
        self._lock = Lock()
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        """Create storage file if it doesn't exist."""
        if not os.path.exists(self.storage_path):
            with open(self.storage_path, "w") as f:
                json.dump({}, f)

    def _load_data(self) -> dict:
        """Load data from storage file."""
        try:
            with open(self.storage_path) as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return {}

    def _save_data(self, data: dict):
        """Save data to storage file, replacing it atomically."""
        tmp_path = f"{self.storage_path}.tmp"
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.storage_path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load(self, key: str) -> Optional[StoredUpload]:
        """Retrieve stored upload for key."""
        with self._lock:
            entry = self._load_data().get(key)
        if not entry:
            return None
        return StoredUpload(entry["identity"], int(entry["offset"]))

    def save(self, key: str, identity: str, offset: int) -> None:
        """Store upload for key."""
        with self._lock:
            data = self._load_data()
            data[key] = {"identity": identity, "offset": offset}
            self._save_data(data)

    def clear(self, key: str) -> None:
        """Remove stored upload for key."""
        with self._lock:
            data = self._load_data()
            if key in data:
                del data[key]
                self._save_data(data)


class SQLiteSessionStore(SessionStore):
    """SQLite-based session storage."""

    def __init__(self, db_path: str = "tus_sessions.db"):
        """Initialize SQLite session storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                upload_key TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                upload_offset INTEGER DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        conn.commit()
        conn.close()

    def load(self, key: str) -> Optional[StoredUpload]:
        """Get stored upload."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        cursor = conn.execute(
            "SELECT identity, upload_offset FROM sessions WHERE upload_key = ?", (key,)
        )
        row = cursor.fetchone()
        conn.close()

        if row is None:
            return None

        return StoredUpload(row["identity"], row["upload_offset"])

    def save(self, key: str, identity: str, offset: int) -> None:
        """Insert or update the stored upload."""
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """
            INSERT INTO sessions (upload_key, identity, upload_offset, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(upload_key) DO UPDATE SET
                identity = excluded.identity,
                upload_offset = excluded.upload_offset,
                updated_at = excluded.updated_at
            """,
            (key, identity, offset),
        )
        conn.commit()
        conn.close()

    def clear(self, key: str) -> None:
        """Delete the stored upload."""
        conn = sqlite3.connect(self.db_path)
        conn.execute("DELETE FROM sessions WHERE upload_key = ?", (key,))
        conn.commit()
        conn.close()
