"""Resumable upload of one file."""

import dataclasses
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from threading import Lock
from typing import Any, Callable, Optional

from tus_uploader.client.events import EventRouter
from tus_uploader.client.session import SessionState, UploadSession
from tus_uploader.client.stats import UploadStats
from tus_uploader.client.transport import HttpTransport, Transport
from tus_uploader.config import UploadConfig
from tus_uploader.exceptions import (
    ConfigError,
    ReadError,
    TusUploadError,
    UploadCancelled,
)
from tus_uploader.fingerprint import Fingerprint
from tus_uploader.source import ByteSource, open_source
from tus_uploader.store import SessionStore

logger = logging.getLogger(__name__)

_executor_lock = Lock()
_default_executor: Optional[ThreadPoolExecutor] = None


def get_default_executor() -> ThreadPoolExecutor:
    """Get the worker pool shared by uploads that don't bring their own."""
    global _default_executor
    with _executor_lock:
        if _default_executor is None:
            _default_executor = ThreadPoolExecutor(
                max_workers=os.cpu_count() or 4, thread_name_prefix="tus-upload"
            )
        return _default_executor


class _UploadListener:
    """Adapts routed events to the callbacks of an Upload."""

    def __init__(self, upload: "Upload"):
        self._upload = upload

    def on_progress(self, event) -> None:
        self._upload._notify_progress(event.bytes_uploaded, event.bytes_total)

    def on_success(self, event) -> None:
        self._upload._notify_success(event.url)

    def on_error(self, event) -> None:
        self._upload._emit_error(event.cause)


class Upload:
    """A tus upload of one file.

    Every attempt runs on a worker of a thread pool; callbacks are invoked on
    that worker. Errors are reported through ``on_error``. When no
    ``on_error`` is registered they are raised instead: from the constructor
    for configuration errors, otherwise from the future returned by
    :meth:`start` (and from :meth:`wait`).

    Passing a ``store`` enables resuming across process restarts: the
    upload identity and acknowledged offset are saved after every chunk
    under ``store_key`` (by default the fingerprint of the file).

    Example:
        >>> upload = Upload(
        ...     "large_file.bin",
        ...     UploadConfig(
        ...         endpoint="http://localhost:8080/files",
        ...         metadata={"filename": "large_file.bin"},
        ...     ),
        ...     on_progress=lambda up, total: print(f"{up}/{total}"),
        ...     on_success=lambda url: print(f"Uploaded to {url}"),
        ...     store=FileSessionStore(),
        ... )
        >>> upload.start()
        >>> upload.abort()  # later start() resumes from the last acknowledged byte
    """

    def __init__(
        self,
        file: Any,
        config: UploadConfig,
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_success: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        *,
        transport: Optional[Transport] = None,
        store: Optional[SessionStore] = None,
        store_key: Optional[str] = None,
        router: Optional[EventRouter] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        fingerprinter: Optional[Fingerprint] = None,
    ):
        """Initialize upload.

        Args:
            file: Path, binary stream, bytes or ByteSource to upload
            config: Upload configuration
            on_progress: Optional callback function(bytes_uploaded, bytes_total)
            on_success: Optional callback function(url)
            on_error: Optional callback function(error)
            transport: Custom transport (defaults to HttpTransport built from config)
            store: Session store used to resume across restarts
            store_key: Key of this upload in the store (defaults to the fingerprint)
            router: Event router (defaults to the shared router)
            executor: Worker pool running attempts (defaults to a shared pool)
            fingerprinter: Custom fingerprint implementation

        Raises:
            ConfigError: If the configuration or file is missing or invalid
                and no on_error callback is registered
            ReadError: If the file cannot be read and no on_error callback
                is registered
        """
        self.file = file
        self.config = config
        self.on_progress = on_progress
        self.on_success = on_success
        self.on_error = on_error
        self.url: Optional[str] = None
        self.store = store
        self.store_key = store_key
        self.source: Optional[ByteSource] = None
        self.transport = transport

        self._executor = executor
        self._future: Optional[Future] = None
        self._restart: Optional[Future] = None
        self._lock = Lock()
        self._disposed = False
        self._session: Optional[UploadSession] = None
        self._setup_error: Optional[TusUploadError] = None
        self._owns_source = not isinstance(file, ByteSource)

        try:
            if config is None:
                raise ConfigError("tus: no upload configuration provided")
            config.validate()
            self.source = open_source(file)
            if self.transport is None:
                self.transport = HttpTransport(
                    checksum=config.checksum,
                    metadata_encoding=config.metadata_encoding,
                    timeout=config.timeout,
                    verify_tls_cert=config.verify_tls_cert,
                )

            restored = None
            if store is not None:
                if self.store_key is None:
                    self.store_key = (fingerprinter or Fingerprint()).get_fingerprint(self.source)
                restored = store.load(self.store_key)

            self._session = UploadSession(
                self.source,
                self.transport,
                config,
                store=store,
                key=self.store_key,
                router=router,
                listener=_UploadListener(self),
                restored=restored,
            )
        except (ConfigError, ReadError) as e:
            self._setup_error = e
            self._emit_error(e)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - abort and release the file."""
        self.dispose()

    @property
    def identity(self) -> Optional[str]:
        return self._session.identity if self._session else None

    @property
    def offset(self) -> int:
        return self._session.offset if self._session else 0

    @property
    def total_size(self) -> int:
        return self._session.total_size if self._session else 0

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    @property
    def stats(self) -> Optional[UploadStats]:
        """Get statistics of the current or last attempt (read-only copy)."""
        if self._session is None:
            return None
        return dataclasses.replace(self._session.stats)

    @property
    def is_running(self) -> bool:
        return self._future is not None and not self._future.done()

    def start(self) -> Optional[Future]:
        """Start or resume the upload.

        If an attempt is already running, no competing transfer is started
        and the running attempt's future is returned. If that attempt is
        being aborted, a new attempt is queued to resume once it has ended.

        Returns:
            Future resolving to the upload URL (None if the attempt was
            aborted or failed), or None if the upload cannot start
        """
        if self._session is None:
            self._emit_error(self._setup_error)
            return None

        with self._lock:
            if self._disposed:
                logger.debug("Upload was disposed, ignoring start()")
                return None
            executor = self._executor or get_default_executor()
            previous = self._future
            if previous is not None and not previous.done():
                if previous is self._restart or not self._session.aborting:
                    logger.debug(f"Upload {self.identity} is already running")
                    return previous
                logger.debug(f"Upload {self.identity} is aborting, resuming once it has stopped")
                self._future = self._restart = executor.submit(self._run_after, previous)
                return self._future
            self._future = executor.submit(self._run)
            return self._future

    def abort(self) -> bool:
        """Abort the currently running upload request and don't continue.

        You can resume the upload by calling :meth:`start` again.

        Returns:
            True if a running attempt is being aborted
        """
        if self._session is None:
            return False
        return self._session.abort()

    def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        """Wait for the current attempt to finish.

        Returns:
            Upload URL if the upload has completed, None otherwise

        Raises:
            TusUploadError: If the attempt failed and no on_error callback is registered
            concurrent.futures.TimeoutError: If the attempt didn't finish in time
        """
        future = self._future
        if future is None:
            return self.url
        return future.result(timeout)

    def terminate(self) -> bool:
        """Delete the upload from the server and forget it locally.

        Returns:
            True if the upload was terminated

        Raises:
            RuntimeError: If an attempt is running
        """
        if self._session is None:
            return False
        if self.is_running:
            raise RuntimeError("Cannot terminate a running upload, abort() and wait() first")

        identity = self._session.identity
        if identity is not None:
            try:
                self.transport.terminate(identity)
            except TusUploadError as e:
                self._emit_error(e)
                return False
            logger.info(f"Terminated upload {identity}")
        self._session.reset()
        self.url = None
        return True

    def dispose(self) -> None:
        """Abort any running attempt and release subscriptions and the file.

        The upload cannot be started again afterwards.
        """
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            future = self._future

        if self._session is not None:
            self._session.dispose()
        if self.source is not None and self._owns_source:
            if future is not None and not future.done():
                future.add_done_callback(lambda _: self.source.close())
            else:
                self.source.close()

    def _run(self) -> Optional[str]:
        try:
            self._session.run()
        except UploadCancelled:
            logger.info("Upload aborted before it was created")
        except Exception as e:
            self._emit_error(e)
        return self.url

    def _run_after(self, previous: Future) -> Optional[str]:
        wait_for_futures([previous])
        if self._disposed:
            return self.url
        return self._run()

    def _notify_progress(self, bytes_uploaded: int, bytes_total: int) -> None:
        if self.on_progress:
            self.on_progress(bytes_uploaded, bytes_total)

    def _notify_success(self, url: str) -> None:
        self.url = url
        if self.on_success:
            self.on_success(url)

    def _emit_error(self, error: Exception) -> None:
        if self.on_error:
            self.on_error(error)
        else:
            raise error
