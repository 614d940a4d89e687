"""Upload session state machine.

A session owns one upload's lifecycle on the server: creation, the chunked
transfer loop, resume and abort. It reports progress, success and errors as
events through an :class:`~tus_uploader.client.events.EventRouter`, keyed by
the upload identity.
"""

import logging
from enum import Enum
from threading import Event as ThreadEvent
from threading import Lock
from typing import Any, Optional

from tus_uploader.client.events import (
    ErrorEvent,
    EventRouter,
    ProgressEvent,
    SubscriptionSet,
    SuccessEvent,
    default_router,
)
from tus_uploader.client.retry import RetryPolicy
from tus_uploader.client.stats import UploadStats
from tus_uploader.client.transport import Transport
from tus_uploader.config import UploadConfig
from tus_uploader.exceptions import (
    CreateError,
    ProtocolViolation,
    ReadError,
    TransferError,
    TusUploadError,
    UploadCancelled,
    UploadNotFound,
)
from tus_uploader.source import ByteSource
from tus_uploader.store import SessionStore, StoredUpload

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    CREATING = "creating"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTING = "aborting"


ACTIVE_STATES = (SessionState.CREATING, SessionState.TRANSFERRING, SessionState.ABORTING)


class UploadSession:
    """Runtime state of one resumable upload.

    The session is driven by :meth:`run`, which performs one attempt on the
    calling thread: create the upload if it has no identity yet, re-sync the
    offset with the server when resuming, then send the remaining bytes.
    :meth:`abort` may be called from any other thread while an attempt runs.

    Offset and identity are only written by the thread running the attempt.
    State transitions and the ``aborting`` flag are guarded by a lock.

    State transitions:
        IDLE/FAILED -> CREATING -> TRANSFERRING -> COMPLETED
        IDLE/FAILED -> TRANSFERRING (resume, identity already known)
        CREATING/TRANSFERRING -> FAILED (creation clears the identity)
        CREATING/TRANSFERRING -> ABORTING -> IDLE (offset kept)
    """

    def __init__(
        self,
        source: ByteSource,
        transport: Transport,
        config: UploadConfig,
        store: Optional[SessionStore] = None,
        key: Optional[str] = None,
        router: Optional[EventRouter] = None,
        listener: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
        restored: Optional[StoredUpload] = None,
    ):
        """Initialize upload session.

        Args:
            source: Data to upload
            transport: Transport used for all requests
            config: Upload configuration
            store: Optional session store for resuming across restarts
            key: Key of this upload in the store
            router: Event router (defaults to the shared router)
            listener: Object receiving routed events (on_progress, on_success, on_error)
            retry_policy: Retry policy (defaults to one built from config)
            restored: Identity and offset loaded from the store

        Raises:
            ReadError: If the source length cannot be determined
        """
        self.source = source
        self.transport = transport
        self.config = config
        self.store = store
        self.key = key
        self.router = router or default_router
        self.listener = listener
        self.retry_policy = retry_policy or RetryPolicy(config.max_retries, config.retry_delay)

        self.total_size = source.length()
        self.identity: Optional[str] = None
        self.offset = 0
        self.url: Optional[str] = None
        self.state = SessionState.IDLE
        self.aborting = False
        self.subscriptions: Optional[SubscriptionSet] = None
        self.stats = UploadStats(total_bytes=self.total_size)

        self._lock = Lock()
        self._wakeup = ThreadEvent()

        if restored is not None:
            if 0 <= restored.offset <= self.total_size:
                self.identity = restored.identity
                self.offset = restored.offset
                self.stats.uploaded_bytes = restored.offset
                logger.info(
                    f"Restored upload {restored.identity} at offset "
                    f"{restored.offset}/{self.total_size}"
                )
            else:
                logger.warning(
                    f"Ignoring stored upload {restored.identity}: offset {restored.offset} "
                    f"does not fit a source of {self.total_size} bytes"
                )

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def run(self) -> None:
        """Perform one upload attempt.

        Does nothing if an attempt is already running or the upload is
        complete.

        Raises:
            CreateError: If the upload could not be created; no event is
                emitted since there is no identity to route it by
            UploadCancelled: If aborted before creation finished
        """
        with self._lock:
            if self.state in ACTIVE_STATES:
                logger.debug(f"Attempt for {self.identity} already running")
                return
            if self.state is SessionState.COMPLETED:
                return
            self.aborting = False
            self._wakeup.clear()
            resuming = self.identity is not None
            self.state = SessionState.TRANSFERRING if resuming else SessionState.CREATING
            self.stats = UploadStats(
                total_bytes=self.total_size,
                uploaded_bytes=self.offset,
                resumed_from=self.offset,
            )

        try:
            if not resuming:
                self._create()
            self._subscribe()
            self._transfer(resync=resuming)
        except Exception as e:
            with self._lock:
                if self.state in (SessionState.CREATING, SessionState.TRANSFERRING):
                    logger.error(f"Upload {self.identity} failed at offset {self.offset}: {e!r}")
                    if self.state is SessionState.CREATING:
                        self.identity = None
                        self.offset = 0
                    self.state = SessionState.FAILED
            raise
        finally:
            self._unsubscribe()
            with self._lock:
                if self.state is SessionState.ABORTING:
                    self.state = SessionState.IDLE
                self.aborting = False

    def abort(self) -> bool:
        """Stop the running attempt.

        The in-flight request is cancelled through the transport and no
        further chunks are read or sent. The acknowledged offset stays in
        the store, so a later :meth:`run` resumes.

        Returns:
            True if an abort was started, False if there was nothing to abort
        """
        with self._lock:
            if self.aborting or self.state not in (
                SessionState.CREATING,
                SessionState.TRANSFERRING,
            ):
                return False
            self.aborting = True
            self.state = SessionState.ABORTING
            identity = self.identity

            logger.info(f"Aborting upload {identity or '(being created)'} at offset {self.offset}")
            # A later attempt cannot start until the cancel has reached this one
            self._wakeup.set()
            if identity is not None:
                try:
                    self.transport.cancel(identity)
                except (TusUploadError, OSError) as e:
                    logger.warning(f"Failed to cancel request for {identity}: {e}")
        return True

    def reset(self) -> None:
        """Forget the upload identity and offset, and clear the store entry.

        Raises:
            RuntimeError: If an attempt is running
        """
        with self._lock:
            if self.state in ACTIVE_STATES:
                raise RuntimeError("Cannot reset a session while an attempt is running")
            self._unsubscribe()
            self._clear()
            self.identity = None
            self.offset = 0
            self.url = None
            self.state = SessionState.IDLE
            self.stats = UploadStats(total_bytes=self.total_size)

    def dispose(self) -> None:
        """Abort any running attempt and tear down subscriptions."""
        self.abort()
        self._unsubscribe()

    def _create(self) -> None:
        logger.info(f"Creating upload at {self.config.endpoint} ({self.total_size} bytes)")
        try:
            identity = self.transport.create(
                self.config.endpoint, self.total_size, self.config.metadata, self.config.headers
            )
        except (TusUploadError, OSError) as e:
            with self._lock:
                self.identity = None
                self.offset = 0
                aborted = self.aborting
                self.state = SessionState.IDLE if aborted else SessionState.FAILED
            if aborted:
                raise UploadCancelled("Upload aborted while being created") from e
            logger.error(f"Failed to create upload at {self.config.endpoint}: {e}")
            if isinstance(e, CreateError):
                raise
            raise CreateError(f"Failed to create upload: {e}") from e

        with self._lock:
            self.identity = identity
            self.offset = 0
            if not self.aborting:
                self.state = SessionState.TRANSFERRING
        self.stats.uploaded_bytes = 0
        self._save()
        logger.info(f"Created upload {identity}")

    def _subscribe(self) -> None:
        # The old set must be gone before the new identity subscribes
        self._unsubscribe()
        if self.listener is not None and self.identity is not None:
            self.subscriptions = SubscriptionSet(self.router, self, self.listener)

    def _unsubscribe(self) -> None:
        if self.subscriptions is not None:
            self.subscriptions.remove()
            self.subscriptions = None

    def _transfer(self, resync: bool) -> None:
        attempt = 0
        while True:
            try:
                if resync:
                    self._resync_offset()
                self._transfer_chunks()
                break
            except CreateError:
                raise
            except UploadCancelled as e:
                if not self.aborting:
                    logger.warning(
                        f"Request for {self.identity} at offset {self.offset} was cancelled "
                        f"outside an abort, resending"
                    )
                    resync = True
                    continue
                self._finish_error(e)
                return
            except (TusUploadError, OSError) as e:
                error = e
                if isinstance(e, OSError):
                    error = TransferError(f"Transfer failed at offset {self.offset}: {e}")
                    error.__cause__ = e

                if self.aborting:
                    self._finish_error(error)
                    return

                delay = None
                if self.retry_policy.is_retryable(error):
                    delay = self.retry_policy.delay_for(attempt)
                if delay is None:
                    self._finish_error(error)
                    return

                attempt += 1
                self.stats.retries += 1
                logger.warning(
                    f"Transfer of {self.identity} failed at offset {self.offset} "
                    f"(attempt {attempt}/{self.retry_policy.max_retries + 1}): {error}. "
                    f"Retrying in {delay:.1f}s..."
                )
                if self._wakeup.wait(delay) and self.aborting:
                    self._finish_error(UploadCancelled("Upload aborted while waiting to retry"))
                    return
                resync = True

        self._finish_success()

    def _resync_offset(self) -> None:
        try:
            server_offset = self.transport.head(self.identity)
        except UploadNotFound:
            logger.info(f"Upload {self.identity} no longer exists on the server, recreating")
            self._unsubscribe()
            self._clear()
            with self._lock:
                self.identity = None
                self.offset = 0
                if not self.aborting:
                    self.state = SessionState.CREATING
            self._create()
            self._subscribe()
            return

        if server_offset < self.offset:
            raise ProtocolViolation(
                f"Server offset {server_offset} is behind acknowledged offset {self.offset}"
            )
        if server_offset > self.total_size:
            raise ProtocolViolation(
                f"Server offset {server_offset} exceeds upload length {self.total_size}"
            )
        if server_offset != self.offset:
            logger.info(
                f"Resuming {self.identity} at server offset {server_offset} "
                f"(last acknowledged {self.offset})"
            )
            self.offset = server_offset
            self.stats.uploaded_bytes = server_offset
            self._save()
        self._emit(ProgressEvent(self.identity, self.offset, self.total_size))

    def _check_aborted(self) -> None:
        if self.aborting:
            raise UploadCancelled(f"Upload aborted at offset {self.offset}")

    def _transfer_chunks(self) -> None:
        while self.offset < self.total_size:
            self._check_aborted()
            size = min(self.config.request_payload_size, self.total_size - self.offset)
            data = self.source.read(self.offset, size)
            if not data:
                raise ReadError(
                    f"Source ended at offset {self.offset}, expected {self.total_size} bytes"
                )
            self._check_aborted()

            self.stats.requests_sent += 1
            try:
                new_offset = self.transport.send_chunk(
                    self.identity, self.offset, data, self.config.headers
                )
            except (TusUploadError, OSError):
                self.stats.requests_failed += 1
                raise
            self._acknowledge(new_offset, len(data))

    def _acknowledge(self, new_offset: int, sent: int) -> None:
        previous = self.offset
        if new_offset < previous:
            raise ProtocolViolation(f"Server offset regressed from {previous} to {new_offset}")
        if new_offset > previous + sent:
            raise ProtocolViolation(
                f"Server acknowledged offset {new_offset} beyond the {sent} bytes "
                f"sent at offset {previous}"
            )
        if new_offset == previous:
            raise TransferError(f"Server accepted no bytes at offset {previous}")

        self.offset = new_offset
        self.stats.uploaded_bytes = new_offset
        self._save()
        logger.debug(f"Upload {self.identity} acknowledged {new_offset}/{self.total_size}")

        # One progress event per chunk, even when chunks share a request
        boundary = previous + self.config.chunk_size
        while boundary < new_offset:
            self.stats.chunks_completed += 1
            self._emit(ProgressEvent(self.identity, boundary, self.total_size))
            boundary += self.config.chunk_size
        self.stats.chunks_completed += 1
        self._emit(ProgressEvent(self.identity, new_offset, self.total_size))

    def _finish_success(self) -> None:
        with self._lock:
            aborted = self.aborting
            if aborted:
                self.state = SessionState.IDLE
            else:
                self.state = SessionState.COMPLETED
                self.url = self.identity

        if aborted:
            logger.info(f"Upload {self.identity} finished while aborting, keeping it resumable")
        else:
            self._clear()
            logger.info(
                f"Upload {self.identity} completed in {self.stats.elapsed_time:.2f}s "
                f"({self.stats.upload_speed_mbps:.2f} MB/s)"
            )
        self._emit(SuccessEvent(self.identity, self.identity))

    def _finish_error(self, error: Exception) -> None:
        with self._lock:
            aborted = self.aborting
            self.state = SessionState.IDLE if aborted else SessionState.FAILED

        if aborted:
            self._save()
            logger.info(f"Upload {self.identity} aborted at offset {self.offset}")
        else:
            logger.error(f"Upload {self.identity} failed at offset {self.offset}: {error}")
        self._emit(ErrorEvent(self.identity, error))

    def _emit(self, event) -> None:
        self.router.emit(event)

    def _save(self) -> None:
        if self.store is not None and self.key is not None and self.identity is not None:
            self.store.save(self.key, self.identity, self.offset)

    def _clear(self) -> None:
        if self.store is not None and self.key is not None:
            self.store.clear(self.key)
