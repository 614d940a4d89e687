"""Shared fixtures: an in-memory TUS transport."""

from concurrent.futures import ThreadPoolExecutor
from threading import Event, Lock

import pytest

from tus_uploader.client.events import EventRouter
from tus_uploader.client.transport import Transport
from tus_uploader.exceptions import TransferError, UploadCancelled, UploadNotFound


class FakeTransport(Transport):
    """TUS transport keeping uploads in memory.

    Attributes:
        calls: Recorded (method, identity, offset) tuples
        fail_create: Exception raised by the next create() calls
        fail_at: Exceptions raised once by send_chunk, keyed by offset
        gate: If set, send_chunk blocks until the event is set
        honor_cancel: Raise UploadCancelled for a request cancelled in flight
        on_send: Optional hook(identity, offset, data) called while in flight
    """

    def __init__(self, base_url="http://tus.test/files"):
        self.base_url = base_url
        self.uploads = {}
        self.calls = []
        self.fail_create = None
        self.fail_at = {}
        self.gate = None
        self.entered = Event()
        self.honor_cancel = True
        self.on_send = None
        self.ack_override = None
        self._inflight = {}
        self._counter = 0
        self._lock = Lock()

    def methods(self):
        return [call[0] for call in self.calls]

    def sent_offsets(self):
        return [offset for method, _, offset in self.calls if method == "send"]

    def create(self, endpoint, total_size, metadata, headers):
        self.calls.append(("create", None, total_size))
        if self.fail_create is not None:
            raise self.fail_create
        with self._lock:
            self._counter += 1
            identity = f"{self.base_url}/{self._counter}"
        self.uploads[identity] = {
            "length": total_size,
            "data": bytearray(),
            "metadata": dict(metadata),
            "headers": dict(headers),
        }
        return identity

    def head(self, identity):
        self.calls.append(("head", identity, None))
        if identity not in self.uploads:
            raise UploadNotFound("Upload not found", status_code=404)
        return len(self.uploads[identity]["data"])

    def send_chunk(self, identity, offset, data, headers):
        self.calls.append(("send", identity, offset))
        with self._lock:
            self._inflight[identity] = False
        try:
            self.entered.set()
            if self.on_send is not None:
                self.on_send(identity, offset, data)
            if self.gate is not None:
                self.gate.wait(5)
            with self._lock:
                cancelled = self._inflight.get(identity, False)
            if cancelled and self.honor_cancel:
                raise UploadCancelled(f"Request at offset {offset} was cancelled")
            error = self.fail_at.pop(offset, None)
            if error is not None:
                raise error
            upload = self.uploads[identity]
            if offset != len(upload["data"]):
                raise TransferError("Offset mismatch", status_code=409)
            upload["data"] += data
            if self.ack_override is not None:
                return self.ack_override(offset, data)
            return len(upload["data"])
        finally:
            with self._lock:
                self._inflight.pop(identity, None)

    def cancel(self, identity):
        self.calls.append(("cancel", identity, None))
        with self._lock:
            if identity in self._inflight:
                self._inflight[identity] = True

    def terminate(self, identity):
        self.calls.append(("terminate", identity, None))
        self.uploads.pop(identity, None)


@pytest.fixture
def transport():
    """Create an in-memory transport."""
    return FakeTransport()


@pytest.fixture
def router():
    """Create a router private to the test."""
    return EventRouter()


@pytest.fixture
def executor():
    """Create a worker pool for upload attempts."""
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def recorder():
    """Collect callback invocations."""

    class Recorder:
        def __init__(self):
            self.progress = []
            self.successes = []
            self.errors = []

        def on_progress(self, uploaded, total):
            self.progress.append((uploaded, total))

        def on_success(self, url):
            self.successes.append(url)

        def on_error(self, error):
            self.errors.append(error)

        def callbacks(self):
            return {
                "on_progress": self.on_progress,
                "on_success": self.on_success,
                "on_error": self.on_error,
            }

    return Recorder()

