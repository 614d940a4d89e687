"""Test suite for Upload."""

import time
from threading import Event, Thread

import pytest

from tus_uploader import (
    FileSessionStore,
    MemorySessionStore,
    SessionState,
    Upload,
    UploadConfig,
)
from tus_uploader.exceptions import (
    ConfigError,
    CreateError,
    ProtocolViolation,
    ReadError,
    TransferError,
)

ENDPOINT = "http://tus.test/files"
DATA = b"0123456789"


def hold_at(transport, hold_offset):
    """Make the transport block while sending the chunk at hold_offset."""
    reached = Event()
    release = Event()

    def hook(identity, offset, data):
        if offset == hold_offset:
            reached.set()
            release.wait(5)

    transport.on_send = hook
    return reached, release


class TestUpload:
    """Tests for Upload."""

    @pytest.fixture
    def store(self):
        """Create a session store."""
        return MemorySessionStore()

    @pytest.fixture
    def make_upload(self, transport, router, executor, recorder, store):
        """Build uploads wired to the fake transport."""

        def _make(data=DATA, chunk_size=1, callbacks=None, **config_options):
            config = UploadConfig(endpoint=ENDPOINT, chunk_size=chunk_size, **config_options)
            return Upload(
                data,
                config,
                transport=transport,
                store=store,
                store_key="file-key",
                router=router,
                executor=executor,
                **(recorder.callbacks() if callbacks is None else callbacks),
            )

        return _make

    def test_upload_completes(self, make_upload, transport, recorder, store):
        """Test uploading the whole file."""
        upload = make_upload()

        url = upload.start().result(5)

        assert url == f"{ENDPOINT}/1"
        assert upload.url == url
        assert upload.state is SessionState.COMPLETED
        assert bytes(transport.uploads[url]["data"]) == DATA
        assert recorder.successes == [url]
        assert recorder.errors == []
        assert store.load("file-key") is None

    def test_create_called_before_any_chunk(self, make_upload, transport):
        """Test that a fresh upload is created before any chunk is sent."""
        upload = make_upload()
        upload.start().result(5)

        methods = transport.methods()
        assert methods[0] == "create"
        assert methods.count("create") == 1
        assert "head" not in methods
        assert methods.index("send") > methods.index("create")

    def test_progress_is_monotonic(self, make_upload, recorder):
        """Test progress offsets never decrease nor exceed the total."""
        upload = make_upload(chunk_size=3)
        upload.start().result(5)

        assert recorder.progress == [(3, 10), (6, 10), (9, 10), (10, 10)]
        uploaded = [up for up, _ in recorder.progress]
        assert uploaded == sorted(uploaded)
        assert all(up <= total for up, total in recorder.progress)

    def test_coalesced_requests_report_each_chunk(self, make_upload, transport, recorder):
        """Test chunks coalesced into one request still report progress per chunk."""
        upload = make_upload(chunk_size=2, request_payload_size=6)
        upload.start().result(5)

        assert transport.sent_offsets() == [0, 6]
        assert recorder.progress == [(2, 10), (4, 10), (6, 10), (8, 10), (10, 10)]

    def test_failure_then_resume(self, make_upload, transport, recorder, store):
        """Test a transfer failing on the sixth chunk and resuming later."""
        error = TransferError("Connection reset", status_code=500)
        transport.fail_at[5] = error
        upload = make_upload()

        assert upload.start().result(5) is None
        assert upload.state is SessionState.FAILED
        assert upload.offset == 5
        assert recorder.errors == [error]
        assert recorder.successes == []
        assert store.load("file-key").offset == 5

        url = upload.start().result(5)

        # Offset 5 was attempted once per run
        assert transport.sent_offsets() == [0, 1, 2, 3, 4, 5, 5, 6, 7, 8, 9]
        assert transport.methods().count("create") == 1
        assert "head" in transport.methods()
        assert recorder.successes == [url]
        assert recorder.errors == [error]
        assert recorder.progress[-1] == (10, 10)
        uploaded = [up for up, _ in recorder.progress]
        assert uploaded == sorted(uploaded)
        assert bytes(transport.uploads[url]["data"]) == DATA

    def test_start_twice_does_not_create_twice(self, make_upload, transport):
        """Test a second start() attaches to the running attempt."""
        transport.gate = Event()
        upload = make_upload()

        first = upload.start()
        assert transport.entered.wait(5)
        second = upload.start()
        transport.gate.set()

        assert first is second
        first.result(5)
        assert transport.methods().count("create") == 1

    def test_abort_during_transfer(self, make_upload, transport, recorder, store):
        """Test aborting keeps the acknowledged offset and allows resuming."""
        reached, release = hold_at(transport, 3)
        upload = make_upload()

        future = upload.start()
        assert reached.wait(5)
        assert upload.abort() is True
        assert upload.abort() is False
        release.set()

        assert future.result(5) is None
        assert upload.state is SessionState.IDLE
        assert upload.offset == 3
        assert transport.sent_offsets() == [0, 1, 2, 3]
        assert ("cancel", upload.identity, None) in transport.calls
        assert store.load("file-key") == (upload.identity, 3)
        assert recorder.errors == []
        assert recorder.successes == []

        transport.on_send = None
        url = upload.start().result(5)

        assert transport.sent_offsets()[4:] == [3, 4, 5, 6, 7, 8, 9]
        assert recorder.successes == [url]
        assert recorder.errors == []

    def test_abort_suppresses_racing_success(self, make_upload, transport, recorder, store):
        """Test a success arriving during an abort is not reported."""
        transport.honor_cancel = False
        reached, release = hold_at(transport, 9)
        upload = make_upload()

        future = upload.start()
        assert reached.wait(5)
        upload.abort()
        release.set()
        future.result(5)

        assert recorder.successes == []
        assert recorder.errors == []
        assert upload.url is None
        assert upload.state is SessionState.IDLE
        assert upload.offset == 10
        assert store.load("file-key").offset == 10

        transport.on_send = None
        url = upload.start().result(5)

        # Resume reconciles with the server and completes without sending
        assert transport.sent_offsets() == list(range(10))
        assert recorder.successes == [url]
        assert upload.state is SessionState.COMPLETED

    def test_abort_suppresses_racing_error(self, make_upload, transport, recorder):
        """Test an error caused while aborting is not reported."""
        transport.honor_cancel = False
        transport.fail_at[4] = TransferError("Connection closed", status_code=502)
        reached, release = hold_at(transport, 4)
        upload = make_upload()

        future = upload.start()
        assert reached.wait(5)
        upload.abort()
        release.set()
        future.result(5)

        assert recorder.errors == []
        assert upload.state is SessionState.IDLE
        assert upload.offset == 4

    def test_start_while_aborting_resumes_afterwards(self, make_upload, transport, recorder):
        """Test start() during an abort queues one attempt that resumes."""
        reached, release = hold_at(transport, 3)
        upload = make_upload()

        first = upload.start()
        assert reached.wait(5)
        assert upload.abort() is True
        second = upload.start()
        assert second is not first
        assert upload.start() is second
        release.set()

        assert first.result(5) is None
        url = second.result(5)

        assert recorder.successes == [url]
        assert recorder.errors == []
        assert transport.methods().count("create") == 1
        assert bytes(transport.uploads[url]["data"]) == DATA

    def test_late_cancel_does_not_fail_restarted_attempt(
        self, make_upload, transport, recorder
    ):
        """Test a slow cancel completes before the next attempt sends anything."""
        reached, release = hold_at(transport, 2)
        upload = make_upload()
        cancel = transport.cancel
        cancel_go = Event()

        def late_cancel(identity):
            cancel_go.wait(1)
            cancel(identity)

        transport.cancel = late_cancel
        first = upload.start()
        assert reached.wait(5)

        aborter = Thread(target=upload.abort)
        aborter.start()
        deadline = time.time() + 5
        while upload.state is not SessionState.ABORTING and time.time() < deadline:
            time.sleep(0.01)

        def in_flight(identity, offset, data):
            # Let the pending cancel land while this request is in flight
            cancel_go.set()
            aborter.join(5)

        transport.on_send = in_flight
        release.set()
        assert first.result(5) is None

        url = upload.start().result(5)
        aborter.join(5)

        assert recorder.errors == []
        assert recorder.successes == [url]
        assert bytes(transport.uploads[url]["data"]) == DATA

    def test_abort_without_running_upload(self, make_upload, transport):
        """Test abort() is a no-op when nothing runs."""
        upload = make_upload()

        assert upload.abort() is False
        assert transport.calls == []

    def test_resume_from_persisted_session(
        self, transport, router, executor, recorder, tmp_path
    ):
        """Test a new Upload for the same key resumes from the stored offset."""
        store = FileSessionStore(str(tmp_path / "sessions.json"))
        identity = transport.create(ENDPOINT, len(DATA), {}, {})
        transport.send_chunk(identity, 0, DATA[:4], {})
        store.save("file-key", identity, 4)
        transport.calls.clear()

        upload = Upload(
            DATA,
            UploadConfig(endpoint=ENDPOINT, chunk_size=2),
            transport=transport,
            store=store,
            store_key="file-key",
            router=router,
            executor=executor,
            **recorder.callbacks(),
        )
        assert upload.identity == identity
        assert upload.offset == 4

        url = upload.start().result(5)

        assert url == identity
        assert "create" not in transport.methods()
        assert transport.sent_offsets() == [4, 6, 8]
        assert recorder.progress[0] == (4, 10)
        assert bytes(transport.uploads[identity]["data"]) == DATA
        assert store.load("file-key") is None

    def test_resume_across_upload_objects(self, make_upload, transport, recorder):
        """Test failing in one Upload and finishing in another."""
        transport.fail_at[4] = TransferError("Gateway timeout", status_code=504)
        make_upload().start().result(5)

        second = make_upload()
        assert second.offset == 4
        url = second.start().result(5)

        assert transport.methods().count("create") == 1
        assert transport.sent_offsets()[4:] == [4, 5, 6, 7, 8, 9]
        assert recorder.successes == [url]

    def test_stale_local_offset_resyncs_with_server(self, make_upload, transport, store):
        """Test resume uses the server offset when the store is behind."""
        identity = transport.create(ENDPOINT, len(DATA), {}, {})
        transport.send_chunk(identity, 0, DATA[:6], {})
        store.save("file-key", identity, 2)
        transport.calls.clear()

        upload = make_upload()
        upload.start().result(5)

        assert transport.sent_offsets() == [6, 7, 8, 9]

    def test_expired_upload_is_recreated(self, make_upload, transport, router, recorder, store):
        """Test an upload unknown to the server is created again."""
        store.save("file-key", f"{ENDPOINT}/gone", 5)
        upload = make_upload()

        url = upload.start().result(5)

        assert url == f"{ENDPOINT}/1"
        assert transport.methods()[:2] == ["head", "create"]
        assert transport.sent_offsets()[0] == 0
        assert recorder.successes == [url]
        assert router.listener_count(f"{ENDPOINT}/gone") == 0

    def test_create_failure_clears_identity(self, make_upload, transport, recorder):
        """Test a refused creation is reported and can be retried."""
        error = CreateError("Upload too large", status_code=413)
        transport.fail_create = error
        upload = make_upload()

        assert upload.start().result(5) is None
        assert recorder.errors == [error]
        assert upload.state is SessionState.FAILED
        assert upload.identity is None

        transport.fail_create = None
        url = upload.start().result(5)
        assert recorder.successes == [url]

    def test_unexpected_create_error_is_reported(self, make_upload, transport, recorder):
        """Test a non-TUS exception during creation reaches on_error."""
        error = ValueError("unknown url type: 'files'")
        transport.fail_create = error
        upload = make_upload()

        assert upload.start().result(5) is None
        assert recorder.errors == [error]
        assert upload.state is SessionState.FAILED
        assert upload.identity is None

        transport.fail_create = None
        url = upload.start().result(5)
        assert recorder.successes == [url]

    def test_store_failure_is_reported_and_retryable(
        self, make_upload, transport, recorder, store
    ):
        """Test a failing store save is reported and a later start() completes."""
        error = PermissionError("disk full")
        save = store.save
        failures = [error]

        def flaky_save(*args):
            if failures:
                raise failures.pop()
            save(*args)

        store.save = flaky_save
        upload = make_upload()

        assert upload.start().result(5) is None
        assert recorder.errors == [error]
        assert upload.state is SessionState.FAILED

        url = upload.start().result(5)

        assert recorder.successes == [url]
        assert transport.methods().count("create") == 1

    def test_malformed_endpoint(self, recorder):
        """Test an endpoint that is not an http(s) URL is a configuration error."""
        upload = Upload(DATA, UploadConfig(endpoint="not-a-url"), **recorder.callbacks())

        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], ConfigError)
        assert upload.start() is None
        assert upload.state is SessionState.IDLE

    def test_offset_regression_is_protocol_violation(self, make_upload, transport, recorder):
        """Test a server offset going backwards fails the attempt."""
        transport.ack_override = lambda offset, data: offset - 1 if offset == 3 else offset + 1
        upload = make_upload()

        upload.start().result(5)

        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], ProtocolViolation)
        assert upload.state is SessionState.FAILED
        assert upload.offset == 3

    def test_error_without_callback_propagates(self, make_upload, transport):
        """Test errors are raised from the future when no on_error is registered."""
        transport.fail_at[2] = TransferError("Internal error", status_code=500)
        upload = make_upload(callbacks={})

        future = upload.start()
        with pytest.raises(TransferError):
            future.result(5)
        with pytest.raises(TransferError):
            upload.wait(5)
        assert upload.state is SessionState.FAILED

    def test_config_error_reported_to_callback(self, transport, recorder):
        """Test an empty endpoint is reported instead of raised."""
        upload = Upload(DATA, UploadConfig(endpoint=""), transport=transport, **recorder.callbacks())

        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], ConfigError)
        assert upload.start() is None
        assert len(recorder.errors) == 2
        assert upload.abort() is False
        assert transport.calls == []

    def test_config_error_without_callback_raises(self, transport):
        """Test an invalid config raises when no on_error is registered."""
        with pytest.raises(ConfigError, match="no endpoint"):
            Upload(DATA, UploadConfig(endpoint=""), transport=transport)

    def test_missing_file(self, transport, recorder):
        """Test an unreadable file is reported."""
        Upload(
            "/nonexistent/file.bin",
            UploadConfig(endpoint=ENDPOINT),
            transport=transport,
            **recorder.callbacks(),
        )

        assert isinstance(recorder.errors[0], ReadError)

    def test_no_file(self, transport):
        """Test a missing file reference raises ConfigError."""
        with pytest.raises(ConfigError, match="no file or stream"):
            Upload(None, UploadConfig(endpoint=ENDPOINT), transport=transport)

    def test_upload_from_path(self, transport, router, executor, tmp_path):
        """Test uploading a file path with a fingerprint store key."""
        file_path = tmp_path / "test_file.txt"
        file_path.write_bytes(b"Hello World! " * 100)
        store = MemorySessionStore()

        with Upload(
            str(file_path),
            UploadConfig(endpoint=ENDPOINT, chunk_size=256),
            transport=transport,
            store=store,
            router=router,
            executor=executor,
        ) as upload:
            assert upload.store_key.startswith("path:")
            url = upload.start().result(5)

        assert bytes(transport.uploads[url]["data"]) == b"Hello World! " * 100
        assert upload.source.stream.closed

    def test_metadata_and_headers_sent_on_create(self, make_upload, transport):
        """Test metadata and headers reach the transport."""
        upload = make_upload(
            metadata={"filename": "test.bin"}, headers={"Authorization": "Bearer token"}
        )
        url = upload.start().result(5)

        assert transport.uploads[url]["metadata"] == {"filename": "test.bin"}
        assert transport.uploads[url]["headers"] == {"Authorization": "Bearer token"}

    def test_start_after_completion(self, make_upload, transport, recorder):
        """Test starting a completed upload does nothing."""
        upload = make_upload()
        url = upload.start().result(5)
        calls = len(transport.calls)

        assert upload.start().result(5) == url
        assert len(transport.calls) == calls
        assert recorder.successes == [url]

    def test_retry_recovers_from_transient_error(self, make_upload, transport, recorder):
        """Test automatic retry resumes after a server error."""
        transport.fail_at[3] = TransferError("Service unavailable", status_code=503)
        upload = make_upload(max_retries=2, retry_delay=0)

        url = upload.start().result(5)

        assert recorder.errors == []
        assert recorder.successes == [url]
        assert upload.stats.retries == 1
        assert "head" in transport.methods()

    def test_retry_skips_client_errors(self, make_upload, transport, recorder):
        """Test client errors are not retried."""
        transport.fail_at[3] = TransferError("Bad request", status_code=400)
        upload = make_upload(max_retries=2, retry_delay=0)

        upload.start().result(5)

        assert len(recorder.errors) == 1
        assert upload.stats.retries == 0

    def test_abort_interrupts_retry_wait(self, make_upload, transport, recorder):
        """Test abort() wakes an attempt waiting to retry."""
        transport.fail_at[1] = TransferError("Service unavailable", status_code=503)
        upload = make_upload(max_retries=1, retry_delay=30)

        future = upload.start()
        deadline = time.time() + 5
        while upload.stats.retries == 0 and time.time() < deadline:
            time.sleep(0.01)

        assert upload.abort() is True
        future.result(5)
        assert upload.state is SessionState.IDLE
        assert upload.offset == 1
        assert recorder.errors == []

    def test_stats(self, make_upload):
        """Test statistics of a finished attempt."""
        upload = make_upload(chunk_size=2)
        upload.start().result(5)

        stats = upload.stats
        assert stats.total_bytes == 10
        assert stats.uploaded_bytes == 10
        assert stats.chunks_completed == 5
        assert stats.requests_sent == 5
        assert stats.progress_percent == 100.0

    def test_terminate(self, make_upload, transport, store):
        """Test terminating a failed upload."""
        transport.fail_at[2] = TransferError("Internal error", status_code=500)
        upload = make_upload()
        upload.start().result(5)
        identity = upload.identity

        assert upload.terminate() is True
        assert ("terminate", identity, None) in transport.calls
        assert upload.identity is None
        assert upload.offset == 0
        assert store.load("file-key") is None

    def test_terminate_running_upload(self, make_upload, transport):
        """Test terminate() refuses to run alongside an attempt."""
        transport.gate = Event()
        upload = make_upload()
        future = upload.start()
        assert transport.entered.wait(5)

        with pytest.raises(RuntimeError):
            upload.terminate()
        transport.gate.set()
        future.result(5)

    def test_dispose(self, make_upload, transport):
        """Test a disposed upload cannot start."""
        upload = make_upload()
        upload.dispose()

        assert upload.start() is None
        assert transport.calls == []
