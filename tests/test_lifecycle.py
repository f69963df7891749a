"""Tests for reference counting, leases and garbage-collection fallback."""

import gc
import logging

from pyrecord import Lease, Recorder, ReferenceCounter, dispose, read, write

from .fixtures.fake_dom import CapturePort


class Handle:
    """Anything weak-referenceable can carry a lease."""


class TestReferenceCounter:
    def test_acquire_release_balance(self):
        counter = ReferenceCounter()
        counter.acquire("obj_0")
        counter.acquire("obj_0")
        assert counter.count("obj_0") == 2

        counter.release("obj_0")
        assert "obj_0" in counter
        counter.release("obj_0")
        assert "obj_0" not in counter
        assert len(counter) == 0

    def test_release_hooks_run_at_zero(self):
        released = []
        counter = ReferenceCounter()
        counter.add_release_hook(released.append)

        counter.acquire("obj_0")
        counter.acquire("obj_0")
        counter.release("obj_0")
        assert released == []
        counter.release("obj_0")
        assert released == ["obj_0"]

    def test_failing_hook_does_not_block_others(self, caplog):
        released = []
        counter = ReferenceCounter()

        def broken(object_id):
            raise ValueError("hook failed")

        counter.add_release_hook(broken)
        counter.add_release_hook(released.append)
        counter.acquire("obj_0")
        with caplog.at_level(logging.ERROR):
            counter.release("obj_0")

        assert released == ["obj_0"]
        assert "Release hook failed" in caplog.text

    def test_underflow_clamps_with_warning(self, caplog):
        counter = ReferenceCounter()
        with caplog.at_level(logging.WARNING):
            assert counter.release("obj_7") == 0
        assert "would become negative" in caplog.text
        assert counter.count("obj_7") == 0

    def test_changes_are_mirrored(self):
        port = CapturePort()
        counter = ReferenceCounter(port)

        counter.acquire("obj_0")
        counter.release("obj_0")

        assert [m["delta"] for m in port.messages("refcount")] == [1, -1]

    def test_remote_changes_are_not_echoed(self):
        port = CapturePort()
        counter = ReferenceCounter(port)

        counter.apply_remote("obj_0", 1)

        assert counter.count("obj_0") == 1
        assert port.posted == []

    def test_mirror_failure_is_logged(self, caplog):
        port = CapturePort()
        port.close()
        counter = ReferenceCounter(port)
        with caplog.at_level(logging.ERROR):
            counter.acquire("obj_0")
        assert counter.count("obj_0") == 1
        assert "Failed to mirror refcount" in caplog.text


class TestLease:
    def test_lease_acquires_on_creation(self):
        counter = ReferenceCounter()
        Lease(counter, "obj_0")
        assert counter.count("obj_0") == 1

    def test_release_is_idempotent(self):
        counter = ReferenceCounter()
        counter.acquire("obj_0")
        lease = Lease(counter, "obj_0")

        lease.release()
        lease.release()

        assert counter.count("obj_0") == 1

    def test_collection_releases(self):
        counter = ReferenceCounter()
        handle = Handle()
        Lease(counter, "obj_0").watch(handle)
        assert counter.count("obj_0") == 1

        del handle
        gc.collect()
        assert "obj_0" not in counter

    def test_dispose_then_collection_releases_once(self):
        counter = ReferenceCounter()
        counter.acquire("obj_0")
        handle = Handle()
        lease = Lease(counter, "obj_0")
        lease.watch(handle)

        lease.release()
        del handle
        gc.collect()

        assert counter.count("obj_0") == 1

    def test_releaser_replaces_counter_release(self):
        counter = ReferenceCounter()
        released = []
        lease = Lease(counter, "obj_0", releaser=released.append)
        lease.release()
        assert released == ["obj_0"]
        assert counter.count("obj_0") == 1


class TestStandInLifecycle:
    def test_stand_in_dispose(self):
        recorder = Recorder()
        element = read(recorder.root, "document")
        object_id = element._target_id
        recorder.clear()

        assert recorder.counter.count(object_id) == 1
        dispose(element)
        assert object_id not in recorder.counter

    def test_context_manager_disposes(self):
        recorder = Recorder()
        with read(recorder.root, "document") as document:
            object_id = document._target_id
            recorder.clear()
            assert object_id in recorder.counter
        assert object_id not in recorder.counter

    def test_collection_fallback(self):
        recorder = Recorder()
        element = read(recorder.root, "document")
        object_id = element._target_id
        recorder.clear()

        del element
        gc.collect()
        assert object_id not in recorder.counter

    def test_finalization_can_be_disabled(self):
        recorder = Recorder(use_finalization=False)
        element = read(recorder.root, "document")
        object_id = element._target_id
        recorder.clear()

        del element
        gc.collect()
        assert recorder.counter.count(object_id) == 1

    def test_release_waits_for_pending_records(self):
        """The peer must see the records naming an identifier before its release."""
        port = CapturePort()
        recorder = Recorder(port)
        element = read(recorder.root, "document")
        write(element, "title", "x")
        dispose(element)

        assert port.messages("refcount") == [
            {"type": "refcount", "object_id": element._target_id, "delta": 1}
        ]
        recorder.flush()
        types = [m["type"] for m, _ in port.posted]
        assert types == ["refcount", "replay", "refcount"]
