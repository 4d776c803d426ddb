"""
Mathscan Tests - Batch Session
Fake recognition clients make worker concurrency observable.
"""

import io
import threading
import time
from collections import defaultdict
from unittest.mock import patch

import pytest
from PIL import Image

from mathscan.models import AnalysisOptions, ExerciseResult, TaskStatus
from mathscan.recognition import CredentialError, RecognitionError
from mathscan.session import (
    BatchRunError,
    BatchSession,
    InvalidImageError,
    RunInProgressError,
    TaskNotFoundError,
)


class FakeClient:
    """Stands in for RecognitionClient; optionally blocks every call on a gate."""

    def __init__(self, api_key="test-key", valid=True, delay=0.0, fail_on=(), gate=None):
        self.api_key = api_key
        self.valid = valid
        self.delay = delay
        self.fail_on = set(fail_on)
        self.gate = gate
        self.calls = []
        self.options_seen = []
        self.threads = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self.verify_calls = 0
        self._lock = threading.Lock()

    def verify_credential(self, api_key=None):
        self.verify_calls += 1
        return self.valid

    def analyze(self, payload, options):
        with self._lock:
            self.calls.append(payload.filename)
            self.options_seen.append(options)
            self.threads.add(threading.current_thread().name)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            if payload.filename in self.fail_on:
                raise RecognitionError(f"boom {payload.filename}")
            return ExerciseResult(
                title=f"Exercise {payload.filename}",
                difficulty=2,
                keywords=["algebra", "equations", "roots"],
                content="1) First\n2) Second",
            )
        finally:
            with self._lock:
                self.in_flight -= 1


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def add_images(session, count, start=0):
    return [
        session.add_task(b"fake-bytes", media_type="image/png", filename=f"img{i}.png")
        for i in range(start, start + count)
    ]


def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), "white").save(buffer, format="PNG")
    return buffer.getvalue()


class TestAddTasks:
    def test_tasks_start_waiting_in_order(self):
        session = BatchSession(FakeClient())
        ids = add_images(session, 3)

        snapshots = session.snapshots()
        assert [s.id for s in snapshots] == ids
        assert all(s.status == TaskStatus.WAITING for s in snapshots)
        assert session.pending_count == 3

    def test_media_type_sniffed(self):
        session = BatchSession(FakeClient())
        task_id = session.add_task(png_bytes())

        assert session.get(task_id).media_type == "image/png"

    def test_jpg_alias(self):
        session = BatchSession(FakeClient())
        task_id = session.add_task(b"x", media_type="image/jpg")

        assert session.get(task_id).media_type == "image/jpeg"

    def test_garbage_bytes_rejected(self):
        session = BatchSession(FakeClient())

        with pytest.raises(InvalidImageError):
            session.add_task(b"definitely not an image")

    def test_empty_rejected(self):
        with pytest.raises(InvalidImageError):
            BatchSession(FakeClient()).add_task(b"")

    def test_unsupported_media_type(self):
        with pytest.raises(InvalidImageError, match="image/tiff"):
            BatchSession(FakeClient()).add_task(b"x", media_type="image/tiff")

    @patch("mathscan.session.settings")
    def test_size_limit(self, mock_settings):
        mock_settings.max_image_size_mb = 0

        with pytest.raises(InvalidImageError, match="too large"):
            BatchSession(FakeClient(), concurrency_limit=1, verify_credentials=False).add_task(
                b"x", media_type="image/png"
            )

    def test_add_tasks_bulk(self):
        session = BatchSession(FakeClient())
        ids = session.add_tasks([png_bytes(), png_bytes()])

        assert len(ids) == 2
        assert len(set(ids)) == 2

    def test_add_directory(self, tmp_path):
        (tmp_path / "b.png").write_bytes(png_bytes())
        (tmp_path / "a.png").write_bytes(png_bytes())
        (tmp_path / "notes.txt").write_text("not an image")
        (tmp_path / "broken.jpg").write_bytes(b"garbage")

        session = BatchSession(FakeClient())
        ids = session.add_directory(tmp_path)

        assert len(ids) == 2
        assert [s.filename for s in session.snapshots()] == ["a.png", "b.png"]

    def test_add_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            BatchSession(FakeClient()).add_file(tmp_path / "missing.png")

    def test_snapshot_has_no_image_bytes(self):
        session = BatchSession(FakeClient())
        task_id = add_images(session, 1)[0]

        assert "data" not in session.get(task_id).model_dump()
        assert "payload" not in session.get(task_id).model_dump()

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            BatchSession(FakeClient(), concurrency_limit=0)


class TestRun:
    def test_all_tasks_succeed(self):
        client = FakeClient()
        session = BatchSession(client, concurrency_limit=3)
        add_images(session, 5)

        progress = session.run()

        assert progress.completed == 5
        assert progress.total == 5
        assert progress.percent == 100
        assert not session.is_running
        snapshots = session.snapshots()
        assert all(s.status == TaskStatus.SUCCESS for s in snapshots)
        assert all(s.error is None for s in snapshots)
        assert [r.title for r in session.results()] == [f"Exercise img{i}.png" for i in range(5)]

    def test_content_is_normalized(self):
        session = BatchSession(FakeClient())
        add_images(session, 1)
        session.run()

        assert session.results()[0].content == "<ol><li>First</li><li>Second</li></ol>"

    def test_options_shared_by_run(self):
        client = FakeClient()
        session = BatchSession(client)
        add_images(session, 4)
        options = AnalysisOptions(revise_text=True, bold_keywords=False, suggest_hints=True)

        session.run(options)

        assert client.options_seen == [options] * 4

    def test_dispatch_is_fifo(self):
        client = FakeClient()
        session = BatchSession(client, concurrency_limit=1)
        add_images(session, 4)
        session.run()

        assert client.calls == ["img0.png", "img1.png", "img2.png", "img3.png"]

    def test_concurrency_is_capped(self):
        analyzing_counts = []
        statuses = {}

        def on_update(snapshot, progress):
            statuses[snapshot.id] = snapshot.status
            analyzing_counts.append(sum(1 for s in statuses.values() if s == TaskStatus.ANALYZING))

        client = FakeClient(delay=0.05)
        session = BatchSession(client, concurrency_limit=3, on_update=on_update)
        add_images(session, 10)
        session.run()

        assert client.max_in_flight <= 3
        assert max(analyzing_counts) <= 3
        assert len(client.threads) == 3

    def test_worker_count_bounded_by_work(self):
        client = FakeClient(delay=0.02)
        session = BatchSession(client, concurrency_limit=3)
        add_images(session, 2)
        session.run()

        assert len(client.threads) <= 2

    def test_failure_isolated_to_task(self):
        client = FakeClient(fail_on={"img1.png"})
        session = BatchSession(client)
        ids = add_images(session, 3)

        progress = session.run()

        assert progress.completed == 3
        failed = session.get(ids[1])
        assert failed.status == TaskStatus.ERROR
        assert failed.error == "boom img1.png"
        assert failed.result is None
        assert session.get(ids[0]).status == TaskStatus.SUCCESS
        assert session.get(ids[2]).status == TaskStatus.SUCCESS

    def test_retry_only_failed_tasks(self):
        client = FakeClient(fail_on={"img1.png"})
        session = BatchSession(client)
        ids = add_images(session, 3)
        session.run()

        client.fail_on.clear()
        client.calls.clear()
        progress = session.run()

        assert client.calls == ["img1.png"]
        assert progress.total == 1
        assert progress.completed == 1
        retried = session.get(ids[1])
        assert retried.status == TaskStatus.SUCCESS
        assert retried.error is None
        assert retried.attempts == 2

    def test_status_transitions(self):
        history = defaultdict(list)

        def on_update(snapshot, progress):
            history[snapshot.filename].append(snapshot.status)

        client = FakeClient(fail_on={"img0.png"})
        session = BatchSession(client, on_update=on_update)
        add_images(session, 2)
        session.run()
        client.fail_on.clear()
        session.run()

        assert history["img0.png"] == [
            TaskStatus.ANALYZING, TaskStatus.ERROR, TaskStatus.ANALYZING, TaskStatus.SUCCESS,
        ]
        assert history["img1.png"] == [TaskStatus.ANALYZING, TaskStatus.SUCCESS]

    def test_progress_counts_every_outcome_once(self):
        seen = []

        def on_update(snapshot, progress):
            if snapshot.status in (TaskStatus.SUCCESS, TaskStatus.ERROR):
                seen.append(progress.completed)

        client = FakeClient(delay=0.01, fail_on={"img2.png", "img5.png"})
        session = BatchSession(client, concurrency_limit=3, on_update=on_update)
        add_images(session, 8)
        progress = session.run()

        assert sorted(seen) == list(range(1, 9))
        assert progress.completed == progress.total == 8

    def test_nothing_to_do(self):
        client = FakeClient()
        session = BatchSession(client)

        assert session.start() == 0
        assert not session.is_running
        assert session.progress().total == 0
        assert client.verify_calls == 1

    def test_success_not_redispatched(self):
        client = FakeClient()
        session = BatchSession(client)
        add_images(session, 2)
        session.run()
        client.calls.clear()

        assert session.start() == 0
        assert client.calls == []

    def test_update_callback_errors_do_not_stop_run(self):
        def on_update(snapshot, progress):
            raise ValueError("ui broke")

        session = BatchSession(FakeClient(), on_update=on_update)
        add_images(session, 2)

        assert session.run().completed == 2

    def test_unexpected_worker_failure_surfaces(self):
        session = BatchSession(FakeClient())
        add_images(session, 2)

        with patch.object(BatchSession, "_process", side_effect=RuntimeError("kaboom")):
            session.start()
            with pytest.raises(BatchRunError, match="kaboom"):
                session.wait(timeout=5)

        assert not session.is_running

    def test_interrupted_analysis_never_leaves_task_analyzing(self):
        class Interrupted(BaseException):
            pass

        client = FakeClient()
        session = BatchSession(client, concurrency_limit=1)
        task_id = add_images(session, 1)[0]

        with patch.object(client, "analyze", side_effect=Interrupted("stop")):
            session.start()
            with pytest.raises(BatchRunError, match="stop"):
                session.wait(timeout=5)

        task = session.get(task_id)
        assert task.status == TaskStatus.ERROR
        assert task.error == "Analysis was interrupted"
        progress = session.progress()
        assert progress.completed == progress.total == 1


class TestActiveRun:
    def test_second_start_rejected(self):
        gate = threading.Event()
        session = BatchSession(FakeClient(gate=gate), concurrency_limit=2)
        add_images(session, 2)

        session.start()
        try:
            with pytest.raises(RunInProgressError):
                session.start()
        finally:
            gate.set()
            session.wait(timeout=5)

    def test_second_start_rejected_before_credential_check(self):
        gate = threading.Event()
        client = FakeClient(gate=gate)
        session = BatchSession(client, concurrency_limit=1, verify_credentials=True)
        add_images(session, 1)

        session.start()
        client.api_key = ""
        try:
            with pytest.raises(RunInProgressError):
                session.start()
        finally:
            gate.set()
            session.wait(timeout=5)

        assert client.verify_calls == 1

    def test_tasks_added_mid_run_wait_for_next_run(self):
        gate = threading.Event()
        client = FakeClient(gate=gate)
        session = BatchSession(client, concurrency_limit=2)
        add_images(session, 2)

        session.start()
        late_id = add_images(session, 1, start=2)[0]
        gate.set()
        session.wait(timeout=5)

        assert session.progress().total == 2
        assert session.get(late_id).status == TaskStatus.WAITING
        assert "img2.png" not in client.calls

        progress = session.run()
        assert progress.total == 1
        assert session.get(late_id).status == TaskStatus.SUCCESS

    def test_cancel_stops_dequeue_and_lets_in_flight_finish(self):
        gate = threading.Event()
        client = FakeClient(gate=gate)
        session = BatchSession(client, concurrency_limit=2)
        ids = add_images(session, 5)

        session.start()
        assert wait_for(lambda: client.in_flight == 2)
        assert session.cancel() is True
        gate.set()
        assert session.wait(timeout=5)

        statuses = [session.get(task_id).status for task_id in ids]
        assert statuses[:2] == [TaskStatus.SUCCESS, TaskStatus.SUCCESS]
        assert statuses[2:] == [TaskStatus.WAITING] * 3
        assert TaskStatus.ANALYZING not in statuses
        progress = session.progress()
        assert progress.completed == 2
        assert progress.total == 5
        assert len(client.calls) == 2

    def test_cancel_latch_resets_for_next_run(self):
        gate = threading.Event()
        client = FakeClient(gate=gate)
        session = BatchSession(client, concurrency_limit=1)
        add_images(session, 3)

        session.start()
        assert wait_for(lambda: client.in_flight == 1)
        session.cancel()
        gate.set()
        session.wait(timeout=5)

        progress = session.run()
        assert progress.total == 2
        assert progress.completed == 2
        assert all(s.status == TaskStatus.SUCCESS for s in session.snapshots())

    def test_cancel_without_run(self):
        assert BatchSession(FakeClient()).cancel() is False

    def test_remove_queued_task_is_skipped_but_counted(self):
        gate = threading.Event()
        client = FakeClient(gate=gate)
        session = BatchSession(client, concurrency_limit=1)
        ids = add_images(session, 3)

        session.start()
        assert wait_for(lambda: client.in_flight == 1)
        session.remove_task(ids[2])
        gate.set()
        session.wait(timeout=5)

        assert "img2.png" not in client.calls
        progress = session.progress()
        assert progress.completed == progress.total == 3
        assert [s.id for s in session.snapshots()] == ids[:2]

    def test_remove_in_flight_task_discards_result(self):
        gate = threading.Event()
        client = FakeClient(gate=gate)
        session = BatchSession(client, concurrency_limit=1)
        task_id = add_images(session, 1)[0]

        session.start()
        assert wait_for(lambda: client.in_flight == 1)
        session.remove_task(task_id)
        gate.set()
        session.wait(timeout=5)

        assert session.snapshots() == []
        assert session.results() == []
        assert session.progress().completed == 1

    def test_clear_rejected_during_run(self):
        gate = threading.Event()
        session = BatchSession(FakeClient(gate=gate))
        add_images(session, 1)

        session.start()
        try:
            with pytest.raises(RunInProgressError):
                session.clear()
        finally:
            gate.set()
            session.wait(timeout=5)

        session.clear()
        assert session.snapshots() == []


class TestCredentials:
    def test_missing_key_blocks_run(self):
        client = FakeClient(api_key="")
        session = BatchSession(client)
        add_images(session, 1)

        with pytest.raises(CredentialError):
            session.start()

        assert client.calls == []
        assert session.get(session.snapshots()[0].id).status == TaskStatus.WAITING

    def test_rejected_key_blocks_run(self):
        client = FakeClient(valid=False)
        session = BatchSession(client, verify_credentials=True)
        add_images(session, 1)

        with pytest.raises(CredentialError):
            session.start()

        assert client.calls == []

    def test_verification_can_be_disabled(self):
        client = FakeClient(valid=False)
        session = BatchSession(client, verify_credentials=False)
        add_images(session, 1)

        assert session.run().completed == 1
        assert client.verify_calls == 0

    def test_verified_once_per_session(self):
        client = FakeClient()
        session = BatchSession(client, verify_credentials=True)
        add_images(session, 1)
        session.run()
        add_images(session, 1, start=1)
        session.run()

        assert client.verify_calls == 1


class TestLifecycle:
    def test_remove_unknown_task(self):
        with pytest.raises(TaskNotFoundError):
            BatchSession(FakeClient()).remove_task("task_missing")

    def test_get_unknown_task(self):
        with pytest.raises(TaskNotFoundError):
            BatchSession(FakeClient()).get("task_missing")

    def test_status_summary(self):
        session = BatchSession(FakeClient(fail_on={"img0.png"}))
        add_images(session, 3)
        session.run()

        summary = session.get_status_summary()

        assert summary["total"] == 3
        assert summary["by_status"] == {"waiting": 0, "analyzing": 0, "success": 2, "error": 1}
        assert summary["running"] is False
        assert summary["progress"] == {"completed": 3, "total": 3}

    def test_close_releases_tasks(self):
        gate = threading.Event()
        session = BatchSession(FakeClient(gate=gate))
        add_images(session, 2)
        session.start()
        gate.set()

        session.close()

        assert not session.is_running
        assert session.snapshots() == []
        with pytest.raises(RuntimeError):
            add_images(session, 1)

    def test_context_manager(self):
        with BatchSession(FakeClient()) as session:
            add_images(session, 1)
            session.run()

        assert session.snapshots() == []
