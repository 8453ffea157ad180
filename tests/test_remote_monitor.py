"""Tests for the remote job status state machine."""

import datetime as dt
from unittest.mock import MagicMock

import pytest

from conftest import STEP_TOOL, TIMESTAMP, write_file
from remotejobs.exceptions import RemoteResultIdentityMismatch, TransportError
from remotejobs.jobstatus import JobStatusSnapshot, MgrStatus, TaskStatus, write_job_status_file
from remotejobs.remote_monitor import (
    STALE_JOBSTATUS,
    STALE_LOCK,
    RemoteJobStatus,
    RemoteMonitor,
    map_task_status,
)
from remotejobs.status_files import JobStepIdentity
from remotejobs.status_reporter import InMemoryStatusSink
from remotejobs.transport import RemoteFileInfo

BASE = f"Job100_Step2_{TIMESTAMP}"

SUCCESS_TEXT = (
    "Job=100\nStep=2\nStepTool=MSGFPlus\nWorkDir=/work/Job100_Step2\nStaged=2024-01-17 09:30:00 AM\n"
    "Started=2024-01-17 09:31:00 AM\nFinished=2024-01-17 10:45:00 AM\n"
    "CompCode=0\nCompMsg=\nEvalCode=0\nEvalMsg=\nMgrName=Pub-80-3\n"
)


@pytest.fixture
def sink():
    return InMemoryStatusSink()


@pytest.fixture
def monitor(settings, identity, transport, sink):
    return RemoteMonitor(settings, identity, transport, status_sink=sink)


def _snapshot(task_status=TaskStatus.RUNNING, progress=42.5, **kwargs):
    return JobStatusSnapshot(
        mgr_name="Pub-80-3",
        mgr_status=MgrStatus.RUNNING,
        task_start_time=dt.datetime(2024, 1, 17, 9, 31, tzinfo=dt.timezone.utc),
        last_update=dt.datetime(2024, 1, 17, 10, 0, tzinfo=dt.timezone.utc),
        task_status=task_status,
        progress=progress,
        job=100,
        step=2,
        **kwargs,
    )


# ========== Lifecycle scenarios ==========


def test_scenario_a_unreachable_queue_is_running(settings, identity, transport, remote_root):
    (remote_root / "queue" / STEP_TOOL).rmdir()
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.RUNNING
    assert "possible network outage" in monitor.message


def test_scenario_a_empty_listing_is_running(settings, identity):
    transport = MagicMock()
    transport.list.return_value = []
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.RUNNING
    assert monitor.cached_status_files == []


def test_scenario_b_info_only_is_unstarted(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.info", "Job=100\nStep=2\n")

    assert monitor.poll() == RemoteJobStatus.UNSTARTED


def test_scenario_c_recent_lock_is_running(monitor, queue_dir, now):
    write_file(queue_dir / f"{BASE}.info", "Job=100\n")
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n", modified=now - dt.timedelta(hours=1))

    assert monitor.poll() == RemoteJobStatus.RUNNING
    assert monitor.drain_notices() == []


def test_scenario_d_terminal_file_wins_over_lock(monitor, queue_dir, sink):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)

    assert monitor.poll() == RemoteJobStatus.SUCCESS
    assert monitor.last_result is not None
    assert monitor.last_result.comp_code == 0

    report = sink.latest_report("Pub-80-3")
    assert report is not None
    assert report.mgr_status == MgrStatus.STOPPED
    assert report.task_status == TaskStatus.NO_TASK
    assert report.progress == 100.0


def test_scenario_e_fail_file_with_unnamed_code(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.fail", "Job=100\nStep=2\nCompCode=4\nEvalCode=0\nMgrName=Pub-80-3\n")

    assert monitor.poll() == RemoteJobStatus.FAILED
    result = monitor.last_result
    assert result.comp_code == 4
    assert result.eval_msg == ""
    assert result.outcome.succeeded is False


def test_scenario_f_identity_mismatch_is_undefined(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.fail", "Job=999\nStep=2\nCompCode=1\nEvalCode=0\n")

    assert monitor.poll() == RemoteJobStatus.UNDEFINED
    with pytest.raises(RemoteResultIdentityMismatch):
        monitor.parse_status_result_file()


# ========== State machine details ==========


def test_vanished_files_in_reachable_queue_is_failed(monitor, queue_dir):
    write_file(queue_dir / "Job555_Step1_20240101_0000.info", "Job=555\n")

    assert monitor.poll() == RemoteJobStatus.FAILED
    assert "not even a .info file" in monitor.message


def test_poll_is_idempotent(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_job_status_file(_snapshot(), queue_dir / f"{BASE}.jobstatus")

    first = monitor.poll()
    second = monitor.poll()

    assert first == second == RemoteJobStatus.RUNNING


@pytest.mark.parametrize(
    "task_status, expected",
    [
        (TaskStatus.RUNNING, RemoteJobStatus.RUNNING),
        (TaskStatus.CLOSING, RemoteJobStatus.RUNNING),
        (TaskStatus.FAILED, RemoteJobStatus.FAILED),
        (TaskStatus.STOPPED, RemoteJobStatus.UNDEFINED),
        (TaskStatus.REQUESTING, RemoteJobStatus.UNDEFINED),
        (TaskStatus.NO_TASK, RemoteJobStatus.UNDEFINED),
    ],
)
def test_jobstatus_task_status_mapping(monitor, queue_dir, task_status, expected):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_job_status_file(_snapshot(task_status=task_status), queue_dir / f"{BASE}.jobstatus")

    assert map_task_status(task_status) == expected
    assert monitor.poll() == expected


def test_jobstatus_publishes_step_parameters(monitor, queue_dir, sink, identity):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_job_status_file(_snapshot(progress=42.5), queue_dir / f"{BASE}.jobstatus")

    monitor.poll()

    params = sink.step_parameters[identity]
    assert params["RemoteProgress"] == "42.5"
    assert params["RemoteStart"] == "2024-01-17T09:31:00+00:00"
    assert params["RemoteFinish"] == ""
    assert monitor.remote_progress == 42.5
    assert sink.latest_report("Pub-80-3").task_status == TaskStatus.RUNNING


def test_jobstatus_finish_published_at_full_progress(monitor, queue_dir, sink, identity):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_job_status_file(_snapshot(task_status=TaskStatus.CLOSING, progress=100), queue_dir / f"{BASE}.jobstatus")

    assert monitor.poll() == RemoteJobStatus.RUNNING
    assert sink.step_parameters[identity]["RemoteFinish"] == "2024-01-17T10:00:00+00:00"


def test_terminal_file_wins_over_jobstatus(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_job_status_file(_snapshot(task_status=TaskStatus.RUNNING), queue_dir / f"{BASE}.jobstatus")
    write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)

    assert monitor.poll() == RemoteJobStatus.SUCCESS


def test_info_and_terminal_file_overlap_is_not_an_error(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.info", "Job=100\n")
    write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)

    assert monitor.poll() == RemoteJobStatus.SUCCESS


def test_partial_jobstatus_is_undefined(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_file(queue_dir / f"{BASE}.jobstatus", "<Root><Manager><MgrName>Pub")

    assert monitor.poll() == RemoteJobStatus.UNDEFINED


def test_stale_lock_notice(settings, identity, transport, queue_dir, now):
    received = []
    monitor = RemoteMonitor(settings, identity, transport, on_notice=received.append)
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n", modified=now - dt.timedelta(hours=30))

    assert monitor.poll() == RemoteJobStatus.RUNNING

    notices = monitor.drain_notices()
    assert len(notices) == 1
    assert notices[0].kind == STALE_LOCK
    assert notices[0].age_hours == 30
    assert notices[0].message == (
        "Lock file created over 24 hours ago, but a .jobstatus file has not yet been created"
    )
    assert received == notices
    assert monitor.drain_notices() == []


def test_stale_jobstatus_notice(monitor, queue_dir, now):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n", modified=now - dt.timedelta(hours=60))
    path = write_job_status_file(_snapshot(), queue_dir / f"{BASE}.jobstatus")
    write_file(path, path.read_text(), modified=now - dt.timedelta(hours=25))

    assert monitor.poll() == RemoteJobStatus.RUNNING

    notices = monitor.drain_notices()
    assert [n.kind for n in notices] == [STALE_JOBSTATUS]
    assert notices[0].message == "JobStatus file has not been modified for over 24 hours"


def _listing(*names):
    now = dt.datetime.now(dt.timezone.utc)
    return [RemoteFileInfo(name, f"/queue/{STEP_TOOL}/{name}", 10, now) for name in names]


def test_jobstatus_retrieval_failure_is_running(settings, identity):
    transport = MagicMock()
    transport.host_name = "compute01"
    transport.list.side_effect = [
        _listing(f"{BASE}.lock", f"{BASE}.jobstatus"),
        TransportError("connection reset"),
    ]
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.RUNNING
    assert "Error retrieving the .jobstatus file" in monitor.message


def test_terminal_file_retrieval_failure_is_running(settings, identity):
    transport = MagicMock()
    transport.host_name = "compute01"
    transport.list.side_effect = [_listing(f"{BASE}.success"), _listing(f"{BASE}.success")]
    transport.get.side_effect = TransportError("timeout")
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.RUNNING


def test_unexpected_exception_is_undefined(settings, identity):
    transport = MagicMock()
    transport.list.side_effect = RuntimeError("boom")
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.UNDEFINED


def test_missing_timestamp_is_undefined(settings, transport):
    monitor = RemoteMonitor(settings, JobStepIdentity(job=100, step=2, step_tool=STEP_TOOL), transport)

    assert monitor.poll() == RemoteJobStatus.UNDEFINED
    assert "timestamp is empty" in monitor.message


def test_missing_queue_path_is_undefined(settings, identity, transport):
    settings = settings.model_copy(update={"remote_task_queue_path": None})
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.UNDEFINED


def test_unreachable_bound_reports_failed(settings, identity, transport, remote_root):
    (remote_root / "queue" / STEP_TOOL).rmdir()
    settings = settings.model_copy(update={"max_unreachable_polls": 2})
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.RUNNING
    assert monitor.poll() == RemoteJobStatus.RUNNING
    assert monitor.poll() == RemoteJobStatus.FAILED


def test_unreachable_counter_resets(settings, identity, transport, queue_dir):
    queue_dir.rmdir()
    settings = settings.model_copy(update={"max_unreachable_polls": 1})
    monitor = RemoteMonitor(settings, identity, transport)

    assert monitor.poll() == RemoteJobStatus.RUNNING
    write_file(queue_dir / f"{BASE}.info", "Job=100\n")
    assert monitor.poll() == RemoteJobStatus.UNSTARTED
    (queue_dir / f"{BASE}.info").unlink()
    queue_dir.rmdir()
    assert monitor.poll() == RemoteJobStatus.RUNNING


def test_missing_mgr_name_skips_idle_report(monitor, queue_dir, sink):
    write_file(queue_dir / f"{BASE}.success", "Job=100\nStep=2\nCompCode=0\nEvalCode=0\n")

    assert monitor.poll() == RemoteJobStatus.SUCCESS
    assert sink.reports == []


# ========== Cleanup ==========


def test_delete_remote_job_files_uses_cached_listing(monitor, queue_dir, remote_root):
    write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
    write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)
    (remote_root / "work" / "Job100_Step2").mkdir()

    assert monitor.poll() == RemoteJobStatus.SUCCESS
    assert len(monitor.cached_status_files) == 2

    assert monitor.delete_remote_job_files() is True
    year = str(dt.datetime.now().year)
    assert (remote_root / "queue" / "Completed" / year / f"{BASE}.success").exists()
    assert not (queue_dir / f"{BASE}.lock").exists()
    assert monitor.cached_status_files == []


def test_delete_remote_job_files_lists_when_cache_empty(monitor, queue_dir, remote_root):
    write_file(queue_dir / f"{BASE}.fail", "Job=100\n")
    (remote_root / "work" / "Job100_Step2").mkdir()

    assert monitor.delete_remote_job_files() is True
    year = str(dt.datetime.now().year)
    assert (remote_root / "queue" / "Completed" / year / f"{BASE}.fail").exists()


def test_status_summary(monitor, queue_dir):
    write_file(queue_dir / f"{BASE}.info", "Job=100\n")
    monitor.poll()

    summary = monitor.status_summary()
    assert summary["job_step"] == BASE
    assert summary["status_files"] == [f"{BASE}.info"]
