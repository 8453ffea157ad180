"""Pytest configuration and shared fixtures."""

import datetime as dt
import os
from pathlib import Path
from typing import Optional

import pytest

from remotejobs.config import clear_settings_cache, get_settings_for_testing
from remotejobs.status_files import JobStepIdentity
from remotejobs.transport import LocalTransport

# Keep a developer's environment from leaking into tests
for _name in list(os.environ):
    if _name.startswith("REMOTEJOBS_"):
        del os.environ[_name]

STEP_TOOL = "MSGFPlus"
TIMESTAMP = "20240117_0930"


def set_mtime(path: Path, when: dt.datetime) -> None:
    """Set a file's modification time."""
    timestamp = when.timestamp()
    os.utime(path, (timestamp, timestamp))


def write_file(path: Path, text: str = "", modified: Optional[dt.datetime] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if modified is not None:
        set_mtime(path, modified)
    return path


@pytest.fixture(autouse=True)
def _clear_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def remote_root(tmp_path):
    """Directory standing in for the remote host's filesystem."""
    root = tmp_path / "remote"
    (root / "queue" / STEP_TOOL).mkdir(parents=True)
    (root / "work").mkdir(parents=True)
    return root


@pytest.fixture
def queue_dir(remote_root):
    return remote_root / "queue" / STEP_TOOL


@pytest.fixture
def settings(tmp_path):
    return get_settings_for_testing(
        manager_name="Pub-10-1",
        remote_host_name="compute01",
        remote_task_queue_path="/queue",
        remote_work_dir_path="/work",
        local_work_dir=str(tmp_path / "local"),
        local_task_queue_path=str(tmp_path / "remote" / "queue"),
        step_tools_enabled=STEP_TOOL,
        poll_interval_seconds=1,
    )


@pytest.fixture
def transport(remote_root):
    return LocalTransport(remote_root, host_name="compute01")


@pytest.fixture
def identity():
    return JobStepIdentity(job=100, step=2, step_tool=STEP_TOOL, dataset="QC_Shew_23_01", timestamp=TIMESTAMP)


@pytest.fixture
def now():
    return dt.datetime.now(dt.timezone.utc)
