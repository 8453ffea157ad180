"""Tests for turning task descriptors into terminal files."""

import datetime as dt
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import write_file
from remotejobs.exceptions import DescriptorMissing, ProtocolCorruption
from remotejobs.finalizer import finalize_failed_job, finalize_job

INFO_TEXT = (
    "Job=100\n"
    "Step=2\n"
    "StepTool=MSGFPlus\n"
    "\n"
    "WorkDir=/work/Job100_Step2\n"
    "CompCode=99\n"
    "Staged=2024-01-17 09:30:00 AM\n"
    "Custom=keep=me\n"
    "compmsg=stale\n"
)


@pytest.fixture
def info_path(tmp_path):
    path = write_file(tmp_path / "Job100_Step2_20240117_0930.info", INFO_TEXT)
    write_file(path.with_suffix(".lock"), "Date: 2024-01-17 09:31:00 AM\nManager: Pub-80-3\n")
    return path


def test_finalize_success(info_path):
    started = dt.datetime(2024, 1, 17, 9, 31, 0)
    finished = dt.datetime(2024, 1, 17, 10, 45, 0)

    target = finalize_job(
        info_path,
        "Pub-80-3",
        succeeded=True,
        start_time=started,
        comp_code=0,
        eval_code=3,
        eval_msg="Low counts",
        now=finished,
    )

    assert target.name == "Job100_Step2_20240117_0930.success"
    assert not info_path.exists()
    assert not info_path.with_suffix(".lock").exists()
    assert target.read_text().splitlines() == [
        "Job=100",
        "Step=2",
        "StepTool=MSGFPlus",
        "",
        "WorkDir=/work/Job100_Step2",
        "Staged=2024-01-17 09:30:00 AM",
        "Custom=keep=me",
        "Started=2024-01-17 09:31:00 AM",
        "Finished=2024-01-17 10:45:00 AM",
        "CompCode=0",
        "CompMsg=",
        "EvalCode=3",
        "EvalMsg=Low counts",
        "MgrName=Pub-80-3",
    ]


def test_finalize_without_start_time(info_path):
    target = finalize_job(info_path, "Pub-80-3", succeeded=False, comp_code=1, comp_msg="Crashed")

    assert target.suffix == ".fail"
    lines = target.read_text().splitlines()
    assert not any(line.startswith("Started=") for line in lines)
    assert "CompMsg=Crashed" in lines


def test_finalize_keeps_unrecognized_keys_in_order(tmp_path):
    info = write_file(
        tmp_path / "Job1_Step1_x.info", "Zeta=1\nJob=1\nAlpha=2\nStep=1\nMgrName=old\nMiddle=3\n"
    )

    target = finalize_job(info, "Pub-1", succeeded=True)

    lines = target.read_text().splitlines()
    preserved = [line for line in lines if line.split("=")[0] in {"Zeta", "Job", "Alpha", "Step", "Middle"}]
    assert preserved == ["Zeta=1", "Job=1", "Alpha=2", "Step=1", "Middle=3"]
    assert lines[-1] == "MgrName=Pub-1"
    assert sum(line.startswith("MgrName=") for line in lines) == 1


def test_finalize_descriptor_without_trailing_newline(tmp_path):
    info = write_file(tmp_path / "Job1_Step1_x.info", "Job=1\nStep=1")

    lines = finalize_job(info, "Pub-1", succeeded=True).read_text().splitlines()

    assert lines[:2] == ["Job=1", "Step=1"]
    assert lines[2].startswith("Finished=")


def test_orphaned_lock_is_deleted(tmp_path):
    info = tmp_path / "Job1_Step1_x.info"
    lock = write_file(info.with_suffix(".lock"), "Manager: Pub-1\n")

    with pytest.raises(DescriptorMissing) as excinfo:
        finalize_job(info, "Pub-1", succeeded=True)

    assert not lock.exists()
    assert "orphaned lock deleted" in excinfo.value.message


def test_missing_info_and_lock(tmp_path):
    with pytest.raises(DescriptorMissing):
        finalize_job(tmp_path / "Job1_Step1_x.info", "Pub-1", succeeded=True)


def test_existing_terminal_file_is_never_rewritten(info_path):
    existing = write_file(info_path.with_suffix(".fail"), "CompCode=1\n")

    with pytest.raises(ProtocolCorruption):
        finalize_job(info_path, "Pub-80-3", succeeded=True)

    assert existing.read_text() == "CompCode=1\n"
    assert not info_path.with_suffix(".success").exists()
    assert not info_path.with_suffix(".lock").exists()
    assert info_path.exists()


def test_lock_removed_when_rewrite_fails(info_path):
    real_unlink = Path.unlink

    def fail_on_info(path, *args, **kwargs):
        if path.suffix == ".info":
            raise PermissionError("read-only file system")
        return real_unlink(path, *args, **kwargs)

    with patch.object(Path, "unlink", autospec=True, side_effect=fail_on_info):
        with pytest.raises(PermissionError):
            finalize_job(info_path, "Pub-80-3", succeeded=True)

    assert info_path.exists()
    assert not info_path.with_suffix(".success").exists()
    assert not info_path.with_suffix(".lock").exists()


def test_rewrite_error_survives_vanished_cleanup_files(info_path):
    def vanished(path, *args, **kwargs):
        if path.suffix == ".info":
            raise PermissionError("read-only file system")
        raise FileNotFoundError(2, "No such file", str(path))

    with patch.object(Path, "unlink", autospec=True, side_effect=vanished) as unlink:
        with pytest.raises(PermissionError):
            finalize_job(info_path, "Pub-80-3", succeeded=True)

    assert [call.args[0].suffix for call in unlink.call_args_list] == [".info", ".success", ".lock"]


def test_missing_lock_is_not_an_error(info_path):
    info_path.with_suffix(".lock").unlink()

    target = finalize_job(info_path, "Pub-80-3", succeeded=True)

    assert target.exists()
    assert not info_path.exists()


def test_finalize_failed_job(info_path):
    target = finalize_failed_job(info_path, "Pub-80-3", "WorkDir missing from .info file")

    lines = target.read_text().splitlines()
    assert target.suffix == ".fail"
    assert "CompCode=1" in lines
    assert "CompMsg=WorkDir missing from .info file" in lines
    assert not info_path.with_suffix(".lock").exists()
