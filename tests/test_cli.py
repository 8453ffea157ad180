"""Tests for the rjobs CLI commands."""

import datetime as dt
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conftest import STEP_TOOL, TIMESTAMP, write_file
from remotejobs import __version__
from remotejobs.cli import app

runner = CliRunner()

BASE = f"Job100_Step2_{TIMESTAMP}"
JOB_ARGS = ["100", "2", "--step-tool", STEP_TOOL, "--timestamp", TIMESTAMP]

SUCCESS_TEXT = (
    "Job=100\nStep=2\nStepTool=MSGFPlus\nWorkDir=/work/Job100_Step2\n"
    "Started=2024-01-17 09:31:00 AM\nFinished=2024-01-17 10:45:00 AM\n"
    "CompCode=0\nCompMsg=\nEvalCode=0\nEvalMsg=\nMgrName=Pub-80-3\n"
)


@pytest.fixture
def cli_settings(settings):
    with patch("remotejobs.cli.get_settings", return_value=settings):
        yield settings


@pytest.fixture
def cli_transport(transport):
    with patch("remotejobs.cli.build_transport", return_value=transport):
        yield transport


class TestGeneralCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_info(self, cli_settings):
        result = runner.invoke(app, ["info"])

        assert result.exit_code == 0
        assert "RemoteJobs Info" in result.output
        assert "compute01" in result.output
        assert "all events" in result.output
        assert "not fully configured" not in result.output

    def test_info_warns_when_unconfigured(self, settings):
        with patch("remotejobs.cli.get_settings", return_value=settings.model_copy(update={"remote_host_name": None})):
            result = runner.invoke(app, ["info"])

        assert result.exit_code == 0
        assert "not fully configured" in result.output

    def test_info_from_config_file(self, tmp_path):
        config = write_file(tmp_path / "rjobs.yaml", "manager_name: Pub-42-1\n")

        result = runner.invoke(app, ["info", "--config", str(config)])

        assert result.exit_code == 0
        assert "Pub-42-1" in result.output

    def test_info_with_unreadable_config(self, tmp_path):
        result = runner.invoke(app, ["info", "--config", str(tmp_path / "absent.yaml")])

        assert result.exit_code == 1
        assert "Unable to load settings" in result.output

    def test_basename(self):
        result = runner.invoke(app, ["basename", "100", "2", TIMESTAMP])

        assert result.exit_code == 0
        assert BASE in result.output

    def test_basename_requires_timestamp(self):
        result = runner.invoke(app, ["basename", "100", "2", " "])

        assert result.exit_code == 1
        assert "CONFIGURATION_ERROR" in result.output


class TestMonitorCommands:
    def test_status_running(self, cli_settings, cli_transport, queue_dir):
        write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")

        result = runner.invoke(app, ["status", *JOB_ARGS])

        assert result.exit_code == 0
        assert "Running" in result.output

    def test_status_success(self, cli_settings, cli_transport, queue_dir):
        write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)

        result = runner.invoke(app, ["status", *JOB_ARGS])

        assert result.exit_code == 0
        assert "Success" in result.output
        assert "CompCode=0" in result.output

    def test_status_undefined_exits_nonzero(self, cli_settings, cli_transport, queue_dir):
        write_file(queue_dir / f"{BASE}.fail", "Job=100\nStep=2\nCompCode=abc\nEvalCode=0\n")

        result = runner.invoke(app, ["status", *JOB_ARGS])

        assert result.exit_code == 1
        assert "Undefined" in result.output

    def test_status_without_remote_host(self, settings):
        with patch("remotejobs.cli.get_settings", return_value=settings.model_copy(update={"remote_host_name": None})):
            result = runner.invoke(app, ["status", *JOB_ARGS])

        assert result.exit_code == 1
        assert "remote_host_name is not set" in result.output

    def test_watch_until_success(self, cli_settings, cli_transport, queue_dir, remote_root):
        write_file(queue_dir / f"{BASE}.lock", "Manager: Pub-80-3\n")
        write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)
        (remote_root / "work" / "Job100_Step2").mkdir()

        result = runner.invoke(app, ["watch", *JOB_ARGS])

        assert result.exit_code == 0
        assert "Success" in result.output
        assert not (queue_dir / f"{BASE}.success").exists()

    def test_watch_failure_without_archive(self, cli_settings, cli_transport, queue_dir):
        fail_file = write_file(queue_dir / f"{BASE}.fail", "Job=100\nStep=2\nCompCode=1\nCompMsg=Crashed\nEvalCode=0\n")

        result = runner.invoke(app, ["watch", *JOB_ARGS, "--no-archive"])

        assert result.exit_code == 1
        assert "Failed" in result.output
        assert "CompMsg=Crashed" in result.output
        assert fail_file.exists()

    def test_archive(self, cli_settings, cli_transport, queue_dir, remote_root):
        write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)
        (remote_root / "work" / "Job100_Step2").mkdir()

        result = runner.invoke(app, ["archive", *JOB_ARGS])

        assert result.exit_code == 0
        year = str(dt.datetime.now().year)
        assert (remote_root / "queue" / "Completed" / year / f"{BASE}.success").exists()

    def test_archive_failure(self, cli_settings, cli_transport, queue_dir):
        write_file(queue_dir / f"{BASE}.success", SUCCESS_TEXT)

        result = runner.invoke(app, ["archive", *JOB_ARGS])

        assert result.exit_code == 1
        assert "Unable to archive" in result.output

    def test_submit(self, cli_settings, cli_transport, queue_dir):
        result = runner.invoke(app, ["submit", *JOB_ARGS])

        assert result.exit_code == 0
        lines = (queue_dir / f"{BASE}.info").read_text().splitlines()
        assert lines[:4] == ["Job=100", "Step=2", f"StepTool={STEP_TOOL}", "WorkDir=/work/Job100_Step2"]


class TestWorkerCommands:
    def test_finalize(self, cli_settings, queue_dir):
        info = write_file(queue_dir / f"{BASE}.info", "Job=100\nStep=2\nWorkDir=/work/Job100_Step2\n")

        result = runner.invoke(app, ["finalize", str(info), "--failed", "--comp-code", "1", "--comp-msg", "Crashed"])

        assert result.exit_code == 0
        lines = info.with_suffix(".fail").read_text().splitlines()
        assert "CompMsg=Crashed" in lines
        assert "MgrName=Pub-10-1" in lines

    def test_finalize_missing_info(self, cli_settings, queue_dir):
        result = runner.invoke(app, ["finalize", str(queue_dir / f"{BASE}.info")])

        assert result.exit_code == 1
        assert "DESCRIPTOR_MISSING" in result.output

    def test_claim(self, cli_settings, queue_dir):
        write_file(queue_dir / f"{BASE}.info", "Job=100\nStep=2\nWorkDir=/work/Job100_Step2\n")

        with patch("remotejobs.task_queue.time.sleep"):
            result = runner.invoke(app, ["claim"])

        assert result.exit_code == 0
        assert f"Claimed {BASE}" in result.output
        assert (queue_dir / f"{BASE}.lock").exists()

    def test_claim_nothing_available(self, cli_settings):
        result = runner.invoke(app, ["claim"])

        assert result.exit_code == 0
        assert "No tasks available" in result.output

    def test_purge(self, cli_settings, queue_dir, now):
        write_file(queue_dir / "Job1_Step1_a.lock", "", modified=now - dt.timedelta(hours=30))

        result = runner.invoke(app, ["purge"])

        assert result.exit_code == 0
        assert "Deleted 1 aged file(s)" in result.output
