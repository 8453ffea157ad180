"""Determine the status of a job step running on a remote host.

The monitor has no channel to the worker other than the sentinel files in
the task queue. Each poll lists those files and infers a RemoteJobStatus:

- terminal files (.success / .fail) win over everything else
- a .lock means the task was claimed; its .jobstatus snapshot, if any,
  supplies the running state until a terminal file appears
- only a .info means the task has not been picked up
- no files at all means either a network outage (Running) or files that
  vanished from a reachable queue (Failed)

Any unexpected error yields Undefined, which callers must escalate.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from remotejobs.config import Settings
from remotejobs.exceptions import ConfigurationError, JobStatusParseError, ProtocolCorruption
from remotejobs.jobstatus import (
    JobStatusSnapshot,
    TaskStatus,
    parse_job_status_file,
    remote_step_parameters,
)
from remotejobs.outcome import RemoteResult, parse_status_result_file, read_idle_report_fields
from remotejobs.status_files import (
    SUCCESS_EXTENSION,
    JobStepIdentity,
    RemoteTransferUtility,
    find_status_file,
)
from remotejobs.status_reporter import RemoteStatusReport, StatusSink
from remotejobs.transport import RemoteFileInfo, Transport

LOGGER = logging.getLogger("remotejobs.remote_monitor")


class RemoteJobStatus(str, Enum):
    UNDEFINED = "Undefined"
    UNSTARTED = "Unstarted"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteJobStatus.SUCCESS, RemoteJobStatus.FAILED)


# Task status values other than these should never appear in a task queue .jobstatus
TASK_STATUS_TO_REMOTE_STATUS = {
    TaskStatus.RUNNING: RemoteJobStatus.RUNNING,
    TaskStatus.CLOSING: RemoteJobStatus.RUNNING,
    TaskStatus.FAILED: RemoteJobStatus.FAILED,
}

STALE_LOCK = "stale_lock"
STALE_JOBSTATUS = "stale_jobstatus"


@dataclass(frozen=True)
class StaleFileNotice:
    """A sentinel file that has not progressed for longer than expected."""

    kind: str
    file_name: str
    age_hours: int
    job: int
    step: int
    threshold_hours: float = 24

    @property
    def message(self) -> str:
        if self.kind == STALE_LOCK:
            return (
                f"Lock file created over {self.threshold_hours:g} hours ago, "
                "but a .jobstatus file has not yet been created"
            )
        return f"JobStatus file has not been modified for over {self.threshold_hours:g} hours"


def map_task_status(task_status: TaskStatus) -> RemoteJobStatus:
    return TASK_STATUS_TO_REMOTE_STATUS.get(task_status, RemoteJobStatus.UNDEFINED)


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class RemoteMonitor:
    """Polls the task queue for one job step.

    One instance per monitored job step; instances share nothing except the
    transport, so different job steps can be polled concurrently. Polls of
    the same instance must not overlap.

    Attributes:
        message: Most recent error or warning, for operators.
        remote_progress: Progress from the latest .jobstatus or terminal file.
        result_file_path: Local copy of the terminal file from the last poll.
        last_result: The validated terminal file from the last poll.
    """

    def __init__(
        self,
        settings: Settings,
        identity: JobStepIdentity,
        transport: Transport,
        *,
        status_sink: Optional[StatusSink] = None,
        on_notice: Optional[Callable[[StaleFileNotice], None]] = None,
        local_work_dir: Optional[Path] = None,
        clock: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self.settings = settings
        self.identity = identity
        self.transfer = RemoteTransferUtility(
            settings, identity, transport, local_work_dir=local_work_dir, clock=clock
        )
        self.status_sink = status_sink
        self.on_notice = on_notice
        self._clock = clock

        self.message = ""
        self.remote_progress = 0.0
        self.last_snapshot: Optional[JobStatusSnapshot] = None
        self.result_file_path: Optional[Path] = None
        self.last_result: Optional[RemoteResult] = None

        self._cached_status_files: List[str] = []
        self._notices: List[StaleFileNotice] = []
        self._unreachable_polls = 0

    @property
    def cached_status_files(self) -> List[str]:
        """Full remote paths of the status files seen by the last poll."""
        return list(self._cached_status_files)

    def drain_notices(self) -> List[StaleFileNotice]:
        """Return and clear the notices raised since the last drain."""
        notices, self._notices = self._notices, []
        return notices

    # ------------------------------------------------------------------
    # Logging helpers
    # ------------------------------------------------------------------

    def _log_error(self, message: str, exc_info: bool = False) -> None:
        self.message = message
        LOGGER.error("%s", message, exc_info=exc_info)

    def _log_warning(self, message: str) -> None:
        self.message = message
        LOGGER.warning("%s", message)

    def _notify_stale(self, kind: str, info: RemoteFileInfo, age_hours: float, threshold: float) -> None:
        notice = StaleFileNotice(
            kind=kind,
            file_name=info.name,
            age_hours=int(round(age_hours)),
            job=self.identity.job,
            step=self.identity.step,
            threshold_hours=threshold,
        )
        self.message = notice.message
        LOGGER.warning("%s: %s (%d hours)", notice.message, info.name, notice.age_hours)
        self._notices.append(notice)
        if self.on_notice is not None:
            self.on_notice(notice)

    def _age_hours(self, info: RemoteFileInfo) -> float:
        return (self._clock() - info.last_write_utc).total_seconds() / 3600.0

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _validate_settings(self) -> None:
        if not self.settings.remote_task_queue_path:
            raise ConfigurationError("remote_task_queue_path is not defined")
        if not self.identity.step_tool:
            raise ConfigurationError(f"Step tool is not defined for {self.identity.description}")
        if not self.identity.timestamp.strip():
            raise ConfigurationError(
                f"Remote timestamp is empty for {self.identity.description}; cannot find status files"
            )

    def poll(self) -> RemoteJobStatus:
        """Determine the status of the remotely running job step."""
        try:
            self._validate_settings()
        except ConfigurationError as exc:
            self._log_error(f"Error initializing parameters for the remote transfer utility: {exc}")
            return RemoteJobStatus.UNDEFINED

        try:
            return self._poll()
        except Exception:
            self._log_error("Error reading the status file for the remotely running job", exc_info=True)
            return RemoteJobStatus.UNDEFINED

    def _poll(self) -> RemoteJobStatus:
        transfer = self.transfer
        LOGGER.debug("Retrieving status files for %s", transfer.job_step_description)

        status_files = transfer.list_status_files()
        self._cached_status_files = sorted(info.full_path for info in status_files.values())
        self.result_file_path = None
        self.last_result = None

        if not status_files:
            return self._no_status_files()
        self._unreachable_polls = 0

        lock_file = find_status_file(transfer.lock_file, status_files)
        success_file = find_status_file(transfer.success_file, status_files)
        fail_file = find_status_file(transfer.fail_file, status_files)

        if lock_file is not None:
            job_finished = success_file is not None or fail_file is not None
            job_status_file = find_status_file(transfer.job_status_file, status_files)

            if job_status_file is not None:
                age = self._age_hours(job_status_file)
                if age > self.settings.stale_jobstatus_hours:
                    self._notify_stale(STALE_JOBSTATUS, job_status_file, age, self.settings.stale_jobstatus_hours)

                LOGGER.debug("Retrieve status file %s from %s", job_status_file.name, transfer.remote_host_name)
                local_path = transfer.retrieve_job_status_file()
                if local_path is None:
                    self._log_warning(
                        f"Error retrieving the .jobstatus file for {transfer.job_step_description} "
                        f"on {transfer.remote_host_name}"
                    )
                    return RemoteJobStatus.RUNNING

                job_status = self._parse_job_status_file(local_path)
                if not job_finished:
                    return job_status

            elif not job_finished:
                age = self._age_hours(lock_file)
                if age > self.settings.stale_lock_hours:
                    self._notify_stale(STALE_LOCK, lock_file, age, self.settings.stale_lock_hours)
                return RemoteJobStatus.RUNNING

        if success_file is not None:
            LOGGER.info(".success file found for %s on %s", transfer.job_step_description, transfer.remote_host_name)
            return self._resolve_terminal_file(success_file, RemoteJobStatus.SUCCESS)

        if fail_file is not None:
            self._log_warning(f".fail file found for {transfer.job_step_description} on {transfer.remote_host_name}")
            return self._resolve_terminal_file(fail_file, RemoteJobStatus.FAILED)

        # A .jobstatus without a .lock is not a supported state; treat as not started
        return RemoteJobStatus.UNSTARTED

    def _no_status_files(self) -> RemoteJobStatus:
        transfer = self.transfer
        task_queue_items = transfer.list_remote_directory(transfer.remote_task_queue_path)
        if task_queue_items:
            self._unreachable_polls = 0
            self._log_error(
                f"No status files were found for {transfer.job_step_description}, not even a .info file"
            )
            return RemoteJobStatus.FAILED

        self._unreachable_polls += 1
        limit = self.settings.max_unreachable_polls
        if limit is not None and self._unreachable_polls > limit:
            self._log_error(
                f"Remote task queue path has been empty or not accessible for "
                f"{self._unreachable_polls} consecutive polls"
            )
            return RemoteJobStatus.FAILED

        self._log_warning("Remote task queue path is empty or not accessible; possible network outage")
        return RemoteJobStatus.RUNNING

    def _parse_job_status_file(self, local_path: Path) -> RemoteJobStatus:
        try:
            snapshot = parse_job_status_file(local_path)
        except JobStatusParseError as exc:
            # Usually a partial file retrieved while the worker was writing it
            self._log_error(f"Error reading the .jobstatus file for the remotely running job: {exc}")
            return RemoteJobStatus.UNDEFINED

        self.last_snapshot = snapshot
        job_status = map_task_status(snapshot.task_status)
        if job_status is RemoteJobStatus.UNDEFINED:
            self._log_error(
                f"Unexpected task status '{snapshot.task_status.value}' in the .jobstatus file "
                f"for {self.identity.description}"
            )

        self.remote_progress = snapshot.progress
        if self.status_sink is not None:
            self.status_sink.publish_step_parameters(self.identity, remote_step_parameters(snapshot))
            self.status_sink.update_remote_status(RemoteStatusReport.from_snapshot(snapshot))
        return job_status

    def _resolve_terminal_file(self, info: RemoteFileInfo, status: RemoteJobStatus) -> RemoteJobStatus:
        """Retrieve and validate a terminal file, then report the remote manager idle."""
        LOGGER.debug("Retrieve status file %s from %s", info.name, self.transfer.remote_host_name)
        local_path = self.transfer.retrieve_status_file(info.name)
        if local_path is None:
            self._log_warning(f"Unable to retrieve {info.name} from {self.transfer.remote_host_name}; will retry")
            return RemoteJobStatus.RUNNING

        self.result_file_path = local_path
        try:
            self.last_result = self.parse_status_result_file(local_path)
        except ProtocolCorruption:
            return RemoteJobStatus.UNDEFINED

        self._report_remote_manager_idle(local_path)
        return status

    def _report_remote_manager_idle(self, local_path: Path) -> None:
        try:
            LOGGER.debug("Parse status file %s", local_path.name)
            fields = read_idle_report_fields(local_path)
            if not fields.mgr_name:
                LOGGER.error(
                    "File %s did not contain parameter MgrName; cannot update status for the remote manager",
                    local_path.name,
                )
                return

            succeeded = local_path.name.lower().endswith(SUCCESS_EXTENSION)
            modified = dt.datetime.fromtimestamp(local_path.stat().st_mtime, tz=dt.timezone.utc)
            report = RemoteStatusReport.idle(fields, succeeded, file_modified=modified)
            self.remote_progress = report.progress
            if self.status_sink is not None:
                self.status_sink.update_remote_status(report)
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.error("Error reading %s to report the remote manager as idle: %s", local_path.name, exc)

    # ------------------------------------------------------------------
    # Results and cleanup
    # ------------------------------------------------------------------

    def parse_status_result_file(self, path: Optional[Path] = None) -> RemoteResult:
        """Parse the terminal file retrieved by the last poll.

        Raises:
            ProtocolCorruption: The file is missing or fails validation.
        """
        target = path or self.result_file_path
        if target is None:
            target = self.transfer.local_work_dir / self.transfer.success_file
            if not target.exists():
                target = self.transfer.local_work_dir / self.transfer.fail_file
        try:
            return parse_status_result_file(target, self.identity.job, self.identity.step)
        except ProtocolCorruption as exc:
            self._log_error(exc.message)
            raise

    def delete_remote_job_files(self) -> bool:
        """Delete the remote work directory and archive the status files.

        Uses the status files cached by the last poll when available.
        """
        try:
            self._validate_settings()
        except ConfigurationError as exc:
            self._log_error(f"Error initializing parameters for the remote transfer utility: {exc}")
            return False

        status_files = self._cached_status_files
        if not status_files:
            status_files = sorted(info.full_path for info in self.transfer.list_status_files().values())

        LOGGER.debug("Archiving status files for %s", self.transfer.job_step_description)
        success = self.transfer.archive_and_clean(status_files)
        if not success:
            self.message = self.transfer.message
        self._cached_status_files = []
        return success

    def status_summary(self) -> Dict[str, object]:
        return {
            "job_step": str(self.identity),
            "remote_progress": self.remote_progress,
            "message": self.message,
            "status_files": [Path(p).name for p in self._cached_status_files],
        }
