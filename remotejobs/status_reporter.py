"""Sinks that receive remote status and step parameters from the monitor.

The monitor never stores status itself. After each .jobstatus parse it
publishes the RemoteProgress, RemoteStart and RemoteFinish step parameters
plus a RemoteStatusReport, and when a terminal file appears it pushes a
one-shot report marking the remote manager idle.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from remotejobs.jobstatus import JobStatusSnapshot, MgrStatus, TaskStatus, TaskStatusDetail
from remotejobs.outcome import IdleReportFields
from remotejobs.status_files import JobStepIdentity

LOGGER = logging.getLogger("remotejobs.status_reporter")


@dataclass
class RemoteStatusReport:
    """Status of the manager running a job step on the remote host."""

    mgr_name: str
    mgr_status: MgrStatus
    task_status: TaskStatus
    task_status_detail: TaskStatusDetail
    progress: float
    task_start_time: Optional[dt.datetime] = None
    last_update: Optional[dt.datetime] = None
    tool: str = ""
    current_operation: str = ""
    job: int = 0
    step: int = 0
    dataset: str = ""
    process_id: int = 0
    cpu_utilization: int = 0
    free_memory_mb: float = 0.0
    prog_runner_process_id: int = 0
    prog_runner_core_usage: float = 0.0
    most_recent_log_message: str = ""
    most_recent_job_info: str = ""
    spectrum_count: int = 0
    core_usage_history: List[Tuple[dt.datetime, float]] = field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: JobStatusSnapshot) -> "RemoteStatusReport":
        return cls(
            mgr_name=snapshot.mgr_name,
            mgr_status=snapshot.mgr_status,
            task_status=snapshot.task_status,
            task_status_detail=snapshot.task_status_detail,
            progress=snapshot.progress,
            task_start_time=snapshot.task_start_time,
            last_update=snapshot.effective_last_update,
            tool=snapshot.tool,
            current_operation=snapshot.current_operation,
            job=snapshot.job,
            step=snapshot.step,
            dataset=snapshot.dataset,
            process_id=snapshot.process_id,
            cpu_utilization=snapshot.cpu_utilization,
            free_memory_mb=snapshot.free_memory_mb,
            prog_runner_process_id=snapshot.prog_runner_process_id,
            prog_runner_core_usage=snapshot.prog_runner_core_usage,
            most_recent_log_message=snapshot.most_recent_log_message,
            most_recent_job_info=snapshot.most_recent_job_info,
            spectrum_count=snapshot.spectrum_count,
            core_usage_history=list(snapshot.core_usage_history),
        )

    @classmethod
    def idle(
        cls,
        fields: IdleReportFields,
        succeeded: bool,
        file_modified: Optional[dt.datetime] = None,
    ) -> "RemoteStatusReport":
        """Report a remote manager that has just finished a task."""
        return cls(
            mgr_name=fields.mgr_name,
            mgr_status=MgrStatus.STOPPED,
            task_status=TaskStatus.NO_TASK,
            task_status_detail=TaskStatusDetail.NO_TASK,
            progress=100.0 if succeeded else 0.0,
            task_start_time=fields.started,
            last_update=fields.finished or file_modified,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "mgr_name": self.mgr_name,
            "mgr_status": self.mgr_status.value,
            "task_status": self.task_status.value,
            "task_status_detail": self.task_status_detail.value,
            "progress": self.progress,
            "task_start_time": self.task_start_time.isoformat() if self.task_start_time else None,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "tool": self.tool,
            "job": self.job,
            "step": self.step,
            "dataset": self.dataset,
        }


class StatusSink(ABC):
    """Bookkeeping collaborator that persists remote status."""

    @abstractmethod
    def publish_step_parameters(self, identity: JobStepIdentity, params: Dict[str, str]) -> None:
        """Store derived step parameters for the job step."""

    @abstractmethod
    def update_remote_status(self, report: RemoteStatusReport) -> None:
        """Push the status of a remote manager."""


class InMemoryStatusSink(StatusSink):
    """Keeps everything published, keyed by job step and manager name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.step_parameters: Dict[JobStepIdentity, Dict[str, str]] = {}
        self.reports: List[RemoteStatusReport] = []

    def publish_step_parameters(self, identity: JobStepIdentity, params: Dict[str, str]) -> None:
        with self._lock:
            self.step_parameters.setdefault(identity, {}).update(params)

    def update_remote_status(self, report: RemoteStatusReport) -> None:
        with self._lock:
            self.reports.append(report)

    def latest_report(self, mgr_name: Optional[str] = None) -> Optional[RemoteStatusReport]:
        with self._lock:
            for report in reversed(self.reports):
                if mgr_name is None or report.mgr_name == mgr_name:
                    return report
        return None


class LoggingStatusSink(StatusSink):
    """Writes published status to the log."""

    def publish_step_parameters(self, identity: JobStepIdentity, params: Dict[str, str]) -> None:
        LOGGER.info(
            "Step parameters for %s: %s",
            identity.description,
            ", ".join(f"{key}={value}" for key, value in params.items()),
        )

    def update_remote_status(self, report: RemoteStatusReport) -> None:
        LOGGER.info(
            "Remote manager %s: %s / %s (%s), progress %.2f",
            report.mgr_name,
            report.mgr_status.value,
            report.task_status.value,
            report.task_status_detail.value,
            report.progress,
        )
