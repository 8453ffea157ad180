"""Watch remotely running job steps until each reaches a terminal status.

Holds one RemoteMonitor per job step and polls them on an interval,
optionally in parallel. Terminal job steps are resolved (result parsed and
published, status files archived) and removed from the watch list.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from remotejobs.config import Settings
from remotejobs.exceptions import ProtocolCorruption
from remotejobs.jobstatus import PARAM_REMOTE_FINISH, PARAM_REMOTE_START
from remotejobs.notifications import NotificationEvent, NotificationManager, notice_to_event
from remotejobs.outcome import RemoteResult, completion_code_name
from remotejobs.remote_monitor import RemoteJobStatus, RemoteMonitor
from remotejobs.status_files import JobStepIdentity
from remotejobs.status_reporter import StatusSink
from remotejobs.transport import Transport

LOGGER = logging.getLogger("remotejobs.watcher")

PARAM_REMOTE_COMP_CODE = "RemoteCompCode"
PARAM_REMOTE_COMP_MSG = "RemoteCompMsg"


@dataclass
class ResolvedJobStep:
    """Final disposition of a watched job step."""
    identity: JobStepIdentity
    status: RemoteJobStatus
    result: Optional[RemoteResult] = None
    archived: bool = False
    message: str = ""


class JobStepWatcher:
    """Poll a set of job steps running on the remote host."""

    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        *,
        status_sink: Optional[StatusSink] = None,
        notification_manager: Optional[NotificationManager] = None,
        max_workers: int = 1,
        archive_on_completion: bool = True,
        monitor_factory: Optional[Callable[[JobStepIdentity], RemoteMonitor]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the watcher.

        Args:
            settings: Remote job settings
            transport: Transport shared by every monitor
            status_sink: Receives step parameters and remote manager status
            notification_manager: Receives stale-file and error events
            max_workers: Polls run in a thread pool when greater than 1
            archive_on_completion: Archive and clean terminal job steps
            monitor_factory: Optional custom monitor constructor
        """
        self.settings = settings
        self.transport = transport
        self.status_sink = status_sink
        self.notification_manager = notification_manager
        self.max_workers = max(1, max_workers)
        self.archive_on_completion = archive_on_completion
        self._monitor_factory = monitor_factory or self._default_monitor
        self._sleep = sleep

        self.monitors: Dict[JobStepIdentity, RemoteMonitor] = {}
        self.resolved: Dict[JobStepIdentity, ResolvedJobStep] = {}
        self.running = False

    def _default_monitor(self, identity: JobStepIdentity) -> RemoteMonitor:
        return RemoteMonitor(self.settings, identity, self.transport, status_sink=self.status_sink)

    def add(self, identity: JobStepIdentity) -> RemoteMonitor:
        """Start watching a job step. Adding the same step twice is a no-op."""
        monitor = self.monitors.get(identity)
        if monitor is None:
            monitor = self._monitor_factory(identity)
            self.monitors[identity] = monitor
            self.resolved.pop(identity, None)
            LOGGER.info("Watching %s", identity)
        return monitor

    def remove(self, identity: JobStepIdentity) -> None:
        self.monitors.pop(identity, None)

    @property
    def pending(self) -> List[JobStepIdentity]:
        return list(self.monitors)

    def _notify(self, event: NotificationEvent) -> None:
        if self.notification_manager is not None:
            self.notification_manager.notify(event)

    def _poll_one(self, identity: JobStepIdentity, monitor: RemoteMonitor) -> RemoteJobStatus:
        status = monitor.poll()
        for notice in monitor.drain_notices():
            self._notify(notice_to_event(notice, remote_host=self.settings.remote_host_name))
        return status

    def run_once(self) -> Dict[JobStepIdentity, RemoteJobStatus]:
        """Poll every watched job step once and handle terminal statuses."""
        items = list(self.monitors.items())
        if not items:
            return {}

        if self.max_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(items))) as executor:
                futures = {
                    identity: executor.submit(self._poll_one, identity, monitor) for identity, monitor in items
                }
                statuses = {identity: future.result() for identity, future in futures.items()}
        else:
            statuses = {identity: self._poll_one(identity, monitor) for identity, monitor in items}

        for identity, status in statuses.items():
            monitor = self.monitors[identity]
            if status is RemoteJobStatus.UNDEFINED:
                self._escalate(identity, monitor)
            elif status.is_terminal:
                self._resolve(identity, monitor, status)
            else:
                LOGGER.debug("%s is %s (progress %.2f)", identity, status.value, monitor.remote_progress)

        return statuses

    def _escalate(self, identity: JobStepIdentity, monitor: RemoteMonitor) -> None:
        LOGGER.error("Unable to determine the status of %s: %s", identity, monitor.message)
        self._notify(
            NotificationEvent(
                job=identity.job,
                step=identity.step,
                job_step=str(identity),
                event_type="error",
                state=RemoteJobStatus.UNDEFINED.value,
                message=monitor.message or "Remote job status is undefined",
                priority="high",
                remote_host=self.settings.remote_host_name,
            )
        )
        self.resolved[identity] = ResolvedJobStep(identity, RemoteJobStatus.UNDEFINED, message=monitor.message)
        self.remove(identity)

    def _record_failure(self, identity: JobStepIdentity, monitor: RemoteMonitor) -> None:
        """Close a step the monitor reported as failed without retrieving a .fail file."""
        LOGGER.warning("%s failed remotely without a .fail file: %s", identity, monitor.message)
        self._notify(
            NotificationEvent(
                job=identity.job,
                step=identity.step,
                job_step=str(identity),
                event_type="failure",
                state=RemoteJobStatus.FAILED.value,
                message=monitor.message or ".fail file not found",
                priority="high",
                remote_host=self.settings.remote_host_name,
            )
        )
        self.resolved[identity] = ResolvedJobStep(identity, RemoteJobStatus.FAILED, message=monitor.message)
        self.remove(identity)

    def _publish_outcome(self, identity: JobStepIdentity, result: RemoteResult) -> None:
        if self.status_sink is None:
            return
        params = {
            PARAM_REMOTE_COMP_CODE: str(result.comp_code),
            PARAM_REMOTE_COMP_MSG: result.comp_msg,
        }
        if result.remote_start is not None:
            params[PARAM_REMOTE_START] = result.remote_start.isoformat()
        if result.remote_finish is not None:
            params[PARAM_REMOTE_FINISH] = result.remote_finish.isoformat()
        self.status_sink.publish_step_parameters(identity, params)

    def _resolve(self, identity: JobStepIdentity, monitor: RemoteMonitor, status: RemoteJobStatus) -> None:
        result = monitor.last_result
        if result is None and status is RemoteJobStatus.FAILED and monitor.result_file_path is None:
            self._record_failure(identity, monitor)
            return
        if result is None:
            try:
                result = monitor.parse_status_result_file()
            except ProtocolCorruption as exc:
                LOGGER.error("Terminal file for %s is invalid: %s", identity, exc.message)
                self._escalate(identity, monitor)
                return

        LOGGER.info(
            "%s finished remotely: %s (%s)", identity, status.value, completion_code_name(result.comp_code)
        )
        self._publish_outcome(identity, result)

        archived = False
        if self.archive_on_completion:
            archived = monitor.delete_remote_job_files()
            if not archived:
                LOGGER.warning("Unable to archive status files for %s: %s", identity, monitor.message)

        self._notify(
            NotificationEvent(
                job=identity.job,
                step=identity.step,
                job_step=str(identity),
                event_type="completion",
                state=status.value,
                message=result.comp_msg or f"Job step finished with {completion_code_name(result.comp_code)}",
                details={"comp_code": result.comp_code, "eval_code": result.eval_code},
                remote_host=self.settings.remote_host_name,
            )
        )
        self.resolved[identity] = ResolvedJobStep(identity, status, result=result, archived=archived)
        self.remove(identity)

    def run(self, max_cycles: Optional[int] = None) -> Dict[JobStepIdentity, ResolvedJobStep]:
        """Poll until stopped, every job step is resolved, or max_cycles elapse."""
        self.running = True
        LOGGER.info(
            "Starting watcher (%d job steps, interval=%ds, max_workers=%d)",
            len(self.monitors),
            self.settings.poll_interval_seconds,
            self.max_workers,
        )

        cycles = 0
        while self.running and self.monitors:
            try:
                self.run_once()
            except Exception as e:
                LOGGER.error("Error in polling cycle: %s", e, exc_info=True)

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if self.running and self.monitors:
                self._sleep(self.settings.poll_interval_seconds)

        self.running = False
        return dict(self.resolved)

    def stop(self) -> None:
        """Stop the watcher after the current cycle."""
        self.running = False
        LOGGER.info("Stopping watcher")
