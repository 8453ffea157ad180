"""The .jobstatus progress snapshot written by a worker while a task runs.

Layout::

    <Root>
      <Manager> MgrName, MgrStatus, LastStartTime, LastUpdate, CPUUtilization,
                FreeMemoryMB, ProcessID, ProgRunnerProcessID, ProgRunnerCoreUsage
      <Task> Tool, Status, Progress, CurrentOperation,
             <TaskDetails> Status, Job, Step, Dataset, MostRecentLogMessage,
                           MostRecentJobInfo, SpectrumCount
      <ProgRunnerCoreUsage Count="n">
        <CoreUsageSample Date="2024-03-01 04:23:14 PM">3.5</CoreUsageSample>
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from remotejobs.exceptions import JobStatusParseError
from remotejobs.status_files import DATE_TIME_FORMAT, parse_timestamp

LOGGER = logging.getLogger("remotejobs.jobstatus")

MAX_CORE_USAGE_SAMPLES = 50

PARAM_REMOTE_PROGRESS = "RemoteProgress"
PARAM_REMOTE_START = "RemoteStart"
PARAM_REMOTE_FINISH = "RemoteFinish"


class _TextEnum(str, Enum):
    """Enum whose value is its display text."""

    @classmethod
    def _default(cls) -> "_TextEnum":
        raise NotImplementedError

    @classmethod
    def from_text(cls, text: Optional[str]):
        """Match display text or member name, ignoring case; else the default."""
        if text:
            wanted = text.strip().lower()
            for member in cls:
                if member.value.lower() == wanted or member.name.lower() == wanted:
                    return member
        return cls._default()


class MgrStatus(_TextEnum):
    STOPPED = "Stopped"
    STOPPED_ERROR = "Stopped Error"
    RUNNING = "Running"
    DISABLED_LOCAL = "Disabled Local"
    DISABLED_MC = "Disabled MC"

    @classmethod
    def _default(cls) -> "MgrStatus":
        return cls.STOPPED


class TaskStatus(_TextEnum):
    STOPPED = "Stopped"
    REQUESTING = "Requesting"
    RUNNING = "Running"
    CLOSING = "Closing"
    FAILED = "Failed"
    NO_TASK = "No Task"

    @classmethod
    def _default(cls) -> "TaskStatus":
        return cls.NO_TASK


class TaskStatusDetail(_TextEnum):
    RETRIEVING_RESOURCES = "Retrieving Resources"
    RUNNING_TOOL = "Running Tool"
    PACKAGING_RESULTS = "Packaging Results"
    DELIVERING_RESULTS = "Delivering Results"
    CLOSING = "Closing"
    NO_TASK = "No Task"

    @classmethod
    def _default(cls) -> "TaskStatusDetail":
        return cls.NO_TASK


@dataclass
class JobStatusSnapshot:
    """One parsed .jobstatus file. Built fresh on every poll."""

    mgr_name: str = ""
    mgr_status: MgrStatus = MgrStatus.STOPPED
    task_start_time: Optional[dt.datetime] = None
    last_update: Optional[dt.datetime] = None
    cpu_utilization: int = 0
    free_memory_mb: float = 0.0
    process_id: int = 0
    prog_runner_process_id: int = 0
    prog_runner_core_usage: float = 0.0
    tool: str = ""
    task_status: TaskStatus = TaskStatus.NO_TASK
    progress: float = 0.0
    current_operation: str = ""
    task_status_detail: TaskStatusDetail = TaskStatusDetail.NO_TASK
    job: int = 0
    step: int = 0
    dataset: str = ""
    most_recent_log_message: str = ""
    most_recent_job_info: str = ""
    spectrum_count: int = 0
    core_usage_history: List[Tuple[dt.datetime, float]] = field(default_factory=list)

    @property
    def effective_last_update(self) -> Optional[dt.datetime]:
        """LastUpdate, falling back to the task start time."""
        return self.last_update or self.task_start_time


def _child_text(parent: Optional[ET.Element], name: str) -> str:
    if parent is None:
        return ""
    child = parent.find(name)
    if child is None or child.text is None:
        return ""
    return child.text.strip()


def _child_float(parent: Optional[ET.Element], name: str, default: float = 0.0) -> float:
    try:
        return float(_child_text(parent, name))
    except ValueError:
        return default


def _child_int(parent: Optional[ET.Element], name: str, default: int = 0) -> int:
    text = _child_text(parent, name)
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except ValueError:
            return default


def _parse_core_usage(root: ET.Element) -> List[Tuple[dt.datetime, float]]:
    history: List[Tuple[dt.datetime, float]] = []
    for sample in root.findall("ProgRunnerCoreUsage/CoreUsageSample"):
        sampled_at = parse_timestamp(sample.get("Date"))
        if sampled_at is None:
            continue
        try:
            cores = float((sample.text or "").strip())
        except ValueError:
            continue
        history.append((sampled_at, cores))
    return history[-MAX_CORE_USAGE_SAMPLES:]


def parse_job_status_xml(text: str) -> JobStatusSnapshot:
    """Parse .jobstatus XML.

    Raises:
        JobStatusParseError: If the XML is malformed or has no Root element,
            typically because the file was retrieved mid-write.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise JobStatusParseError(f"Malformed .jobstatus XML: {exc}") from exc
    if root.tag != "Root":
        raise JobStatusParseError(f"Unexpected .jobstatus root element: {root.tag}")

    manager = root.find("Manager")
    task = root.find("Task")
    details = task.find("TaskDetails") if task is not None else None

    return JobStatusSnapshot(
        mgr_name=_child_text(manager, "MgrName"),
        mgr_status=MgrStatus.from_text(_child_text(manager, "MgrStatus")),
        task_start_time=parse_timestamp(_child_text(manager, "LastStartTime")),
        last_update=parse_timestamp(_child_text(manager, "LastUpdate")),
        cpu_utilization=int(_child_float(manager, "CPUUtilization")),
        free_memory_mb=_child_float(manager, "FreeMemoryMB"),
        process_id=_child_int(manager, "ProcessID"),
        prog_runner_process_id=_child_int(manager, "ProgRunnerProcessID"),
        prog_runner_core_usage=_child_float(manager, "ProgRunnerCoreUsage"),
        tool=_child_text(task, "Tool"),
        task_status=TaskStatus.from_text(_child_text(task, "Status")),
        progress=_child_float(task, "Progress"),
        current_operation=_child_text(task, "CurrentOperation"),
        task_status_detail=TaskStatusDetail.from_text(_child_text(details, "Status")),
        job=_child_int(details, "Job"),
        step=_child_int(details, "Step"),
        dataset=_child_text(details, "Dataset"),
        most_recent_log_message=_child_text(details, "MostRecentLogMessage"),
        most_recent_job_info=_child_text(details, "MostRecentJobInfo"),
        spectrum_count=_child_int(details, "SpectrumCount"),
        core_usage_history=_parse_core_usage(root),
    )


def parse_job_status_file(path: Path) -> JobStatusSnapshot:
    LOGGER.debug("Parse status file %s", path.name)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise JobStatusParseError(f"Unable to read {path}: {exc}") from exc
    return parse_job_status_xml(text)


def format_progress(progress: float) -> str:
    """Format progress with one to four decimal places."""
    text = f"{progress:.4f}".rstrip("0")
    if text.endswith("."):
        text += "0"
    return text


def _iso_utc(value: Optional[dt.datetime]) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(dt.timezone.utc).isoformat()


def remote_step_parameters(snapshot: JobStatusSnapshot) -> Dict[str, str]:
    """Derive the step parameters published after each snapshot parse.

    RemoteFinish is only populated once progress reaches 100.
    """
    return {
        PARAM_REMOTE_PROGRESS: format_progress(snapshot.progress),
        PARAM_REMOTE_START: _iso_utc(snapshot.task_start_time),
        PARAM_REMOTE_FINISH: _iso_utc(snapshot.effective_last_update) if snapshot.progress >= 100 else "",
    }


def _sub(parent: ET.Element, name: str, text: str) -> ET.Element:
    element = ET.SubElement(parent, name)
    element.text = text
    return element


def _iso_millis(value: Optional[dt.datetime]) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.astimezone()
    value = value.astimezone(dt.timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def job_status_xml(snapshot: JobStatusSnapshot) -> str:
    """Render a snapshot as .jobstatus XML."""
    root = ET.Element("Root")

    manager = ET.SubElement(root, "Manager")
    _sub(manager, "MgrName", snapshot.mgr_name)
    _sub(manager, "MgrStatus", snapshot.mgr_status.value)
    _sub(manager, "LastUpdate", _iso_millis(snapshot.last_update or dt.datetime.now(dt.timezone.utc)))
    _sub(manager, "LastStartTime", _iso_millis(snapshot.task_start_time))
    _sub(manager, "CPUUtilization", f"{snapshot.cpu_utilization:.1f}")
    _sub(manager, "FreeMemoryMB", f"{snapshot.free_memory_mb:.1f}")
    _sub(manager, "ProcessID", str(snapshot.process_id))
    _sub(manager, "ProgRunnerProcessID", str(snapshot.prog_runner_process_id))
    _sub(manager, "ProgRunnerCoreUsage", f"{snapshot.prog_runner_core_usage:.2f}")

    task = ET.SubElement(root, "Task")
    _sub(task, "Tool", snapshot.tool)
    _sub(task, "Status", snapshot.task_status.value)
    _sub(task, "Progress", f"{snapshot.progress:.2f}")
    _sub(task, "CurrentOperation", snapshot.current_operation)

    details = ET.SubElement(task, "TaskDetails")
    _sub(details, "Status", snapshot.task_status_detail.value)
    _sub(details, "Job", str(snapshot.job))
    _sub(details, "Step", str(snapshot.step))
    _sub(details, "Dataset", snapshot.dataset)
    _sub(details, "MostRecentLogMessage", snapshot.most_recent_log_message)
    _sub(details, "MostRecentJobInfo", snapshot.most_recent_job_info)
    _sub(details, "SpectrumCount", str(snapshot.spectrum_count))

    if snapshot.prog_runner_process_id and snapshot.core_usage_history:
        samples = snapshot.core_usage_history[-MAX_CORE_USAGE_SAMPLES:]
        usage = ET.SubElement(root, "ProgRunnerCoreUsage", {"Count": str(len(samples))})
        for sampled_at, cores in samples:
            local_time = sampled_at.astimezone() if sampled_at.tzinfo else sampled_at
            sample = ET.SubElement(usage, "CoreUsageSample", {"Date": local_time.strftime(DATE_TIME_FORMAT)})
            sample.text = f"{cores:.1f}"

    ET.indent(root, space="  ")
    return ET.tostring(root, encoding="unicode")


def write_job_status_file(snapshot: JobStatusSnapshot, path: Path) -> Path:
    """Write the snapshot so that concurrent readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    temp_path.write_text(job_status_xml(snapshot) + "\n", encoding="utf-8")
    os.replace(temp_path, path)
    return path
