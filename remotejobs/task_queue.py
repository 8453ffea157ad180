"""Worker side of the task queue: claiming tasks and purging aged files.

A worker sees the task queue as a local directory (``local_task_queue_path``)
with one subdirectory per step tool. Claiming a task means creating its
.lock file exclusively and confirming, after a short random pause, that no
other manager overwrote it.
"""

from __future__ import annotations

import datetime as dt
import logging
import random
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from remotejobs.config import Settings
from remotejobs.exceptions import ConfigurationError, DescriptorMissing, LockNotAcquired
from remotejobs.finalizer import finalize_failed_job, finalize_job
from remotejobs.status_files import (
    INFO_EXTENSION,
    JOBSTATUS_EXTENSION,
    LOCK_EXTENSION,
    JobStepIdentity,
    base_status_name,
    format_descriptor_time,
)

LOGGER = logging.getLogger("remotejobs.task_queue")

INFO_FILE_PATTERN = re.compile(r"(?P<job_step>Job(?P<job>\d+)_Step(?P<step>\d+))_(?P<timestamp>.+)\.info")

OLD_INFO_EXTENSION = ".oldinfo"
OLD_LOCK_EXTENSION = ".oldlock"

# (glob, age threshold in hours, keep when the paired .jobstatus is recent)
AGED_FILE_RULES: Tuple[Tuple[str, float, bool], ...] = (
    ("*" + LOCK_EXTENSION, 24, True),
    ("*" + OLD_INFO_EXTENSION, 48, False),
    ("*" + OLD_LOCK_EXTENSION, 48, False),
    ("*" + JOBSTATUS_EXTENSION, 168, False),
)
RECENT_JOBSTATUS_HOURS = 12


@dataclass
class TaskDescriptor:
    """A parsed .info (or terminal) file: its lines in order plus a key lookup."""

    path: Path
    lines: List[str] = field(default_factory=list)
    values: Dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.values.get(key, "").strip())
        except ValueError:
            return default

    @property
    def job(self) -> int:
        return self.get_int("Job")

    @property
    def step(self) -> int:
        return self.get_int("Step")

    @property
    def step_tool(self) -> str:
        return self.get("StepTool")

    @property
    def work_dir(self) -> str:
        return self.get("WorkDir").strip()

    @property
    def staged(self) -> str:
        return self.get("Staged")


def read_task_descriptor(path: Path) -> TaskDescriptor:
    """Read a Key=Value task descriptor. The first occurrence of a key wins.

    Raises:
        DescriptorMissing: If the file does not exist.
    """
    if not path.exists():
        raise DescriptorMissing(f"Task info file not found: {path}", details={"path": str(path)})

    descriptor = TaskDescriptor(path=path)
    with path.open("r", encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.rstrip("\r\n")
            descriptor.lines.append(line)
            key, sep, value = line.partition("=")
            if sep and key not in descriptor.values:
                descriptor.values[key] = value
    return descriptor


def offline_job_status_path(settings: Settings, identity: JobStepIdentity) -> Path:
    """Local path of the .jobstatus file a worker writes for a task.

    Raises:
        ConfigurationError: If the task queue path, step tool or timestamp is missing.
    """
    if not settings.local_task_queue_path:
        raise ConfigurationError(
            f"local_task_queue_path is empty; cannot construct the .jobstatus file path for {identity.description}"
        )
    if not identity.step_tool:
        raise ConfigurationError(
            f"Step tool is empty; cannot construct the .jobstatus file path for {identity.description}"
        )
    file_name = base_status_name(identity.job, identity.step, identity.timestamp) + JOBSTATUS_EXTENSION
    return Path(settings.local_task_queue_path) / identity.step_tool / file_name


@dataclass
class ClaimedTask:
    """A task this manager holds the lock for."""

    identity: JobStepIdentity
    info_path: Path
    descriptor: TaskDescriptor
    start_time: dt.datetime

    @property
    def lock_path(self) -> Path:
        return self.info_path.with_suffix(LOCK_EXTENSION)

    @property
    def job_status_path(self) -> Path:
        return self.info_path.with_suffix(JOBSTATUS_EXTENSION)


def _rename_with_extension(path: Path, extension: str) -> None:
    if not path.exists():
        return
    target = path.with_suffix(extension)
    if target.exists():
        target.unlink()
    path.rename(target)


class TaskQueue:
    """Claims tasks from the local view of the task queue for one manager."""

    def __init__(
        self,
        settings: Settings,
        *,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.timezone.utc),
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self._sleep = sleep or time.sleep
        self._clock = clock
        self._rng = rng or random.Random()

    @property
    def root(self) -> Path:
        if not self.settings.local_task_queue_path:
            raise ConfigurationError("local_task_queue_path is empty; update the settings")
        return Path(self.settings.local_task_queue_path)

    def _age_hours(self, path: Path) -> float:
        modified = dt.datetime.fromtimestamp(path.stat().st_mtime, tz=dt.timezone.utc)
        return (self._clock() - modified).total_seconds() / 3600.0

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_aged_files(self, directory: Path) -> List[Path]:
        """Delete aged lock, old-info, old-lock and .jobstatus files.

        A .lock older than 24 hours survives while its .jobstatus was
        modified within the last 12 hours.

        Returns:
            The deleted paths.
        """
        deleted: List[Path] = []
        for pattern, threshold_hours, keep_if_recent_status in AGED_FILE_RULES:
            for path in sorted(directory.glob(pattern)):
                try:
                    age = self._age_hours(path)
                    if age <= threshold_hours:
                        continue
                    if keep_if_recent_status:
                        status_path = path.with_suffix(JOBSTATUS_EXTENSION)
                        if status_path.exists() and self._age_hours(status_path) < RECENT_JOBSTATUS_HOURS:
                            continue
                    LOGGER.warning(
                        "Deleting aged %s file modified %.0f hours ago: %s",
                        pattern.lstrip("*."),
                        age,
                        path,
                    )
                    path.unlink()
                    deleted.append(path)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    LOGGER.error("Error deleting aged file %s: %s", path, exc)
        return deleted

    def newest_info_files(self, directory: Path) -> List[Path]:
        """Keep the newest .info per job step; rename older ones out of the way.

        Superseded .info files become .oldinfo and their locks .oldlock.

        Returns:
            The remaining .info files, oldest first.
        """
        newest: Dict[str, Tuple[str, Path]] = {}
        for info_path in sorted(directory.glob("*" + INFO_EXTENSION)):
            match = INFO_FILE_PATTERN.fullmatch(info_path.name)
            if not match:
                LOGGER.debug("Ignoring .info file that has an unrecognized name format: %s", info_path)
                continue
            job_step = match.group("job_step")
            timestamp = match.group("timestamp")
            existing = newest.get(job_step)
            if existing is None:
                newest[job_step] = (timestamp, info_path)
                continue
            if timestamp > existing[0]:
                self._retire_info_file(existing[1])
                newest[job_step] = (timestamp, info_path)
            else:
                self._retire_info_file(info_path)

        remaining = [path for _, path in newest.values()]
        return sorted(remaining, key=lambda path: path.stat().st_mtime)

    @staticmethod
    def _retire_info_file(info_path: Path) -> None:
        LOGGER.info("Superseded task info file renamed: %s", info_path.name)
        _rename_with_extension(info_path, OLD_INFO_EXTENSION)
        _rename_with_extension(info_path.with_suffix(LOCK_EXTENSION), OLD_LOCK_EXTENSION)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def create_lock_file(self, lock_path: Path) -> None:
        """Create lock_path exclusively and confirm this manager still owns it.

        Raises:
            LockNotAcquired: The lock exists or was overwritten by another manager.
        """
        contents = [
            "Date: " + format_descriptor_time(dt.datetime.now()),
            "Manager: " + self.settings.manager_name,
        ]
        LOGGER.debug("Creating lock file at %s", lock_path)
        try:
            with lock_path.open("x", encoding="utf-8") as handle:
                handle.write("\n".join(contents) + "\n")
        except FileExistsError as exc:
            raise LockNotAcquired(
                f"Lock file already exists: {lock_path}", details={"path": str(lock_path)}
            ) from exc

        self._sleep(self._rng.uniform(2, 5))

        try:
            current = lock_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError as exc:
            raise LockNotAcquired(
                f"Lock file disappeared after creation: {lock_path}", details={"path": str(lock_path)}
            ) from exc
        if current != contents:
            raise LockNotAcquired(
                f"Lock file {lock_path} was overwritten by another manager: {' / '.join(current)}",
                details={"path": str(lock_path)},
            )

    def try_claim(self, info_path: Path) -> Optional[ClaimedTask]:
        """Lock one .info file and validate its descriptor."""
        start_time = dt.datetime.now()
        lock_path = info_path.with_suffix(LOCK_EXTENSION)
        if lock_path.exists():
            return None

        try:
            self.create_lock_file(lock_path)
        except LockNotAcquired as exc:
            LOGGER.info("Unable to claim %s: %s", info_path.name, exc.message)
            return None

        descriptor = read_task_descriptor(info_path)
        problem = ""
        if descriptor.job == 0:
            problem = "Job missing from .info file"
        elif descriptor.step == 0:
            problem = "Step missing from .info file"
        elif not descriptor.work_dir:
            problem = "WorkDir missing from .info file"
        if problem:
            finalize_failed_job(info_path, self.settings.manager_name, problem, start_time=start_time)
            return None

        match = INFO_FILE_PATTERN.fullmatch(info_path.name)
        identity = JobStepIdentity(
            job=descriptor.job,
            step=descriptor.step,
            step_tool=descriptor.step_tool or info_path.parent.name,
            timestamp=match.group("timestamp") if match else "",
        )
        LOGGER.info(
            "Processing offline job %d, step %d, WorkDir %s, staged %s",
            identity.job,
            identity.step,
            descriptor.work_dir,
            descriptor.staged,
        )
        return ClaimedTask(identity=identity, info_path=info_path, descriptor=descriptor, start_time=start_time)

    def request_task(self) -> Optional[ClaimedTask]:
        """Claim the oldest available task across the enabled step tools.

        Raises:
            ConfigurationError: If no step tools are enabled or the task queue
                path is not set.
        """
        step_tools = self.settings.enabled_step_tools()
        if not step_tools:
            raise ConfigurationError("No step tools are enabled; update step_tools_enabled")
        root = self.root

        for step_tool in step_tools:
            directory = root / step_tool
            if not directory.is_dir():
                LOGGER.warning("Task queue directory not found: %s", directory)
                continue

            self.purge_aged_files(directory)

            for info_path in self.newest_info_files(directory):
                task = self.try_claim(info_path)
                if task is not None:
                    return task
        return None

    def finalize(
        self,
        task: ClaimedTask,
        succeeded: bool,
        comp_code: int = 0,
        comp_msg: str = "",
        eval_code: int = 0,
        eval_msg: str = "",
    ) -> Path:
        """Close out a claimed task with its completion codes."""
        return finalize_job(
            task.info_path,
            self.settings.manager_name,
            succeeded,
            start_time=task.start_time,
            comp_code=comp_code,
            comp_msg=comp_msg,
            eval_code=eval_code,
            eval_msg=eval_msg,
        )
