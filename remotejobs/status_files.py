"""Status file naming and transfer for job steps offloaded to a remote host.

Every job-step attempt owns a set of sentinel files in the task queue
directory of its step tool, all sharing the stem ``Job{job}_Step{step}_{timestamp}``:

- ``.info``      task descriptor staged by the orchestrator
- ``.lock``      worker has claimed the task
- ``.jobstatus`` periodic XML progress snapshot written by the worker
- ``.success``   terminal, completed without fatal error
- ``.fail``      terminal, completed with fatal error
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from remotejobs.config import Settings
from remotejobs.exceptions import ConfigurationError, TransportError
from remotejobs.transport import RemoteFileInfo, Transport

LOGGER = logging.getLogger("remotejobs.status_files")

INFO_EXTENSION = ".info"
LOCK_EXTENSION = ".lock"
JOBSTATUS_EXTENSION = ".jobstatus"
SUCCESS_EXTENSION = ".success"
FAIL_EXTENSION = ".fail"

STATUS_EXTENSIONS = (
    INFO_EXTENSION,
    LOCK_EXTENSION,
    JOBSTATUS_EXTENSION,
    SUCCESS_EXTENSION,
    FAIL_EXTENSION,
)

# Deleted, not archived, once a job step is resolved
NON_ARCHIVED_EXTENSIONS = (INFO_EXTENSION, LOCK_EXTENSION, JOBSTATUS_EXTENSION)

ARCHIVE_DIRECTORY_NAME = "Completed"

REMOTE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M"

# Format of Staged, Started and Finished values in task descriptor files
DATE_TIME_FORMAT = "%Y-%m-%d %I:%M:%S %p"


def job_step_dir_name(job: int, step: int) -> str:
    """Return text of the form ``Job1234_Step3`` for file and directory names."""
    return f"Job{job}_Step{step}"


def base_status_name(job: int, step: int, timestamp: str) -> str:
    """Return the sentinel file stem ``Job{job}_Step{step}_{timestamp}``.

    Raises:
        ConfigurationError: If timestamp is empty.
    """
    if not timestamp or not timestamp.strip():
        raise ConfigurationError(
            f"Remote timestamp is empty for job {job}, step {step}; "
            "cannot construct the base status file name"
        )
    return f"{job_step_dir_name(job, step)}_{timestamp}"


def generate_remote_timestamp(now: Optional[dt.datetime] = None) -> str:
    """Create a remote timestamp from the local clock, minute resolution."""
    now = now or dt.datetime.now()
    return now.strftime(REMOTE_TIMESTAMP_FORMAT)


def format_descriptor_time(value: dt.datetime) -> str:
    return value.strftime(DATE_TIME_FORMAT)


def parse_timestamp(text: Optional[str]) -> Optional[dt.datetime]:
    """Parse an ISO 8601 or descriptor-format time into an aware UTC datetime.

    Naive values are local time. Returns None for blank or unparseable text.
    """
    if not text or not text.strip():
        return None
    value = text.strip()
    parsed: Optional[dt.datetime] = None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        for fmt in (DATE_TIME_FORMAT, "%Y-%m-%d %H:%M:%S", "%m/%d/%Y %I:%M:%S %p", "%m/%d/%Y %H:%M:%S"):
            try:
                parsed = dt.datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    return parsed.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class JobStepIdentity:
    """Identifies one attempt of a job step on the remote host."""

    job: int
    step: int
    step_tool: str = ""
    dataset: str = ""
    timestamp: str = ""

    @property
    def base_name(self) -> str:
        return base_status_name(self.job, self.step, self.timestamp)

    @property
    def description(self) -> str:
        return f"job {self.job}, step {self.step}"

    @property
    def work_dir_name(self) -> str:
        return job_step_dir_name(self.job, self.step)

    def status_file_name(self, extension: str) -> str:
        return self.base_name + extension

    def __str__(self) -> str:
        return self.base_name if self.timestamp else self.work_dir_name


def find_status_file(
    file_name: str, status_files: Mapping[str, RemoteFileInfo]
) -> Optional[RemoteFileInfo]:
    """Find a status file by name, ignoring case."""
    wanted = file_name.lower()
    for info in status_files.values():
        if info.name.lower() == wanted:
            return info
    return None


class RemoteTransferUtility:
    """Enumerate, retrieve, archive and stage status files for one job step.

    Transport failures are caught here and reported through return values,
    with the cause logged and kept in ``message``, so that callers can retry
    on the next poll.
    """

    def __init__(
        self,
        settings: Settings,
        identity: JobStepIdentity,
        transport: Transport,
        *,
        local_work_dir: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.timezone.utc),
    ) -> None:
        self.settings = settings
        self.identity = identity
        self.transport = transport
        self.local_work_dir = Path(local_work_dir or settings.local_work_dir)
        self._sleep = sleep
        self._clock = clock
        self.message = ""

    # ------------------------------------------------------------------
    # Names and paths
    # ------------------------------------------------------------------

    @property
    def base_name(self) -> str:
        return self.identity.base_name

    @property
    def job_step_description(self) -> str:
        return self.identity.description

    @property
    def info_file(self) -> str:
        return self.identity.status_file_name(INFO_EXTENSION)

    @property
    def lock_file(self) -> str:
        return self.identity.status_file_name(LOCK_EXTENSION)

    @property
    def job_status_file(self) -> str:
        return self.identity.status_file_name(JOBSTATUS_EXTENSION)

    @property
    def success_file(self) -> str:
        return self.identity.status_file_name(SUCCESS_EXTENSION)

    @property
    def fail_file(self) -> str:
        return self.identity.status_file_name(FAIL_EXTENSION)

    @property
    def status_file_names(self) -> List[str]:
        return [self.identity.status_file_name(ext) for ext in STATUS_EXTENSIONS]

    @property
    def remote_host_name(self) -> str:
        return self.transport.host_name

    @property
    def remote_task_queue_path(self) -> str:
        return self.settings.remote_task_queue_path or ""

    @property
    def remote_task_queue_path_for_tool(self) -> str:
        return self.settings.remote_task_queue_for_tool(self.identity.step_tool)

    @property
    def remote_job_step_work_dir(self) -> str:
        if not self.settings.remote_work_dir_path:
            return ""
        return str(PurePosixPath(self.settings.remote_work_dir_path) / self.identity.work_dir_name)

    def _error(self, message: str, exc: Optional[BaseException] = None) -> None:
        self.message = message
        if exc is not None:
            LOGGER.error("%s: %s", message, exc)
        else:
            LOGGER.error("%s", message)

    def _warning(self, message: str) -> None:
        self.message = message
        LOGGER.warning("%s", message)

    # ------------------------------------------------------------------
    # Listing and retrieval
    # ------------------------------------------------------------------

    def list_status_files(self) -> Dict[str, RemoteFileInfo]:
        """List this job step's status files, keyed by file name.

        Returns an empty dict when none exist or the directory is not
        reachable; use list_remote_directory to tell the two apart.
        """
        remote_dir = self.remote_task_queue_path_for_tool
        if not remote_dir:
            self._error(
                f"Remote task queue path for step tool '{self.identity.step_tool}' is not defined; "
                "cannot list remote status files"
            )
            return {}
        try:
            pattern = self.base_name + "*"
        except ConfigurationError as exc:
            self._error(str(exc))
            return {}
        try:
            files = self.transport.list(remote_dir, pattern)
        except TransportError as exc:
            self._error("Error retrieving remote status files", exc)
            return {}
        return {item.name: item for item in files if not item.is_directory}

    def list_remote_directory(self, remote_dir: str) -> Dict[str, RemoteFileInfo]:
        """List files and directories in remote_dir; empty on any error."""
        if not remote_dir:
            return {}
        try:
            return {item.name: item for item in self.transport.list(remote_dir)}
        except TransportError as exc:
            self._warning(f"Unable to list {remote_dir} on {self.remote_host_name}: {exc}")
            return {}

    def copy_files_from_remote(
        self,
        remote_dir: str,
        source_files: Mapping[str, bool],
        local_dir: Path,
        warn_if_missing: bool = True,
    ) -> bool:
        """Copy named files from remote_dir into local_dir.

        Args:
            source_files: File name mapped to True if the file is required.
            warn_if_missing: Log missing files as warnings rather than debug.

        Returns:
            False on a transport error or if any required file is missing.
        """
        try:
            available = {item.name: item for item in self.transport.list(remote_dir)}
        except TransportError as exc:
            self._error(f"Error listing {remote_dir} on {self.remote_host_name}", exc)
            return False

        success = True
        for file_name, required in source_files.items():
            remote_file = available.get(file_name)
            if remote_file is None:
                text = f"File not found on {self.remote_host_name}: {PurePosixPath(remote_dir) / file_name}"
                if warn_if_missing:
                    self._warning(text)
                else:
                    LOGGER.debug("%s", text)
                if required:
                    success = False
                continue
            try:
                self.transport.get(remote_file.full_path, local_dir)
            except TransportError as exc:
                self._error(f"Error retrieving {remote_file.full_path}", exc)
                success = False
        return success

    def retrieve_status_file(self, status_file_name: str) -> Optional[Path]:
        """Copy one status file into the local work directory.

        Returns:
            The local path, or None on any transport or missing-file condition.
        """
        remote_dir = self.remote_task_queue_path_for_tool
        if not remote_dir:
            self._error("Remote task queue path is not defined; cannot retrieve " + status_file_name)
            return None

        if not self.copy_files_from_remote(remote_dir, {status_file_name: True}, self.local_work_dir):
            return None

        local_path = self.local_work_dir / status_file_name
        if local_path.exists():
            return local_path

        self._warning(
            f"{PurePosixPath(status_file_name).suffix} file not found despite a successful copy: {local_path}"
        )
        return None

    def retrieve_job_status_file(self) -> Optional[Path]:
        try:
            name = self.job_status_file
        except ConfigurationError as exc:
            self._error(str(exc))
            return None
        return self.retrieve_status_file(name)

    # ------------------------------------------------------------------
    # Remote housekeeping
    # ------------------------------------------------------------------

    def create_remote_directories(self, remote_dirs: Iterable[str]) -> bool:
        for remote_dir in remote_dirs:
            try:
                self.transport.mkdir_all(remote_dir)
            except TransportError as exc:
                self._error(f"Unable to verify/create directory {remote_dir} on host {self.remote_host_name}", exc)
                return False
        return True

    def move_files(
        self,
        remote_paths: Iterable[str],
        target_dir: str,
        files_to_delete: Iterable[str] = (),
    ) -> bool:
        """Move remote files into target_dir, deleting those named in files_to_delete."""
        delete_names = {name.lower() for name in files_to_delete}
        success = True
        for remote_path in remote_paths:
            name = PurePosixPath(remote_path).name
            try:
                if name.lower() in delete_names:
                    LOGGER.debug("Deleting %s", remote_path)
                    self.transport.delete(remote_path)
                else:
                    target = str(PurePosixPath(target_dir) / name)
                    LOGGER.debug("Moving %s to %s", remote_path, target)
                    self.transport.rename(remote_path, target)
            except TransportError as exc:
                self._error(f"Error moving or deleting {remote_path}", exc)
                success = False
        return success

    def delete_remote_work_dir(self, keep_empty_directory: bool = False) -> bool:
        """Delete the remote work directory of this job step and its contents."""
        work_dir = self.remote_job_step_work_dir
        if not work_dir:
            self._error("Remote work directory path is empty; cannot delete files")
            return False
        try:
            self.transport.delete_tree(work_dir, keep_empty_directory=keep_empty_directory)
        except TransportError as exc:
            self._error("Error deleting remote work directory", exc)
            return False
        return True

    def archive_and_clean(
        self,
        status_files: Iterable[str],
        archive_root: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> bool:
        """Delete the remote work directory, then archive resolved status files.

        Status files move to ``<archive_root>/<year>/``; the .info, .lock and
        .jobstatus files are deleted instead. archive_root defaults to
        ``<remote task queue>/Completed``.
        """
        LOGGER.debug("Deleting remote work directory files for %s", self.job_step_description)
        work_dir_deleted = self.delete_remote_work_dir()

        remote_paths = list(status_files)
        if not remote_paths:
            return work_dir_deleted

        if archive_root is None:
            if not self.remote_task_queue_path:
                self._error("Remote task queue path is empty; cannot archive status files")
                return False
            archive_root = str(PurePosixPath(self.remote_task_queue_path) / ARCHIVE_DIRECTORY_NAME)

        year = (now or dt.datetime.now()).year
        archive_dir = str(PurePosixPath(archive_root) / str(year))

        LOGGER.debug("Archiving status files for %s to %s", self.job_step_description, archive_dir)
        if not self.create_remote_directories([archive_root, archive_dir]):
            return False

        moved = self.move_files(
            remote_paths,
            archive_dir,
            files_to_delete=[self.info_file, self.lock_file, self.job_status_file],
        )
        return work_dir_deleted and moved

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def copy_file_to_remote(
        self,
        local_path: Path,
        remote_dir: str,
        check_concurrent_copy: bool = False,
    ) -> bool:
        """Copy a local file to remote_dir.

        With check_concurrent_copy, an existing remote file of the same name
        is reused when sizes match, or waited on when another manager may
        still be writing it.
        """
        if not local_path.exists():
            self._error(f"Cannot copy file to remote; source file not found: {local_path}")
            return False

        if check_concurrent_copy:
            try:
                existing = self.transport.list(remote_dir, local_path.name)
            except TransportError:
                existing = []
            if existing:
                remote_file = existing[0]
                local_size = local_path.stat().st_size
                if remote_file.size == local_size:
                    LOGGER.debug("Using existing file %s on %s", remote_file.full_path, self.remote_host_name)
                    return True
                if remote_file.size < local_size:
                    matched, abort = self.wait_for_concurrent_copy(local_path, remote_file)
                    if abort:
                        self._error(
                            f"File size mismatch; another manager wrote a larger {remote_file.full_path}"
                        )
                        return False
                    if matched:
                        LOGGER.debug("Using existing file %s on %s", remote_file.full_path, self.remote_host_name)
                        return True
                else:
                    LOGGER.debug(
                        "File size on remote host differs from local file (%d bytes vs. %d bytes locally); copying %s",
                        remote_file.size,
                        local_size,
                        local_path.name,
                    )

        try:
            self.transport.put(local_path, remote_dir)
        except TransportError as exc:
            self._error(f"Error copying file {local_path.name} to {remote_dir}", exc)
            return False
        return True

    def create_task_info_file(self, now: Optional[dt.datetime] = None) -> Optional[str]:
        """Write the .info task descriptor and upload it to the task queue.

        Returns:
            The remote path of the .info file, or None on error.
        """
        remote_dir = self.remote_task_queue_path_for_tool
        if not remote_dir:
            self._error("Remote task queue path for this job's step tool is empty; cannot create the task info file")
            return None

        try:
            info_name = self.info_file
        except ConfigurationError as exc:
            self._error(str(exc))
            return None

        LOGGER.debug("Creating task info file %s", info_name)
        self.local_work_dir.mkdir(parents=True, exist_ok=True)
        local_path = self.local_work_dir / info_name
        lines = [
            f"Job={self.identity.job}",
            f"Step={self.identity.step}",
            f"StepTool={self.identity.step_tool}",
            f"WorkDir={self.remote_job_step_work_dir}",
            f"Staged={format_descriptor_time(now or dt.datetime.now())}",
        ]
        local_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        if not self.create_remote_directories([remote_dir]):
            return None
        if not self.copy_file_to_remote(local_path, remote_dir):
            return None
        return str(PurePosixPath(remote_dir) / info_name)

    def wait_for_concurrent_copy(
        self, local_file: Path, remote_file: RemoteFileInfo
    ) -> Tuple[bool, bool]:
        """Wait for another manager to finish copying a file to the remote host.

        Polls the remote size until it matches the local size (matched), grows
        past it (abort), the file disappears, or the copy window measured from
        the remote file's last write time closes.

        Returns:
            (matched, abort)
        """
        local_size = local_file.stat().st_size
        remote_dir = str(PurePosixPath(remote_file.full_path).parent)
        deadline = remote_file.last_write_utc + dt.timedelta(
            minutes=self.settings.copy_wait_timeout_minutes
        )

        current_size = remote_file.size
        while self._clock() < deadline:
            LOGGER.debug(
                "Waiting for another manager to finish copying the file to the remote host; "
                "currently %d bytes for %s",
                current_size,
                remote_file.full_path,
            )
            self._sleep(self.settings.copy_wait_poll_seconds)

            try:
                matching = self.transport.list(remote_dir, local_file.name)
            except TransportError as exc:
                LOGGER.debug("Unable to refresh %s: %s", remote_file.full_path, exc)
                continue

            if not matching:
                LOGGER.debug("File no longer exists on the remote host: %s", remote_file.full_path)
                return False, False

            current_size = matching[0].size
            if current_size == local_size:
                return True, False
            if current_size > local_size:
                return False, True

        return False, False
