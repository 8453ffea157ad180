"""Close out a task on the worker by turning its .info file into a terminal file.

Runs where the job executed, independently of the monitor. The .info task
descriptor is copied line by line into ``.success`` or ``.fail`` with the
completion keys appended, the .info is deleted, and the paired .lock is
removed on every exit path.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
from pathlib import Path
from typing import Optional

from remotejobs.exceptions import DescriptorMissing, ProtocolCorruption
from remotejobs.status_files import (
    FAIL_EXTENSION,
    LOCK_EXTENSION,
    SUCCESS_EXTENSION,
    format_descriptor_time,
)

LOGGER = logging.getLogger("remotejobs.finalizer")

# Removed from the copied descriptor, then written fresh at the end
REWRITTEN_KEYS = frozenset(
    key.lower()
    for key in ("Started", "Finished", "CompCode", "CompMsg", "EvalCode", "EvalMsg", "MgrName")
)


def _line_key(line: str) -> Optional[str]:
    key, sep, _ = line.partition("=")
    if not sep:
        return None
    return key.strip().lower()


def _delete_lock(lock_path: Path) -> None:
    LOGGER.debug("Deleting lock file %s", lock_path)
    with contextlib.suppress(FileNotFoundError):
        lock_path.unlink()


def finalize_job(
    info_path: Path,
    manager_name: str,
    succeeded: bool,
    start_time: Optional[dt.datetime] = None,
    comp_code: int = 0,
    comp_msg: str = "",
    eval_code: int = 0,
    eval_msg: str = "",
    now: Optional[dt.datetime] = None,
) -> Path:
    """Rewrite a task descriptor into its .success or .fail file.

    Args:
        info_path: The task's .info file.
        manager_name: Written as MgrName.
        succeeded: Selects .success or .fail.
        start_time: Written as Started when given.

    Returns:
        Path of the terminal file.

    Raises:
        DescriptorMissing: The .info file does not exist. A paired .lock is
            deleted first.
        ProtocolCorruption: A terminal file already exists for this task.
        OSError: Reading or writing failed; the .lock is still deleted.
    """
    info_path = Path(info_path)
    lock_path = info_path.with_suffix(LOCK_EXTENSION)

    if not info_path.exists():
        if lock_path.exists():
            LOGGER.warning("Task info file %s is missing; deleting orphaned lock file", info_path.name)
            _delete_lock(lock_path)
            raise DescriptorMissing(
                f"Cannot finalize; task info file not found (orphaned lock deleted): {info_path}",
                details={"path": str(info_path)},
            )
        raise DescriptorMissing(
            f"Cannot finalize; task info file and lock file not found: {info_path}",
            details={"path": str(info_path)},
        )

    target_path = info_path.with_suffix(SUCCESS_EXTENSION if succeeded else FAIL_EXTENSION)
    created = False

    try:
        for existing in (info_path.with_suffix(SUCCESS_EXTENSION), info_path.with_suffix(FAIL_EXTENSION)):
            if existing.exists():
                raise ProtocolCorruption(
                    f"Terminal file already exists: {existing}", details={"path": str(existing)}
                )

        finished = now or dt.datetime.now()
        LOGGER.debug("Finalizing %s as %s", info_path.name, target_path.name)

        with info_path.open("r", encoding="utf-8", newline="") as reader, target_path.open(
            "x", encoding="utf-8", newline=""
        ) as writer:
            created = True
            last_line = ""
            for line in reader:
                if _line_key(line) in REWRITTEN_KEYS:
                    continue
                writer.write(line)
                last_line = line
            if last_line and not last_line.endswith(("\n", "\r")):
                writer.write("\n")

            if start_time is not None:
                writer.write(f"Started={format_descriptor_time(start_time)}\n")
            writer.write(f"Finished={format_descriptor_time(finished)}\n")
            writer.write(f"CompCode={comp_code}\n")
            writer.write(f"CompMsg={comp_msg}\n")
            writer.write(f"EvalCode={eval_code}\n")
            writer.write(f"EvalMsg={eval_msg}\n")
            writer.write(f"MgrName={manager_name}\n")

        info_path.unlink()
    except OSError:
        # A partial terminal file must not outlive its .info
        if created and info_path.exists():
            with contextlib.suppress(FileNotFoundError):
                target_path.unlink()
        raise
    finally:
        _delete_lock(lock_path)

    LOGGER.info("Created %s", target_path.name)
    return target_path


def finalize_failed_job(
    info_path: Path,
    manager_name: str,
    error_message: str,
    start_time: Optional[dt.datetime] = None,
) -> Path:
    """Finalize a task that could not be started, with completion code 1."""
    LOGGER.error("%s", error_message)
    return finalize_job(
        info_path,
        manager_name,
        succeeded=False,
        start_time=start_time,
        comp_code=1,
        comp_msg=error_message,
    )
