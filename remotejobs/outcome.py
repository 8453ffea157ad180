"""Completion codes and parsing of terminal (.success / .fail) files."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

from remotejobs.exceptions import (
    RemoteResultIdentityMismatch,
    RemoteResultIncomplete,
    RemoteResultInvalidCode,
    RemoteResultMissing,
)
from remotejobs.status_files import parse_timestamp

LOGGER = logging.getLogger("remotejobs.outcome")

# Keys present in descriptor files that the result parser does not use
IGNORED_RESULT_KEYS = frozenset({"StepTool", "WorkDir", "Staged", "MgrName"})


class CompletionCode(IntEnum):
    """Job step completion codes reported in CompCode."""

    SUCCESS = 0
    FAILED = 1
    NO_DTA_FILES = 2
    NO_OUT_FILES = 3
    NO_ANN_FILES = 5
    NO_FAS_FILES = 6
    NO_PARAM_FILE = 7
    NO_SETTINGS_FILE = 8
    NO_MODDEFS_FILE = 9
    NO_XT_FILES = 12
    NO_INSPECT_FILES = 13
    FILE_NOT_FOUND = 14
    ERROR_ZIPPING_FILE = 15
    FILE_NOT_IN_CACHE = 16
    UNABLE_TO_USE_MZ_REFINERY = 17
    SKIPPED_MZ_REFINERY = 18
    NO_DATA = 20
    SKIPPED_MSXML_GEN = 21
    SKIPPED_MAXQUANT = 22
    RESET_JOB_STEP = 23
    RESET_JOB_STEP_INSUFFICIENT_MEMORY = 24
    RUNNING_REMOTE = 25
    FAILED_REMOTE = 26
    SKIPPED_DIA_NN_SPEC_LIB = 27
    WAITING_FOR_DIA_NN_SPEC_LIB = 28


SUCCEEDED_CODES = frozenset({CompletionCode.SUCCESS, CompletionCode.NO_DATA})


def completion_code_name(code: int) -> str:
    try:
        return CompletionCode(code).name
    except ValueError:
        return f"CODE_{code}"


@dataclass(frozen=True)
class SucceededOutcome:
    code: int = CompletionCode.SUCCESS

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(frozen=True)
class FailedOutcome:
    code: int
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return False


Outcome = Union[SucceededOutcome, FailedOutcome]


@dataclass(frozen=True)
class RemoteResult:
    """Fields parsed from a validated .success or .fail file."""

    remote_job: int
    remote_step: int
    comp_code: int
    comp_msg: str = ""
    eval_code: int = 0
    eval_msg: str = ""
    remote_start: Optional[dt.datetime] = None
    remote_finish: Optional[dt.datetime] = None

    @property
    def completion_code(self) -> Optional[CompletionCode]:
        """The named completion code, or None for a code without a name."""
        try:
            return CompletionCode(self.comp_code)
        except ValueError:
            return None

    @property
    def outcome(self) -> Outcome:
        if self.comp_code in SUCCEEDED_CODES:
            return SucceededOutcome(code=self.comp_code)
        return FailedOutcome(code=self.comp_code, message=self.comp_msg)


def read_key_value_lines(path: Path) -> Iterator[Tuple[str, str]]:
    """Yield (key, value) pairs from a Key=Value file.

    Blank lines are skipped; lines without '=' are logged and skipped. Only
    the first '=' splits key from value.
    """
    with path.open("r", encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.rstrip("\r\n")
            if not line.strip():
                continue
            key, sep, value = line.partition("=")
            if not sep:
                LOGGER.warning("Ignoring invalid line in status file %s: %s", path.name, line)
                continue
            yield key, value


def _parse_int(text: str) -> int:
    try:
        return int(text.strip())
    except ValueError:
        return 0


def parse_status_result_file(path: Path, job: int, step: int) -> RemoteResult:
    """Parse and validate a terminal file for the expected job and step.

    Raises:
        RemoteResultMissing: The file does not exist.
        RemoteResultIncomplete: Job or Step is absent or zero, or the CompCode
            or EvalCode key never appears.
        RemoteResultIdentityMismatch: Job or Step belong to another job step.
        RemoteResultInvalidCode: CompCode is not a non-negative integer.
    """
    if not path.exists():
        raise RemoteResultMissing(
            f"Status result file not found: {path}", details={"path": str(path)}
        )

    remote_job = 0
    remote_step = 0
    comp_code_text: Optional[str] = None
    eval_code_text: Optional[str] = None
    comp_msg = ""
    eval_code = 0
    eval_msg = ""
    remote_start: Optional[dt.datetime] = None
    remote_finish: Optional[dt.datetime] = None

    for key, value in read_key_value_lines(path):
        if key == "CompCode":
            comp_code_text = value
        elif key == "EvalCode":
            eval_code_text = value

        if not value.strip():
            continue

        if key == "Job":
            remote_job = _parse_int(value)
        elif key == "Step":
            remote_step = _parse_int(value)
        elif key == "CompCode":
            pass
        elif key == "CompMsg":
            comp_msg = value
            LOGGER.warning("Completion message for job %d run remotely: %s", job, comp_msg)
        elif key == "EvalCode":
            eval_code = _parse_int(value)
        elif key == "EvalMsg":
            eval_msg = value
        elif key == "Started":
            remote_start = parse_timestamp(value)
        elif key == "Finished":
            remote_finish = parse_timestamp(value)
        elif key in IGNORED_RESULT_KEYS:
            continue
        else:
            LOGGER.warning("Skipping unrecognized line label: %s", key)

    details = {"path": str(path), "job": job, "step": step}
    if remote_job == 0:
        raise RemoteResultIncomplete(
            "Status file retrieved from remote host does not have Job listed", details=details
        )
    if remote_step == 0:
        raise RemoteResultIncomplete(
            "Status file retrieved from remote host does not have Step listed", details=details
        )
    if remote_job != job:
        raise RemoteResultIdentityMismatch(
            f"Status file retrieved from remote host has the wrong job number: {remote_job} vs. {job}",
            details={**details, "remote_job": remote_job},
        )
    if remote_step != step:
        raise RemoteResultIdentityMismatch(
            f"Status file retrieved from remote host has the wrong step number for job {job}: "
            f"{remote_step} vs. {step}",
            details={**details, "remote_step": remote_step},
        )
    if comp_code_text is None or eval_code_text is None:
        raise RemoteResultIncomplete(
            "Status file retrieved from remote host is missing CompCode or EvalCode", details=details
        )

    comp_code_value = comp_code_text.strip() or "0"
    try:
        comp_code = int(comp_code_value)
    except ValueError:
        comp_code = -1
    if comp_code < 0:
        raise RemoteResultInvalidCode(
            f"Status file retrieved from remote host has an invalid completion code: {comp_code_text}",
            details={**details, "comp_code": comp_code_text},
        )

    if comp_code != CompletionCode.SUCCESS:
        LOGGER.warning(
            "Completion code for job %d run remotely: %s", job, completion_code_name(comp_code)
        )
    if eval_code != 0:
        LOGGER.info("Evaluation code for job %d run remotely: %d, %s", job, eval_code, eval_msg)

    return RemoteResult(
        remote_job=remote_job,
        remote_step=remote_step,
        comp_code=comp_code,
        comp_msg=comp_msg,
        eval_code=eval_code,
        eval_msg=eval_msg,
        remote_start=remote_start,
        remote_finish=remote_finish,
    )


@dataclass(frozen=True)
class IdleReportFields:
    mgr_name: str
    started: Optional[dt.datetime]
    finished: Optional[dt.datetime]


def read_idle_report_fields(path: Path) -> IdleReportFields:
    """Read only MgrName, Started and Finished from a terminal file."""
    mgr_name = ""
    started: Optional[dt.datetime] = None
    finished: Optional[dt.datetime] = None
    for key, value in read_key_value_lines(path):
        if key == "MgrName":
            mgr_name = value
        elif key == "Started":
            started = parse_timestamp(value)
        elif key == "Finished":
            finished = parse_timestamp(value)
    return IdleReportFields(mgr_name=mgr_name.strip(), started=started, finished=finished)
