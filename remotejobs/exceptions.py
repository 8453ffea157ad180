"""Custom exception hierarchy for remote job processing.

Provides structured exceptions with machine-readable error codes so that
the monitor, the finalizer and the CLI can report failures consistently.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RemoteJobsException(Exception):
    """Base exception for all remote job errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code (e.g., "REMOTE_RESULT_MISSING")
        details: Additional error context
    """

    default_code: str = "INTERNAL_ERROR"
    default_message: str = "An internal error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a serializable report."""
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ConfigurationError(RemoteJobsException):
    """Required settings are missing or invalid."""

    default_code = "CONFIGURATION_ERROR"
    default_message = "Remote job settings are missing or invalid"


# ========== Transport ==========


class TransportError(RemoteJobsException):
    """Listing, copying or deleting files on the remote host failed.

    Transient by nature; callers retry on the next poll.
    """

    default_code = "TRANSPORT_ERROR"
    default_message = "Remote file transfer failed"


# ========== Protocol corruption ==========


class ProtocolCorruption(RemoteJobsException):
    """Sentinel file content violates the task queue protocol."""

    default_code = "PROTOCOL_CORRUPTION"
    default_message = "Remote status file is corrupt or inconsistent"


class RemoteResultMissing(ProtocolCorruption):
    """The .success or .fail file could not be found."""

    default_code = "REMOTE_RESULT_MISSING"
    default_message = "Status result file not found"


class RemoteResultIncomplete(ProtocolCorruption):
    """The result file lacks Job, Step, CompCode or EvalCode."""

    default_code = "REMOTE_RESULT_INCOMPLETE"
    default_message = "Status result file is missing required keys"


class RemoteResultIdentityMismatch(ProtocolCorruption):
    """The result file belongs to a different job or step."""

    default_code = "REMOTE_RESULT_IDENTITY_MISMATCH"
    default_message = "Status result file has the wrong job or step"


class RemoteResultInvalidCode(ProtocolCorruption):
    """The completion code is not a non-negative integer."""

    default_code = "REMOTE_RESULT_INVALID_CODE"
    default_message = "Status result file has an invalid completion code"


class JobStatusParseError(ProtocolCorruption):
    """The .jobstatus XML could not be parsed."""

    default_code = "JOBSTATUS_PARSE_ERROR"
    default_message = "Unable to parse the .jobstatus file"


# ========== Worker side ==========


class ResourceMissing(RemoteJobsException):
    """A file required by the worker is absent."""

    default_code = "RESOURCE_MISSING"
    default_message = "Required file not found"


class DescriptorMissing(ResourceMissing):
    """The .info task descriptor is absent at finalize time."""

    default_code = "DESCRIPTOR_MISSING"
    default_message = "Task descriptor file not found"


class LockNotAcquired(RemoteJobsException):
    """Another manager claimed the task first."""

    default_code = "LOCK_NOT_ACQUIRED"
    default_message = "Task is locked by another manager"
