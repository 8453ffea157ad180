"""
RemoteJobs - remote job-step lifecycle over an SFTP task queue.

This package provides:
- Sentinel file naming, retrieval and archiving on the remote host
- A poll-driven monitor that infers remote job status from those files
- Parsing of .jobstatus progress snapshots and .success/.fail results
- Worker-side task claiming and finalization
"""

import logging

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure root logging for command line use."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # paramiko logs every channel open at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


from remotejobs.remote_monitor import RemoteJobStatus, RemoteMonitor  # noqa: E402
from remotejobs.status_files import JobStepIdentity, RemoteTransferUtility  # noqa: E402

__all__ = [
    "__version__",
    "configure_logging",
    "JobStepIdentity",
    "RemoteJobStatus",
    "RemoteMonitor",
    "RemoteTransferUtility",
]
