"""Transport adapters for the shared task queue filesystem.

The remote and local sides share nothing but a filesystem reachable over
SFTP. Adapters expose listing, get, put, delete and directory creation keyed
by full remote (POSIX) paths, and raise TransportError on any failure.
"""

from __future__ import annotations

import datetime as dt
import fnmatch
import logging
import os
import shutil
import stat
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional

import paramiko

from remotejobs.exceptions import ConfigurationError, TransportError

LOGGER = logging.getLogger("remotejobs.transport")


@dataclass(frozen=True)
class RemoteFileInfo:
    """A file or directory on the remote host."""

    name: str
    full_path: str
    size: int
    last_write_utc: dt.datetime
    is_directory: bool = False


def _utc_from_timestamp(timestamp: Optional[float]) -> dt.datetime:
    return dt.datetime.fromtimestamp(timestamp or 0, tz=dt.timezone.utc)


class Transport(ABC):
    """Abstract file transport to the remote task queue host.

    Implementations must be safe for concurrent use by several monitors.
    """

    host_name: str = "localhost"

    @abstractmethod
    def list(self, remote_dir: str, pattern: str = "*") -> List[RemoteFileInfo]:
        """List entries of remote_dir whose names match a glob pattern."""

    @abstractmethod
    def get(self, remote_path: str, local_dir: Path) -> Path:
        """Copy one remote file into local_dir; return the local path."""

    @abstractmethod
    def put(self, local_path: Path, remote_dir: str) -> str:
        """Copy one local file into remote_dir; return the remote path."""

    @abstractmethod
    def delete(self, remote_path: str) -> None:
        """Delete one remote file."""

    @abstractmethod
    def mkdir_all(self, remote_dir: str) -> None:
        """Create remote_dir and any missing parents."""

    @abstractmethod
    def rename(self, remote_path: str, new_remote_path: str) -> None:
        """Move a remote file within the remote filesystem."""

    def delete_tree(self, remote_dir: str, keep_empty_directory: bool = False) -> None:
        """Recursively delete a remote directory and its contents."""
        for entry in self.list(remote_dir):
            if entry.is_directory:
                self.delete_tree(entry.full_path)
            else:
                self.delete(entry.full_path)
        if not keep_empty_directory:
            self._rmdir(remote_dir)

    @abstractmethod
    def _rmdir(self, remote_dir: str) -> None:
        """Remove an empty remote directory."""

    def close(self) -> None:
        """Release any connection held by the adapter."""


class SftpTransport(Transport):
    """Transport backed by a paramiko SSH/SFTP session.

    The session is opened lazily and re-opened after a connection failure.
    A lock serializes SFTP calls so one adapter can serve many monitors.
    """

    def __init__(
        self,
        host_name: str,
        username: Optional[str] = None,
        *,
        port: int = 22,
        private_key_file: Optional[str] = None,
        passphrase_file: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.host_name = host_name
        self.username = username
        self.port = port
        self.private_key_file = private_key_file
        self.passphrase_file = passphrase_file
        self.timeout = timeout
        self._lock = threading.RLock()
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    def _passphrase(self) -> Optional[str]:
        if not self.passphrase_file:
            return None
        return Path(self.passphrase_file).expanduser().read_text(encoding="utf-8").strip()

    def _client(self) -> paramiko.SFTPClient:
        if self._sftp is not None:
            return self._sftp
        LOGGER.debug("Opening SFTP session to %s@%s:%d", self.username, self.host_name, self.port)
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                self.host_name,
                port=self.port,
                username=self.username,
                key_filename=self.private_key_file,
                passphrase=self._passphrase(),
                timeout=self.timeout,
            )
            self._sftp = ssh.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            ssh.close()
            raise TransportError(
                f"Unable to connect to {self.host_name}: {exc}",
                details={"host": self.host_name},
            ) from exc
        self._ssh = ssh
        return self._sftp

    def _reset(self) -> None:
        if self._ssh is not None:
            self._ssh.close()
        self._ssh = None
        self._sftp = None

    def _fail(self, action: str, path: str, exc: Exception) -> TransportError:
        if isinstance(exc, (paramiko.SSHException, EOFError)):
            self._reset()
        return TransportError(
            f"Error {action} {path} on {self.host_name}: {exc}",
            details={"host": self.host_name, "path": path},
        )

    def list(self, remote_dir: str, pattern: str = "*") -> List[RemoteFileInfo]:
        with self._lock:
            try:
                entries = self._client().listdir_attr(remote_dir)
            except TransportError:
                raise
            except (OSError, paramiko.SSHException, EOFError) as exc:
                raise self._fail("listing", remote_dir, exc) from exc

        results: List[RemoteFileInfo] = []
        for entry in entries:
            if entry.filename in (".", ".."):
                continue
            if not fnmatch.fnmatchcase(entry.filename, pattern):
                continue
            results.append(
                RemoteFileInfo(
                    name=entry.filename,
                    full_path=str(PurePosixPath(remote_dir) / entry.filename),
                    size=entry.st_size or 0,
                    last_write_utc=_utc_from_timestamp(entry.st_mtime),
                    is_directory=stat.S_ISDIR(entry.st_mode or 0),
                )
            )
        return results

    def get(self, remote_path: str, local_dir: Path) -> Path:
        local_dir.mkdir(parents=True, exist_ok=True)
        local_path = local_dir / PurePosixPath(remote_path).name
        with self._lock:
            try:
                self._client().get(remote_path, str(local_path))
            except TransportError:
                raise
            except (OSError, paramiko.SSHException, EOFError) as exc:
                raise self._fail("retrieving", remote_path, exc) from exc
        return local_path

    def put(self, local_path: Path, remote_dir: str) -> str:
        remote_path = str(PurePosixPath(remote_dir) / local_path.name)
        with self._lock:
            try:
                self._client().put(str(local_path), remote_path)
            except TransportError:
                raise
            except (OSError, paramiko.SSHException, EOFError) as exc:
                raise self._fail("uploading", remote_path, exc) from exc
        return remote_path

    def delete(self, remote_path: str) -> None:
        with self._lock:
            try:
                self._client().remove(remote_path)
            except TransportError:
                raise
            except (OSError, paramiko.SSHException, EOFError) as exc:
                raise self._fail("deleting", remote_path, exc) from exc

    def mkdir_all(self, remote_dir: str) -> None:
        path = PurePosixPath(remote_dir)
        with self._lock:
            client = self._client()
            for parent in reversed([path, *path.parents]):
                if str(parent) in ("/", "."):
                    continue
                try:
                    client.stat(str(parent))
                    continue
                except FileNotFoundError:
                    pass
                except (OSError, paramiko.SSHException, EOFError) as exc:
                    raise self._fail("checking", str(parent), exc) from exc
                try:
                    client.mkdir(str(parent))
                except (OSError, paramiko.SSHException, EOFError) as exc:
                    raise self._fail("creating", str(parent), exc) from exc

    def rename(self, remote_path: str, new_remote_path: str) -> None:
        with self._lock:
            try:
                self._client().posix_rename(remote_path, new_remote_path)
            except TransportError:
                raise
            except (OSError, paramiko.SSHException, EOFError) as exc:
                raise self._fail("renaming", remote_path, exc) from exc

    def _rmdir(self, remote_dir: str) -> None:
        with self._lock:
            try:
                self._client().rmdir(remote_dir)
            except TransportError:
                raise
            except (OSError, paramiko.SSHException, EOFError) as exc:
                raise self._fail("removing", remote_dir, exc) from exc

    def close(self) -> None:
        with self._lock:
            self._reset()


class LocalTransport(Transport):
    """Transport for a task queue reachable as a mounted local filesystem.

    Remote paths are resolved below ``root`` (or used as-is when root is
    None), so a shared mount and a test directory behave like the remote.
    """

    def __init__(self, root: Optional[Path] = None, host_name: str = "localhost") -> None:
        self.root = root
        self.host_name = host_name

    def resolve(self, remote_path: str) -> Path:
        if self.root is None:
            return Path(remote_path)
        return self.root / str(remote_path).lstrip("/")

    def list(self, remote_dir: str, pattern: str = "*") -> List[RemoteFileInfo]:
        directory = self.resolve(remote_dir)
        try:
            children = sorted(directory.iterdir())
        except OSError as exc:
            raise TransportError(
                f"Error listing {remote_dir}: {exc}", details={"path": remote_dir}
            ) from exc
        results: List[RemoteFileInfo] = []
        for child in children:
            if not fnmatch.fnmatchcase(child.name, pattern):
                continue
            try:
                info = child.stat()
            except FileNotFoundError:
                # Deleted between listing and stat
                continue
            results.append(
                RemoteFileInfo(
                    name=child.name,
                    full_path=str(PurePosixPath(remote_dir) / child.name),
                    size=info.st_size,
                    last_write_utc=_utc_from_timestamp(info.st_mtime),
                    is_directory=child.is_dir(),
                )
            )
        return results

    def get(self, remote_path: str, local_dir: Path) -> Path:
        source = self.resolve(remote_path)
        local_dir.mkdir(parents=True, exist_ok=True)
        target = local_dir / source.name
        try:
            shutil.copy2(source, target)
        except OSError as exc:
            raise TransportError(
                f"Error retrieving {remote_path}: {exc}", details={"path": remote_path}
            ) from exc
        return target

    def put(self, local_path: Path, remote_dir: str) -> str:
        remote_path = str(PurePosixPath(remote_dir) / local_path.name)
        try:
            shutil.copy2(local_path, self.resolve(remote_path))
        except OSError as exc:
            raise TransportError(
                f"Error uploading {local_path} to {remote_dir}: {exc}",
                details={"path": remote_path},
            ) from exc
        return remote_path

    def delete(self, remote_path: str) -> None:
        try:
            self.resolve(remote_path).unlink()
        except OSError as exc:
            raise TransportError(
                f"Error deleting {remote_path}: {exc}", details={"path": remote_path}
            ) from exc

    def mkdir_all(self, remote_dir: str) -> None:
        try:
            self.resolve(remote_dir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TransportError(
                f"Error creating {remote_dir}: {exc}", details={"path": remote_dir}
            ) from exc

    def rename(self, remote_path: str, new_remote_path: str) -> None:
        try:
            os.replace(self.resolve(remote_path), self.resolve(new_remote_path))
        except OSError as exc:
            raise TransportError(
                f"Error renaming {remote_path}: {exc}", details={"path": remote_path}
            ) from exc

    def _rmdir(self, remote_dir: str) -> None:
        try:
            self.resolve(remote_dir).rmdir()
        except OSError as exc:
            raise TransportError(
                f"Error removing {remote_dir}: {exc}", details={"path": remote_dir}
            ) from exc


def build_transport(settings) -> Transport:
    """Create the SFTP transport described by settings."""
    if not settings.remote_host_name:
        raise ConfigurationError("remote_host_name is not set; cannot connect to the remote host")
    return SftpTransport(
        settings.remote_host_name,
        settings.remote_host_user,
        port=settings.remote_host_port,
        private_key_file=settings.remote_host_private_key_file,
        passphrase_file=settings.remote_host_passphrase_file,
    )
