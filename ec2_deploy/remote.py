"""SSH access to the instance: probing, file copy and command execution."""

import io
import logging
import os
import posixpath
import socket
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional

import paramiko

from .config import SSH_CONNECT_TIMEOUT_SECONDS, SshCredentials

logger = logging.getLogger(__name__)

# --- Constants ---

# What never gets copied to the server when mirroring a project.
EXCLUDE_DIRS: List[str] = [
    ".git",
    ".github",
    ".vscode",
    ".idea",
    "__pycache__",
    "node_modules",
    "venv",
    ".venv",
    "build",
]
EXCLUDE_EXTENSIONS: List[str] = [
    ".pyc",
    ".log",
    ".tar",
    ".tmp",
    ".pem",
    ".sqlite3",
    ".DS_Store",
]


@dataclass
class CommandOutput:
    """What a remote command printed and how it exited."""

    command: str
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class RemoteSession:
    """
    One SSH connection to the instance.

    Simple Explanation:
    This is the Python version of running ``ssh -i key.pem ubuntu@IP`` and
    ``scp``. We log in with the key pair, copy files over SFTP and run
    commands, collecting what they print. Use it with ``with`` so the
    connection is always closed afterwards.

    Host keys of freshly launched instances are accepted automatically, the
    same as ``StrictHostKeyChecking=no``.
    """

    def __init__(self, address: str, credentials: SshCredentials,
                 connect_timeout: float = SSH_CONNECT_TIMEOUT_SECONDS):
        self.address = address
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None

    def open(self) -> "RemoteSession":
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.address,
                port=self.credentials.port,
                username=self.credentials.username,
                key_filename=self.credentials.key_path,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except Exception:
            client.close()
            raise
        self._client = client
        logger.debug(f"SSH connection opened to {self.credentials.username}@{self.address}")
        return self

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "RemoteSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise RuntimeError("RemoteSession is not open")
        return self._client

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandOutput:
        """
        Runs a command non-interactively and waits for it to finish.

        Args:
            command (str): Shell command line to run on the instance.
            timeout (Optional[float]): Channel timeout in seconds, None to wait forever.

        Returns:
            CommandOutput: Exit status plus the decoded stdout and stderr.
        """
        logger.debug(f"Running on {self.address}: {command}")
        _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        # Both streams share one channel window; drain them together.
        with ThreadPoolExecutor(max_workers=1) as pool:
            pending_err = pool.submit(stderr.read)
            out = stdout.read().decode("utf-8", errors="replace")
            err = pending_err.result().decode("utf-8", errors="replace")
        status = stdout.channel.recv_exit_status()
        return CommandOutput(command=command, exit_status=status, stdout=out, stderr=err)

    def upload(self, content: str, remote_path: str, mode: int = 0o755) -> None:
        """Writes ``content`` to ``remote_path`` (relative paths land in the login user's home)."""
        with self.client.open_sftp() as sftp:
            sftp.putfo(io.BytesIO(content.encode("utf-8")), remote_path)
            sftp.chmod(remote_path, mode)
        logger.debug(f"Uploaded {len(content)} bytes to {self.address}:{remote_path}")

    def upload_directory(self, local_dir: str, remote_dir: str,
                         exclude_dirs: Iterable[str] = EXCLUDE_DIRS,
                         exclude_extensions: Iterable[str] = EXCLUDE_EXTENSIONS) -> int:
        """
        Mirrors a local directory tree to the instance, skipping excluded files.

        Simple Explanation:
        Walks through the project folder on your computer (and every
        sub-folder), skips things the server doesn't need (Git history,
        caches, key files...) and copies everything else to the same relative
        place under ``remote_dir``.

        Args:
            local_dir (str): Local directory to copy.
            remote_dir (str): Target directory on the instance, created if missing.
            exclude_dirs (Iterable[str]): Directory names that are not descended into.
            exclude_extensions (Iterable[str]): File name suffixes that are skipped.

        Returns:
            int: Number of files copied.
        """
        local_root = os.path.abspath(local_dir)
        exclude_dirs = set(exclude_dirs)
        exclude_extensions = tuple(ext.lower() for ext in exclude_extensions)
        uploaded = 0

        with self.client.open_sftp() as sftp:
            _ensure_remote_dir(sftp, remote_dir)
            for root, dirs, files in os.walk(local_root):
                # Modify dirs in place so os.walk skips excluded directories
                dirs[:] = sorted(d for d in dirs if d not in exclude_dirs)
                relative = os.path.relpath(root, local_root)
                target_dir = remote_dir if relative == "." else posixpath.join(remote_dir, *relative.split(os.sep))
                _ensure_remote_dir(sftp, target_dir)

                for filename in sorted(files):
                    if filename.lower().endswith(exclude_extensions):
                        continue
                    local_path = os.path.join(root, filename)
                    remote_path = posixpath.join(target_dir, filename)
                    logger.debug(f"Uploading {local_path} -> {remote_path}")
                    sftp.put(local_path, remote_path)
                    uploaded += 1

        logger.info(f"Copied {uploaded} files from '{local_root}' to {self.address}:{remote_dir}")
        return uploaded


def _ensure_remote_dir(sftp: paramiko.SFTPClient, path: str) -> None:
    current = "/" if path.startswith("/") else ""
    for part in [p for p in path.split("/") if p]:
        current = posixpath.join(current, part) if current else part
        try:
            sftp.stat(current)
        except IOError:
            sftp.mkdir(current)


def probe(address: str, credentials: SshCredentials,
          connect_timeout: float = SSH_CONNECT_TIMEOUT_SECONDS) -> bool:
    """
    Tries one SSH login. Returns False instead of raising when the host isn't ready yet.

    Refused connections, timeouts, missing banners and rejected keys all mean
    "try again later" while an instance is still booting.
    """
    try:
        with RemoteSession(address, credentials, connect_timeout=connect_timeout):
            return True
    except (paramiko.SSHException, socket.timeout, OSError) as e:
        logger.debug(f"SSH probe to {address} failed: {e}")
        return False
