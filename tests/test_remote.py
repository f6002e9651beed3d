"""Tests for the SSH session wrapper."""

import socket
import threading
from unittest.mock import MagicMock

import paramiko
import pytest

from ec2_deploy import remote
from ec2_deploy.config import SshCredentials
from ec2_deploy.remote import RemoteSession, probe

CREDENTIALS = SshCredentials(key_path="/keys/MyProjectKey.pem")


@pytest.fixture
def ssh_client(monkeypatch) -> MagicMock:
    """The paramiko.SSHClient instance RemoteSession creates."""
    client = MagicMock()
    monkeypatch.setattr(remote.paramiko, "SSHClient", MagicMock(return_value=client))
    return client


@pytest.fixture
def sftp(ssh_client) -> MagicMock:
    sftp = MagicMock()
    ssh_client.open_sftp.return_value.__enter__.return_value = sftp
    return sftp


def channel_files(stdout: bytes, stderr: bytes, status: int):
    out = MagicMock()
    out.read.return_value = stdout
    out.channel.recv_exit_status.return_value = status
    err = MagicMock()
    err.read.return_value = stderr
    return MagicMock(), out, err


class TestRemoteSession:
    """Tests for RemoteSession."""

    def test_connects_with_key_and_closes(self, ssh_client) -> None:
        with RemoteSession("203.0.113.5", CREDENTIALS, connect_timeout=7):
            pass

        kwargs = ssh_client.connect.call_args.kwargs
        assert kwargs["hostname"] == "203.0.113.5"
        assert kwargs["username"] == "ubuntu"
        assert kwargs["key_filename"] == "/keys/MyProjectKey.pem"
        assert kwargs["timeout"] == 7
        ssh_client.close.assert_called_once()

    def test_failed_connect_closes_client(self, ssh_client) -> None:
        ssh_client.connect.side_effect = paramiko.AuthenticationException("denied")

        with pytest.raises(paramiko.AuthenticationException):
            RemoteSession("203.0.113.5", CREDENTIALS).open()

        ssh_client.close.assert_called_once()

    def test_execute_captures_output_and_status(self, ssh_client) -> None:
        ssh_client.exec_command.return_value = channel_files(b"", b"permission denied\n", 1)

        with RemoteSession("203.0.113.5", CREDENTIALS) as session:
            output = session.execute("docker ps")

        assert output.command == "docker ps"
        assert output.exit_status == 1
        assert output.stderr == "permission denied\n"
        assert not output.ok

    def test_execute_reads_stderr_while_stdout_is_open(self, ssh_client) -> None:
        stderr_started = threading.Event()
        stdin, out, err = channel_files(b"", b"", 0)
        # stdout only finishes once someone is reading stderr
        out.read.side_effect = lambda: b"done\n" if stderr_started.wait(timeout=5) else b"stalled\n"
        err.read.side_effect = lambda: stderr_started.set() or b"E: lots of warnings\n"
        ssh_client.exec_command.return_value = (stdin, out, err)

        with RemoteSession("203.0.113.5", CREDENTIALS) as session:
            output = session.execute("bash setup_instance.sh")

        assert output.stdout == "done\n"
        assert output.stderr == "E: lots of warnings\n"

    def test_execute_requires_open_session(self) -> None:
        with pytest.raises(RuntimeError):
            RemoteSession("203.0.113.5", CREDENTIALS).execute("true")

    def test_upload_writes_content_and_mode(self, sftp) -> None:
        with RemoteSession("203.0.113.5", CREDENTIALS) as session:
            session.upload("echo hi\n", "setup.sh")

        fileobj, path = sftp.putfo.call_args.args
        assert fileobj.getvalue() == b"echo hi\n"
        assert path == "setup.sh"
        sftp.chmod.assert_called_once_with("setup.sh", 0o755)

    def test_upload_directory_skips_excluded(self, sftp, tmp_path) -> None:
        (tmp_path / "backend").mkdir()
        (tmp_path / "backend" / "app.py").write_text("print()")
        (tmp_path / "backend" / "app.pyc").write_text("")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref")
        (tmp_path / "docker-compose.yml").write_text("services: {}")
        sftp.stat.side_effect = IOError("missing")

        with RemoteSession("203.0.113.5", CREDENTIALS) as session:
            count = session.upload_directory(str(tmp_path), "app")

        assert count == 2
        remote_paths = sorted(c.args[1] for c in sftp.put.call_args_list)
        assert remote_paths == ["app/backend/app.py", "app/docker-compose.yml"]
        made = [c.args[0] for c in sftp.mkdir.call_args_list]
        assert "app" in made and "app/backend" in made


class TestProbe:
    """Tests for probe."""

    def test_reachable(self, ssh_client) -> None:
        assert probe("203.0.113.5", CREDENTIALS) is True
        ssh_client.close.assert_called_once()

    @pytest.mark.parametrize(
        "error",
        [
            socket.timeout("timed out"),
            ConnectionRefusedError(111, "Connection refused"),
            paramiko.SSHException("Error reading SSH protocol banner"),
            paramiko.AuthenticationException("Authentication failed"),
        ],
    )
    def test_not_yet_reachable(self, ssh_client, error) -> None:
        ssh_client.connect.side_effect = error

        assert probe("203.0.113.5", CREDENTIALS) is False
