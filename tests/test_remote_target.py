"""Tests for the SSH execution target with paramiko mocked out."""

from unittest.mock import MagicMock, patch

import paramiko
import pytest

from modelhost.exceptions import ConfigurationError
from modelhost.execution.factory import create_target
from modelhost.execution.local import LocalTarget
from modelhost.execution.remote import RemoteShellTarget
from modelhost.models import ExecutionOptions, HostCredentials, HostIdentity, HostKind


def make_channel(stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0):
    """A channel that has already finished and buffered its output."""
    channel = MagicMock()
    pending = {"out": [stdout] if stdout else [], "err": [stderr] if stderr else []}
    channel.recv_ready.side_effect = lambda: bool(pending["out"])
    channel.recv_stderr_ready.side_effect = lambda: bool(pending["err"])
    channel.recv.side_effect = lambda size: pending["out"].pop(0)
    channel.recv_stderr.side_effect = lambda size: pending["err"].pop(0)
    channel.exit_status_ready.return_value = True
    channel.recv_exit_status.return_value = exit_code
    channel.closed = False
    return channel


class StreamingChannel:
    """Channel whose output arrives over several polls.

    Each entry of ``script`` is applied on a later ``recv_ready`` poll:
    ``("out", bytes)``/``("err", bytes)`` buffer data, ``"exit"`` sets the
    exit status and ``"close"`` closes the channel. A list applies several at
    once and None is an empty poll.
    """

    def __init__(self, script, exit_code: int = 0):
        self.script = list(script)
        self.exit_code = exit_code
        self.out = []
        self.err = []
        self.exited = False
        self.closed = False
        self.close_calls = 0

    def _advance(self):
        if not self.script:
            return
        step = self.script.pop(0)
        for item in step if isinstance(step, list) else [step]:
            if item == "exit":
                self.exited = True
            elif item == "close":
                self.closed = True
            elif item is not None:
                stream, data = item
                (self.out if stream == "out" else self.err).append(data)

    def recv_ready(self):
        if self.out:
            return True
        self._advance()
        return False

    def recv_stderr_ready(self):
        return bool(self.err)

    def recv(self, size):
        return self.out.pop(0)

    def recv_stderr(self, size):
        return self.err.pop(0)

    def exit_status_ready(self):
        return self.exited

    def recv_exit_status(self):
        return self.exit_code

    def exec_command(self, command):
        pass

    def close(self):
        self.close_calls += 1


def make_client(channel=None, active: bool = True):
    client = MagicMock()
    transport = MagicMock()
    transport.is_active.return_value = active
    transport.open_session.return_value = channel or make_channel()
    client.get_transport.return_value = transport
    return client


class TestRemoteShellTarget:
    """Test connecting and executing over a mocked SSH client."""

    def test_requires_host_and_username(self):
        with pytest.raises(ConfigurationError):
            RemoteShellTarget(HostIdentity(host="gpu"))
        with pytest.raises(ConfigurationError):
            RemoteShellTarget(HostIdentity(username="root"))
        with pytest.raises(ConfigurationError):
            RemoteShellTarget(HostIdentity.local())

    @pytest.mark.asyncio
    async def test_connect_with_password(self, remote_identity, execution_settings):
        client = make_client()
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, HostCredentials(password="pw"), execution_settings)
            result = await target.connect()

        assert result.success
        assert target.is_connected()
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "gpu-01.example.com"
        assert kwargs["username"] == "ubuntu"
        assert kwargs["password"] == "pw"
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False

    @pytest.mark.asyncio
    async def test_connect_without_secret_uses_agent(self, remote_identity, execution_settings):
        client = make_client()
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, settings=execution_settings)
            await target.connect()

        assert client.connect.call_args.kwargs["allow_agent"] is True

    @pytest.mark.asyncio
    async def test_authentication_failure(self, remote_identity, execution_settings):
        client = make_client()
        client.connect.side_effect = paramiko.AuthenticationException("bad password")
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, HostCredentials(password="pw"), execution_settings)
            result = await target.connect()

        assert not result.success
        assert "Authentication failed" in result.error
        assert not target.is_connected()

        executed = await target.execute("echo hi")
        assert not executed.success
        assert "Authentication failed" in executed.stderr

    @pytest.mark.asyncio
    async def test_execute_collects_output_and_exit_code(self, remote_identity, execution_settings):
        channel = make_channel(stdout=b"hello\n", stderr=b"warn\n", exit_code=2)
        client = make_client(channel)
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, HostCredentials(password="pw"), execution_settings)
            await target.connect()
            result = await target.execute("python -V")

        assert not result.success
        assert result.exit_code == 2
        assert result.stdout == "hello\n"
        assert result.stderr == "warn\n"
        channel.exec_command.assert_called_once_with("python -V")
        channel.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_output_buffered_before_close_is_kept(self, remote_identity, execution_settings):
        channel = StreamingChannel([[("out", b"GPU-0, 81920\n"), "exit", "close"]])
        client = make_client(channel)
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, HostCredentials(password="pw"), execution_settings)
            await target.connect()
            result = await target.execute("nvidia-smi --query-gpu=name,memory.total --format=csv,noheader")

        assert result.success
        assert result.stdout == "GPU-0, 81920\n"
        assert channel.close_calls == 1

    @pytest.mark.asyncio
    async def test_output_across_several_polls(self, remote_identity, execution_settings):
        channel = StreamingChannel([
            ("out", b"loading\n"),
            None,
            [("out", b"ready\n"), ("err", b"warning: slow disk\n")],
            [("out", b"done\n"), "exit"],
        ], exit_code=3)
        client = make_client(channel)
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, HostCredentials(password="pw"), execution_settings)
            await target.connect()
            result = await target.execute("./warmup.sh")

        assert not result.success
        assert result.exit_code == 3
        assert result.stdout == "loading\nready\ndone\n"
        assert result.stderr == "warning: slow disk\n"

    @pytest.mark.asyncio
    async def test_execute_times_out(self, remote_identity, execution_settings):
        channel = make_channel()
        channel.exit_status_ready.return_value = False
        client = make_client(channel)
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, HostCredentials(password="pw"), execution_settings)
            await target.connect()
            result = await target.execute("sleep 100", ExecutionOptions(timeout=0.05))

        assert result.timed_out
        assert not result.success
        channel.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_disconnect_closes_client_and_notifies(self, remote_identity, execution_settings):
        client = make_client()
        with patch("modelhost.execution.remote.paramiko.SSHClient", return_value=client):
            target = RemoteShellTarget(remote_identity, HostCredentials(password="pw"), execution_settings)
            await target.connect()
        closed = []
        target.add_close_listener(closed.append)

        await target.disconnect()

        client.close.assert_called()
        assert closed == [target]
        assert not target.is_connected()


class TestCreateTarget:
    """Test the execution target factory."""

    def test_local(self):
        assert isinstance(create_target(HostIdentity(kind=HostKind.LOCAL)), LocalTarget)

    def test_remote(self, remote_identity):
        target = create_target(remote_identity, HostCredentials(password="pw"))
        assert isinstance(target, RemoteShellTarget)
        assert target.key == "gpu-01.example.com:22@ubuntu"

    def test_missing_identity(self):
        with pytest.raises(ConfigurationError):
            create_target(None)
