"""Remote shell execution target over SSH.

paramiko is blocking, so the handshake and channel setup run in a worker
thread; reading a command's output is done by polling the channel from the
event loop so a running command can be abandoned by closing its channel.
"""

import asyncio
import io
import logging
import time
from pathlib import Path
from typing import Optional

import paramiko

from ..config import ExecutionSettings
from ..exceptions import ConfigurationError
from ..models import ConnectResult, ExecutionOptions, ExecutionResult, HostCredentials, HostIdentity, HostKind
from .base import ExecutionTarget

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_private_key(key_text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key text, trying each supported key type."""
    last_error: Optional[Exception] = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise paramiko.SSHException(f"Unsupported or invalid private key: {last_error}")


def _append_capped(buffer: bytearray, chunk: bytes, limit: int) -> bool:
    """Append ``chunk`` up to ``limit``; return True if anything was dropped."""
    remaining = limit - len(buffer)
    if remaining > 0:
        buffer.extend(chunk[:remaining])
    return len(chunk) > remaining


class RemoteShellTarget(ExecutionTarget):
    """Runs commands on a remote host over one authenticated SSH session.

    Each command gets its own channel on the shared transport.
    """

    def __init__(self, identity: HostIdentity, credentials: Optional[HostCredentials] = None,
                 settings: Optional[ExecutionSettings] = None):
        if identity.kind != HostKind.REMOTE:
            raise ConfigurationError(f"RemoteShellTarget requires a remote identity, got {identity.kind.value}")
        if not identity.host:
            raise ConfigurationError("Remote host identity requires a host")
        if not identity.username:
            raise ConfigurationError("Remote host identity requires a username")
        super().__init__(identity)
        self.credentials = credentials or HostCredentials()
        self.settings = settings or ExecutionSettings()
        self._client: Optional[paramiko.SSHClient] = None
        self._connect_lock = asyncio.Lock()
        self.last_error: Optional[str] = None

    def is_connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return bool(transport is not None and transport.is_active())

    def _resolve_key(self) -> Optional[paramiko.PKey]:
        creds = self.credentials
        if creds.private_key:
            return load_private_key(creds.private_key, creds.passphrase)
        if creds.private_key_path:
            key_path = Path(creds.private_key_path).expanduser()
            if not key_path.exists():
                raise FileNotFoundError(f"Private key file not found: {creds.private_key_path}")
            return load_private_key(key_path.read_text(), creds.passphrase)
        return None

    def _open_client(self) -> paramiko.SSHClient:
        pkey = self._resolve_key()
        has_secret = pkey is not None or bool(self.credentials.password)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.identity.host,
                port=self.identity.port,
                username=self.identity.username,
                password=self.credentials.password,
                pkey=pkey,
                timeout=self.settings.connect_timeout,
                banner_timeout=self.settings.connect_timeout,
                auth_timeout=self.settings.connect_timeout,
                allow_agent=not has_secret,
                look_for_keys=not has_secret,
            )
        except Exception:
            client.close()
            raise
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(30)
        return client

    async def connect(self) -> ConnectResult:
        if self.is_connected():
            return ConnectResult(success=True, message="Already connected")

        async with self._connect_lock:
            if self.is_connected():
                return ConnectResult(success=True, message="Already connected")

            logger.info(f"Connecting to {self.key}")
            try:
                self._client = await asyncio.to_thread(self._open_client)
            except paramiko.AuthenticationException as e:
                self.last_error = f"Authentication failed: {e}"
            except (paramiko.SSHException, OSError, EOFError) as e:
                self.last_error = str(e) or type(e).__name__
            else:
                self.last_error = None
                logger.info(f"SSH connection established to {self.key}")
                return ConnectResult(success=True, message=f"Connected to {self.key}")

            self._client = None
            logger.error(f"SSH connection to {self.key} failed: {self.last_error}")
            return ConnectResult(success=False, message="Connection failed", error=self.last_error)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception as e:
                logger.warning(f"Error closing SSH connection to {self.key}: {e}")
            logger.info(f"SSH connection closed to {self.key}")
        self._notify_closed()

    @staticmethod
    def _open_channel(transport: paramiko.Transport, command: str, timeout: float) -> paramiko.Channel:
        channel = transport.open_session(timeout=timeout)
        channel.exec_command(command)
        return channel

    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        if not self.is_connected():
            message = f"Not connected to {self.key}"
            if self.last_error:
                message = f"{message}: {self.last_error}"
            return ExecutionResult.failure(message)

        options = options or ExecutionOptions()
        timeout = options.timeout if options.timeout is not None else self.settings.command_timeout
        limit = options.max_output_bytes or self.settings.max_output_bytes
        started = time.monotonic()

        logger.debug(f"Executing on {self.key}: {command}")
        transport = self._client.get_transport()
        try:
            channel = await asyncio.to_thread(self._open_channel, transport, command, self.settings.connect_timeout)
        except (paramiko.SSHException, OSError, EOFError) as e:
            logger.error(f"Failed to open channel on {self.key}: {e}")
            return ExecutionResult.failure(f"Failed to open channel: {e}",
                                           duration_ms=(time.monotonic() - started) * 1000)

        try:
            return await self._collect(channel, command, timeout, limit, started)
        finally:
            channel.close()

    async def _collect(self, channel: paramiko.Channel, command: str, timeout: float,
                       limit: int, started: float) -> ExecutionResult:
        stdout, stderr = bytearray(), bytearray()
        truncated = False

        while True:
            # Sampled before draining so output buffered ahead of the exit/close is still read
            finished = channel.exit_status_ready() or channel.closed

            progressed = False
            while channel.recv_ready():
                truncated |= _append_capped(stdout, channel.recv(_READ_CHUNK), limit)
                progressed = True
            while channel.recv_stderr_ready():
                truncated |= _append_capped(stderr, channel.recv_stderr(_READ_CHUNK), limit)
                progressed = True

            if finished:
                break
            if timeout and time.monotonic() - started > timeout:
                logger.warning(f"Remote command on {self.key} timed out after {timeout}s: {command}")
                return ExecutionResult(
                    success=False,
                    exit_code=-1,
                    stdout=stdout.decode("utf-8", errors="replace"),
                    stderr=f"Command timed out after {timeout}s",
                    error=f"Command timed out after {timeout}s",
                    timed_out=True,
                    duration_ms=(time.monotonic() - started) * 1000,
                )
            if not progressed:
                await asyncio.sleep(self.settings.poll_interval)

        exit_code = channel.recv_exit_status() if channel.exit_status_ready() else -1
        if truncated:
            logger.warning(f"Output of remote command truncated to {limit} bytes: {command}")

        return ExecutionResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=(time.monotonic() - started) * 1000,
        )
