"""Shared data models for modelhost."""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator, computed_field
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone

from .constants import LOCAL_HOST_KEY


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Enumerations
class HostKind(str, Enum):
    """Where a command is executed."""
    LOCAL = "local"
    REMOTE = "remote"


class ErrorKind(str, Enum):
    """Closed taxonomy of classified failures."""
    CONNECTION_REFUSED = "connection-refused"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission-denied"
    COMMAND_NOT_FOUND = "command-not-found"
    NETWORK = "network"
    AUTHENTICATION_FAILED = "authentication-failed"
    TEMPORARY = "temporary"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
    ErrorKind.CONNECTION_REFUSED,
    ErrorKind.TEMPORARY,
})


class AcceleratorVendor(str, Enum):
    """GPU vendors, in detection priority order."""
    NVIDIA = "nvidia"
    AMD = "amd"
    INTEL = "intel"


class EnvironmentType(str, Enum):
    """How a service command is launched."""
    CONDA = "conda"
    UV = "uv"
    VENV = "venv"
    SYSTEM = "system"


class ServiceState(str, Enum):
    """Lifecycle states of a managed service."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


# Hosts and connections
class HostIdentity(BaseModel):
    """Identifies a reachable execution target."""
    model_config = ConfigDict(frozen=True)

    kind: HostKind = HostKind.REMOTE
    host: Optional[str] = None
    port: int = Field(default=22, ge=1, le=65535)
    username: Optional[str] = None

    @classmethod
    def local(cls) -> "HostIdentity":
        return cls(kind=HostKind.LOCAL)

    @property
    def key(self) -> str:
        """Pool/connection key, ``host:port@username`` for remote hosts."""
        if self.kind == HostKind.LOCAL:
            return LOCAL_HOST_KEY
        return f"{self.host}:{self.port}@{self.username}"


class HostCredentials(BaseModel):
    """Secrets used to authenticate a remote shell session."""
    password: Optional[str] = Field(default=None, repr=False)
    private_key: Optional[str] = Field(default=None, repr=False, description="PEM encoded private key text")
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = Field(default=None, repr=False)


class ServerConfig(BaseModel):
    """A registered server: identity plus credentials."""
    id: str
    name: Optional[str] = None
    kind: HostKind = HostKind.REMOTE
    host: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    private_key: Optional[str] = Field(default=None, repr=False)
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = Field(default=None, repr=False)

    @property
    def identity(self) -> HostIdentity:
        return HostIdentity(kind=self.kind, host=self.host, port=self.port, username=self.username)

    @property
    def credentials(self) -> HostCredentials:
        return HostCredentials(
            password=self.password,
            private_key=self.private_key,
            private_key_path=self.private_key_path,
            passphrase=self.passphrase,
        )


# Execution
class ExecutionOptions(BaseModel):
    """Per-call execution limits; ``None`` falls back to the target's settings."""
    timeout: Optional[float] = Field(default=None, ge=0, description="Timeout in seconds, 0 disables")
    max_output_bytes: Optional[int] = Field(default=None, gt=0)


class ExecutionResult(BaseModel):
    """Structured outcome of a single command execution."""
    success: bool
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    duration_ms: Optional[float] = None
    retried: bool = False
    timed_out: bool = False
    attempts: int = 1
    error: Optional[str] = None

    @classmethod
    def failure(cls, message: str, exit_code: int = -1, **kwargs) -> "ExecutionResult":
        """Build a failure result carrying ``message`` as stderr."""
        return cls(success=False, exit_code=exit_code, stderr=message, error=message, **kwargs)

    @property
    def output(self) -> str:
        return self.stdout.strip()


class ConnectResult(BaseModel):
    """Outcome of connecting an execution target."""
    success: bool
    message: str = ""
    error: Optional[str] = None


# Errors
class ErrorRecord(BaseModel):
    """A classified failure as published on the error bus."""
    kind: ErrorKind
    message: str
    timestamp: datetime = Field(default_factory=_utc_now)
    context: Dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


# Accelerators
class AcceleratorDevice(BaseModel):
    """A single accelerator as reported by its vendor tool."""
    id: int
    vendor: AcceleratorVendor
    name: str
    memory_total: Optional[int] = Field(default=None, description="Total memory in bytes")
    memory_used: Optional[int] = Field(default=None, description="Used memory in bytes")
    utilization_percent: Optional[float] = None
    temperature: Optional[float] = Field(default=None, description="Temperature in Celsius")
    power_draw: Optional[float] = Field(default=None, description="Power draw in watts")
    power_limit: Optional[float] = None


class AcceleratorProcess(BaseModel):
    """A process occupying an accelerator."""
    pid: int
    name: str = ""
    command: str = ""
    memory_used: Optional[int] = Field(default=None, description="Accelerator memory used in bytes")
    vendor: AcceleratorVendor
    device: Optional[str] = None


class KillReport(BaseModel):
    """Outcome of a batch kill."""
    killed: List[int] = Field(default_factory=list)
    failed: List[int] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


# Environments
class EnvironmentInfo(BaseModel):
    """An isolated Python environment discovered on a host."""
    name: str
    path: str
    type: EnvironmentType


# Host system
class OSInfo(BaseModel):
    """Operating system of a host, from ``/etc/os-release`` and ``uname``."""
    distribution: str = "linux"
    name: str = "Unknown"
    version: Optional[str] = None
    kernel: Optional[str] = None
    arch: Optional[str] = None
    hostname: Optional[str] = None


class CPUInfo(BaseModel):
    model: str = "Unknown CPU"
    cores: int = 0
    threads: int = 0
    arch: Optional[str] = None
    frequency_mhz: Optional[float] = None
    max_frequency_mhz: Optional[float] = None


class MemoryInfo(BaseModel):
    """System memory in bytes."""
    total: int = 0
    used: int = 0
    free: int = 0
    available: int = 0

    @computed_field
    @property
    def usage_percent(self) -> float:
        return round(self.used / self.total * 100, 1) if self.total else 0.0


class DiskInfo(BaseModel):
    """A mounted filesystem; sizes in bytes."""
    device: str
    mount: str
    total: int
    used: int
    free: int

    @computed_field
    @property
    def usage_percent(self) -> float:
        return round(self.used / self.total * 100, 1) if self.total else 0.0


class SystemInfo(BaseModel):
    """Snapshot of a host's OS, CPU, memory and disks. Parts that fail to parse stay empty."""
    os: OSInfo = Field(default_factory=OSInfo)
    cpu: CPUInfo = Field(default_factory=CPUInfo)
    memory: MemoryInfo = Field(default_factory=MemoryInfo)
    disks: List[DiskInfo] = Field(default_factory=list)


# Services
class ServiceDescriptor(BaseModel):
    """A long-running model-serving process managed on a host.

    ``pid`` is best-effort and may be stale; the durable identity of a service is
    ``(server_id, start_command)``.
    """
    id: str
    server_id: str
    env_type: EnvironmentType = EnvironmentType.SYSTEM
    env_name: Optional[str] = None
    start_command: str
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    log_path: str
    pid: Optional[int] = None
    model_path: Optional[str] = None
    state: ServiceState = ServiceState.STOPPED

    @field_validator("start_command")
    @classmethod
    def validate_start_command(cls, v):
        if not v or not v.strip():
            raise ValueError("start_command must not be empty")
        return v

    @model_validator(mode="after")
    def validate_environment(self):
        if self.env_type in (EnvironmentType.CONDA, EnvironmentType.UV, EnvironmentType.VENV) and not self.env_name:
            raise ValueError(f"env_name is required for {self.env_type.value} environments")
        return self


class ServiceStatus(BaseModel):
    """Result of a liveness probe."""
    running: bool
    pid: Optional[int] = None
    port: Optional[int] = None
    port_listening: bool = False
    process_running: bool = False
    message: str = ""


class StopReport(BaseModel):
    """What the cascading stop terminated, per step."""
    killed_pids: List[int] = Field(default_factory=list)
    steps: Dict[str, List[int]] = Field(default_factory=dict)

    @property
    def already_stopped(self) -> bool:
        return not self.killed_pids

    @property
    def message(self) -> str:
        if self.already_stopped:
            return "Service already stopped"
        return f"Service stopped, terminated {len(self.killed_pids)} process(es)"


class LogChunk(BaseModel):
    """Bytes appended to a log since ``offset``.

    ``next_offset`` is passed back on the following read. ``rotated`` is set
    when the file shrank below the requested offset and was read from the start.
    """
    path: str
    offset: int = 0
    next_offset: int = 0
    data: str = ""
    rotated: bool = False


# Inbound boundary
class OperationResult(BaseModel):
    """Tagged result returned across the inbound boundary."""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Any = None) -> "OperationResult":
        return cls(success=False, error=error, data=data)
