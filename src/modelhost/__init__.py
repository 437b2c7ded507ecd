"""modelhost - run, pool and supervise model-serving processes on local and remote hosts."""

__version__ = "0.1.0"

from .models import (
    HostKind,
    HostIdentity,
    HostCredentials,
    ServerConfig,
    ExecutionOptions,
    ExecutionResult,
    ErrorKind,
    ErrorRecord,
    AcceleratorVendor,
    AcceleratorDevice,
    AcceleratorProcess,
    EnvironmentType,
    ServiceState,
    ServiceDescriptor,
    ServiceStatus,
    StopReport,
    LogChunk,
    SystemInfo,
    OperationResult,
)

from .exceptions import (
    ModelHostError,
    ConfigurationError,
    UnknownServerError,
    ToolNotFoundError,
    InvalidTransitionError,
    PortInUseError,
    ServiceStartError,
    ServiceStopError,
)

from .config import Settings

from .context import ApplicationContext
from .handlers import Handlers

__all__ = [
    # Models
    "HostKind",
    "HostIdentity",
    "HostCredentials",
    "ServerConfig",
    "ExecutionOptions",
    "ExecutionResult",
    "ErrorKind",
    "ErrorRecord",
    "AcceleratorVendor",
    "AcceleratorDevice",
    "AcceleratorProcess",
    "EnvironmentType",
    "ServiceState",
    "ServiceDescriptor",
    "ServiceStatus",
    "StopReport",
    "LogChunk",
    "SystemInfo",
    "OperationResult",
    # Exceptions
    "ModelHostError",
    "ConfigurationError",
    "UnknownServerError",
    "ToolNotFoundError",
    "InvalidTransitionError",
    "PortInUseError",
    "ServiceStartError",
    "ServiceStopError",
    # Wiring
    "Settings",
    "ApplicationContext",
    "Handlers",
]
