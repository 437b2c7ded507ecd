"""Exception hierarchy for modelhost.

Command execution never raises: failed commands come back as
``ExecutionResult(success=False)``. The exceptions below are raised by
configuration and lifecycle code and converted to tagged results at the
inbound handler boundary.
"""

from typing import Optional


class ModelHostError(Exception):
    """Base exception for modelhost errors."""
    pass


class ConfigurationError(ModelHostError):
    """Raised for invalid configuration or a missing host identity."""
    pass


class UnknownServerError(ModelHostError):
    """Raised when a server id has not been registered."""

    def __init__(self, server_id: str):
        super().__init__(f"Unknown server: {server_id}")
        self.server_id = server_id


class ToolNotFoundError(ModelHostError):
    """Raised when a required command-line tool cannot be located on a host."""

    def __init__(self, tool: str, host: str):
        super().__init__(f"Could not locate '{tool}' on {host}")
        self.tool = tool
        self.host = host


class InvalidTransitionError(ModelHostError):
    """Raised on a lifecycle transition the state machine does not allow."""
    pass


class PortInUseError(ModelHostError):
    """Raised when a service port is already bound on the target host."""

    def __init__(self, port: int, detail: str = ""):
        message = f"Port {port} is already in use"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.port = port


class ServiceStartError(ModelHostError):
    """Raised when a service fails to start; carries the tail of its log."""

    def __init__(self, message: str, log_tail: Optional[str] = None):
        full = message
        if log_tail:
            full = f"{message}\n\nLog output:\n{log_tail}"
        super().__init__(full)
        self.log_tail = log_tail


class ServiceStopError(ModelHostError):
    """Raised when a stop cannot be attempted at all."""
    pass
