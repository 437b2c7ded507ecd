"""Execution target factory."""

import logging
from typing import Optional

from ..config import ExecutionSettings
from ..exceptions import ConfigurationError
from ..models import HostCredentials, HostIdentity, HostKind
from .base import ExecutionTarget
from .local import LocalTarget
from .remote import RemoteShellTarget

logger = logging.getLogger(__name__)


def create_target(identity: HostIdentity, credentials: Optional[HostCredentials] = None,
                  settings: Optional[ExecutionSettings] = None) -> ExecutionTarget:
    """Create an unconnected execution target for ``identity``.

    Raises:
        ConfigurationError: If the identity is missing or incomplete.
    """
    if identity is None:
        raise ConfigurationError("A host identity is required")

    if identity.kind == HostKind.LOCAL:
        logger.debug("Creating local execution target")
        return LocalTarget(settings)

    if identity.kind == HostKind.REMOTE:
        logger.debug(f"Creating remote execution target for {identity.key}")
        return RemoteShellTarget(identity, credentials, settings)

    error_msg = f"Unsupported host kind: {identity.kind}"
    logger.error(error_msg)
    raise ConfigurationError(error_msg)
