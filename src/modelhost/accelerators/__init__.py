"""Accelerator (GPU) handlers."""

from .base import AcceleratorHandler
from .nvidia import NvidiaHandler
from .amd import AmdHandler
from .intel import IntelHandler
from .registry import AcceleratorRegistry

__all__ = ["AcceleratorHandler", "NvidiaHandler", "AmdHandler", "IntelHandler", "AcceleratorRegistry"]
