"""Provider interfaces for homelabctl."""
from __future__ import annotations

from .compose import ComposeError, ComposeProvider, ServiceState
from .docker import DockerError, DockerProvider

__all__ = [
    "ComposeError",
    "ComposeProvider",
    "DockerError",
    "DockerProvider",
    "ServiceState",
]
