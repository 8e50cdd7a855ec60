"""Helper utilities used by the ``setup`` workflow."""
from __future__ import annotations

from .deployment import (
    DeploymentError,
    DeploymentType,
    ServiceSelection,
    domains_to_check,
    invalid_domains,
    missing_required,
    select_services,
    stack_compose_file,
)
from .environment import (
    DockerInstallPlan,
    HostError,
    InstallAction,
    VirtualizationInfo,
    check_requirements,
    detect_virtualization,
    ensure_docker,
    plan_docker_install,
    scaffold_env,
)
from .setup import SetupError, SetupOptions, SetupResult, SetupRunner

__all__ = [
    # deployment helpers
    "DeploymentError",
    "DeploymentType",
    "ServiceSelection",
    "domains_to_check",
    "invalid_domains",
    "missing_required",
    "select_services",
    "stack_compose_file",
    # host helpers
    "DockerInstallPlan",
    "HostError",
    "InstallAction",
    "VirtualizationInfo",
    "check_requirements",
    "detect_virtualization",
    "ensure_docker",
    "plan_docker_install",
    "scaffold_env",
    # orchestration
    "SetupError",
    "SetupOptions",
    "SetupResult",
    "SetupRunner",
]
