"""Host inspection and preparation steps used by ``homelabctl setup``."""
from __future__ import annotations

import os
import shutil
import socket
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..envfile import read_env, update_env
from ..providers.compose import ComposeProvider
from ..providers.docker import DockerProvider
from ..providers.process import run_command
from .deployment import LOCAL_DEFAULTS

MIN_FREE_BYTES = 1024 * 1024 * 1024
WEB_PORTS = (80, 443)
OS_RELEASE = Path("/etc/os-release")
TUN_DEVICE = Path("/dev/net/tun")
PROXY_NETWORK = "proxy"
PORTAINER_VOLUME = "portainer_data"
GET_DOCKER_URL = "https://get.docker.com"


class HostError(RuntimeError):
    """Raised when the host cannot run the homelab."""


# ---------------------------------------------------------------------------
# System requirements
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RequirementsReport:
    """Outcome of the system requirements check."""

    free_bytes: int
    ports_in_use: list[int] = field(default_factory=list)

    @property
    def enough_disk(self) -> bool:
        """Return ``True`` when at least 1 GiB is free."""
        return self.free_bytes >= MIN_FREE_BYTES


def port_in_use(port: int, *, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Return ``True`` when something accepts connections on *port*."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def check_requirements(
    path: Path,
    *,
    ports: Sequence[int] = WEB_PORTS,
    probe: Callable[[int], bool] = port_in_use,
) -> RequirementsReport:
    """Measure free disk space under *path* and look for bound web ports."""
    usage = shutil.disk_usage(path)
    return RequirementsReport(
        free_bytes=usage.free,
        ports_in_use=[port for port in ports if probe(port)],
    )


# ---------------------------------------------------------------------------
# Docker installation
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class InstallAction:
    """Single command needed to install or start Docker."""

    kind: Literal["install", "service", "compose-plugin"]
    description: str
    command: list[str]


@dataclass(slots=True)
class DockerInstallPlan:
    """Commands that install Docker for a detected distribution."""

    os_id: str
    actions: list[InstallAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def read_os_release(path: Path = OS_RELEASE) -> dict[str, str]:
    """Return ``/etc/os-release`` as a mapping (empty when absent)."""
    return read_env(path)


def _get_docker_script() -> list[InstallAction]:
    script = f"curl -fsSL {GET_DOCKER_URL} -o /tmp/get-docker.sh && sh /tmp/get-docker.sh"
    return [
        InstallAction("install", "Run the official get.docker.com script.", ["sh", "-c", script]),
    ]


def plan_docker_install(
    os_id: str,
    *,
    has_dnf: bool | None = None,
) -> DockerInstallPlan:
    """Return the installation commands for distribution *os_id*."""
    plan = DockerInstallPlan(os_id=os_id)
    if os_id in {"ubuntu", "debian"}:
        plan.actions.append(InstallAction("install", "Refresh apt indexes.", ["apt-get", "update"]))
        plan.actions.append(
            InstallAction(
                "install",
                "Install curl and CA certificates.",
                ["apt-get", "install", "-y", "curl", "ca-certificates"],
            )
        )
        plan.actions.extend(_get_docker_script())
        plan.actions.extend(_systemd_enable())
    elif os_id in {"centos", "rhel", "fedora"}:
        if has_dnf is None:
            has_dnf = shutil.which("dnf") is not None
        manager = "dnf" if has_dnf else "yum"
        plan.actions.append(
            InstallAction(
                "install",
                f"Install Docker packages with {manager}.",
                [manager, "install", "-y", "docker-ce", "docker-ce-cli", "containerd.io"],
            )
        )
        plan.actions.extend(_systemd_enable())
    elif os_id == "alpine":
        plan.actions.append(InstallAction("install", "Refresh apk indexes.", ["apk", "update"]))
        plan.actions.append(
            InstallAction(
                "install",
                "Install docker and docker-compose.",
                ["apk", "add", "docker", "docker-compose"],
            )
        )
        plan.actions.append(
            InstallAction(
                "service", "Start Docker at boot.", ["rc-update", "add", "docker", "boot"]
            )
        )
        plan.actions.append(
            InstallAction("service", "Start Docker now.", ["service", "docker", "start"])
        )
    else:
        plan.warnings.append(f"Unknown OS '{os_id or 'unknown'}'; trying the generic installer.")
        plan.actions.extend(_get_docker_script())
    return plan


def plan_compose_plugin_install(os_id: str, *, has_dnf: bool | None = None) -> list[InstallAction]:
    """Return the commands installing the Compose plugin for *os_id*."""
    if os_id in {"ubuntu", "debian"}:
        return [
            InstallAction("compose-plugin", "Refresh apt indexes.", ["apt-get", "update"]),
            InstallAction(
                "compose-plugin",
                "Install docker-compose-plugin.",
                ["apt-get", "install", "-y", "docker-compose-plugin"],
            ),
        ]
    if os_id in {"centos", "rhel", "fedora"}:
        if has_dnf is None:
            has_dnf = shutil.which("dnf") is not None
        manager = "dnf" if has_dnf else "yum"
        return [
            InstallAction(
                "compose-plugin",
                f"Install docker-compose-plugin with {manager}.",
                [manager, "install", "-y", "docker-compose-plugin"],
            )
        ]
    if os_id == "alpine":
        return [
            InstallAction(
                "compose-plugin", "Install docker-compose.", ["apk", "add", "docker-compose"]
            )
        ]
    return []


def _systemd_enable() -> list[InstallAction]:
    return [
        InstallAction("service", "Enable Docker at boot.", ["systemctl", "enable", "docker"]),
        InstallAction("service", "Start Docker now.", ["systemctl", "start", "docker"]),
    ]


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return run_command(
        command,
        error_cls=HostError,
        error_prefix=command[0],
        capture_output=False,
    )


def apply_install_actions(
    actions: Sequence[InstallAction],
    *,
    runner: Runner | None = None,
) -> None:
    """Execute *actions* in order, stopping at the first failure."""
    execute = runner or _default_runner
    for action in actions:
        execute(action.command)


def start_docker_service(*, runner: Runner | None = None) -> bool:
    """Try ``systemctl start docker`` and then ``service docker start``."""
    execute = runner or _default_runner
    for command in (["systemctl", "start", "docker"], ["service", "docker", "start"]):
        try:
            execute(command)
        except HostError:
            continue
        return True
    return False


def wait_for_daemon(
    docker: DockerProvider,
    *,
    attempts: int = 30,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``docker info`` until the daemon answers or *attempts* run out."""
    for attempt in range(attempts):
        if docker.daemon_running():
            return True
        if attempt < attempts - 1:
            sleep(interval)
    return False


@dataclass(slots=True)
class DockerStatus:
    """Docker availability after :func:`ensure_docker`."""

    installed: bool = False
    daemon: bool = False
    compose_version: str | None = None
    server_version: str | None = None
    actions: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def ensure_docker(
    docker: DockerProvider,
    compose: ComposeProvider,
    *,
    install: bool = False,
    runner: Runner | None = None,
    os_release: Mapping[str, str] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DockerStatus:
    """Verify Docker, optionally installing it, and return its status.

    Raises :class:`HostError` when Docker or the Compose plugin stays
    unavailable.
    """
    status = DockerStatus()
    release = os_release if os_release is not None else read_os_release()
    os_id = release.get("ID", "").strip().lower()

    if not docker.is_installed():
        if not install:
            raise HostError(
                "Docker is not installed. Re-run with --install-docker or install it manually."
            )
        plan = plan_docker_install(os_id)
        status.warnings.extend(plan.warnings)
        apply_install_actions(plan.actions, runner=runner)
        status.actions.extend(action.description for action in plan.actions)
        if not docker.is_installed():
            raise HostError("Docker installation failed.")
    status.installed = True

    if not docker.daemon_running():
        if start_docker_service(runner=runner):
            status.actions.append("Started the Docker service.")
        if not wait_for_daemon(docker, sleep=sleep):
            raise HostError(
                "Docker is installed but not accessible. Add your user to the docker group "
                "('sudo usermod -aG docker $USER') or start the service manually."
            )
    status.daemon = True
    status.server_version = docker.server_version()

    status.compose_version = compose.version()
    if status.compose_version is None:
        actions = plan_compose_plugin_install(os_id)
        if install and actions:
            apply_install_actions(actions, runner=runner)
            status.actions.extend(action.description for action in actions)
            status.compose_version = compose.version()
        if status.compose_version is None:
            raise HostError("Docker Compose plugin not found; install docker-compose-plugin.")
    return status


# ---------------------------------------------------------------------------
# Container environment
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class VirtualizationInfo:
    """What ``systemd-detect-virt`` reported and whether Tailscale can run."""

    kind: str | None
    tun_available: bool

    @property
    def is_lxc(self) -> bool:
        """Return ``True`` inside an LXC container."""
        return self.kind == "lxc"

    @property
    def skip_tailscale(self) -> bool:
        """Return ``True`` when Tailscale must be left out."""
        return self.is_lxc and not self.tun_available


def detect_virtualization(*, tun_device: Path = TUN_DEVICE) -> VirtualizationInfo:
    """Return the virtualization type and TUN availability."""
    kind: str | None = None
    if shutil.which("systemd-detect-virt") is not None:
        result = run_command(
            ["systemd-detect-virt"],
            error_cls=HostError,
            error_prefix="systemd-detect-virt",
            check=False,
        )
        detected = (result.stdout or "").strip()
        if result.returncode == 0 and detected and detected != "none":
            kind = detected
    return VirtualizationInfo(kind=kind, tun_available=tun_device.exists())


# ---------------------------------------------------------------------------
# Project files
# ---------------------------------------------------------------------------


def scaffold_env(project_root: Path, *, local: bool) -> bool:
    """Create ``.env`` from ``.env.example`` when missing.

    Returns ``True`` when a file was created. Local deployments get
    local-friendly defaults written into the new file.
    """
    env_file = project_root / ".env"
    if env_file.exists():
        return False
    example = project_root / ".env.example"
    if not example.is_file():
        raise HostError(f"Neither .env nor .env.example found in {project_root}.")
    shutil.copyfile(example, env_file)
    os.chmod(env_file, 0o600)
    if local:
        update_env(env_file, LOCAL_DEFAULTS)
    return True


def prepare_directories(project_root: Path) -> list[str]:
    """Create ``traefik/acme`` (0700), secure ``acme.json`` and create ``backups/``."""
    notes: list[str] = []
    acme_dir = project_root / "traefik" / "acme"
    acme_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(acme_dir, 0o700)
    notes.append(f"Created {acme_dir} with mode 700.")
    acme_file = acme_dir / "acme.json"
    if acme_file.is_file():
        os.chmod(acme_file, 0o600)
        notes.append("Secured existing acme.json (600).")
    (project_root / "backups").mkdir(parents=True, exist_ok=True)
    notes.append("Created backups directory.")
    return notes


def ensure_docker_objects(docker: DockerProvider) -> list[str]:
    """Create the ``proxy`` network and ``portainer_data`` volume when absent."""
    created: list[str] = []
    if not docker.network_exists(PROXY_NETWORK):
        docker.create_network(PROXY_NETWORK)
        created.append(f"network {PROXY_NETWORK}")
    if not docker.volume_exists(PORTAINER_VOLUME):
        docker.create_volume(PORTAINER_VOLUME)
        created.append(f"volume {PORTAINER_VOLUME}")
    return created


__all__ = [
    "DockerInstallPlan",
    "DockerStatus",
    "HostError",
    "InstallAction",
    "MIN_FREE_BYTES",
    "RequirementsReport",
    "VirtualizationInfo",
    "apply_install_actions",
    "check_requirements",
    "detect_virtualization",
    "ensure_docker",
    "ensure_docker_objects",
    "plan_compose_plugin_install",
    "plan_docker_install",
    "port_in_use",
    "prepare_directories",
    "read_os_release",
    "scaffold_env",
    "start_docker_service",
    "wait_for_daemon",
]
