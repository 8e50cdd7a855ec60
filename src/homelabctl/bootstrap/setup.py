"""End-to-end ``setup`` workflow for the core homelab stack."""
from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import requests

from ..config import DNSConfig, HealthConfig
from ..dns import CloudflareClient, DNSError, RecordChange, detect_public_ip, setup_public_dns
from ..envfile import read_env, truthy
from ..providers.compose import ComposeError, ComposeProvider
from ..providers.docker import DockerError, DockerProvider
from . import environment
from .deployment import (
    DeploymentError,
    DeploymentType,
    ServiceSelection,
    acme_available,
    domains_to_check,
    invalid_domains,
    missing_required,
    select_services,
)

LOGGER = logging.getLogger(__name__)

Notifier = Callable[[str, str], None]
Confirm = Callable[[str], bool]


class SetupError(RuntimeError):
    """Raised when setup cannot complete."""

    def __init__(self, message: str, *, rc: int = 2) -> None:
        """Store the exit code to report alongside *message*."""
        super().__init__(message)
        self.rc = rc


@dataclass(slots=True)
class SetupOptions:
    """Switches accepted by ``homelabctl setup``."""

    assume_yes: bool = False
    install_docker: bool = False


@dataclass(slots=True)
class SetupResult:
    """What setup did, for rendering and the operations log."""

    deployment: DeploymentType
    compose_file: Path
    selection: ServiceSelection = field(default_factory=ServiceSelection)
    env_created: bool = False
    skip_tailscale: bool = False
    public_ip: str | None = None
    dns_records: list[RecordChange] = field(default_factory=list)
    created_objects: list[str] = field(default_factory=list)
    traefik_healthy: bool = False
    traefik_api: bool = False
    status_table: str = ""
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "deployment_type": self.deployment.value,
            "compose_file": str(self.compose_file),
            "services": self.selection.describe(),
            "env_created": self.env_created,
            "skip_tailscale": self.skip_tailscale,
            "public_ip": self.public_ip,
            "dns_records": [record.name for record in self.dns_records],
            "created_objects": list(self.created_objects),
            "traefik_healthy": self.traefik_healthy,
            "warnings": list(self.warnings),
        }


def _quiet(_level: str, _message: str) -> None:
    return None


@dataclass(slots=True)
class SetupRunner:
    """Drive the host checks, configuration and first start of the stack."""

    project_root: Path
    docker: DockerProvider
    compose: ComposeProvider
    health: HealthConfig
    dns: DNSConfig
    confirm: Confirm
    notify: Notifier = _quiet
    session: requests.Session | None = None
    sleep: Callable[[float], None] = time.sleep

    @property
    def env_file(self) -> Path:
        """Return the project ``.env`` path."""
        return self.project_root / ".env"

    def run(self, options: SetupOptions) -> SetupResult:
        """Run setup; on failure after containers started, tear them down."""
        env = read_env(self.env_file)
        if not self.env_file.exists():
            # A scaffolded .env inherits its deployment type from .env.example.
            env = read_env(self.project_root / ".env.example")
        try:
            deployment = DeploymentType.parse(env.get("DEPLOYMENT_TYPE"))
        except DeploymentError as exc:
            raise SetupError(str(exc)) from exc
        self.notify("info", f"Deployment type: {deployment.value} ({deployment.mode})")

        self._check_requirements(options)
        self._check_docker(options)
        virt = environment.detect_virtualization()
        if virt.kind:
            self.notify("info", f"Detected virtualization: {virt.kind}")
        if virt.skip_tailscale:
            self.notify("warning", "TUN device not available in LXC; Tailscale will be disabled.")

        created = environment.scaffold_env(
            self.project_root,
            local=deployment is DeploymentType.PRIVATE_LOCAL,
        )
        if created:
            self.notify("warning", ".env file not found; created it from .env.example.")
            env = read_env(self.env_file)

        result = SetupResult(
            deployment=deployment,
            compose_file=self.project_root / deployment.compose_file,
            env_created=created,
            skip_tailscale=virt.skip_tailscale or truthy(env.get("SKIP_TAILSCALE")),
        )
        if not result.compose_file.is_file():
            raise SetupError(f"Compose file {result.compose_file} not found.")

        self._validate_configuration(deployment, env, result)
        if deployment is DeploymentType.PUBLIC_DIRECT:
            self._configure_public_dns(env, result)

        for note in environment.prepare_directories(self.project_root):
            self.notify("success", note)

        started = False
        try:
            result.created_objects = environment.ensure_docker_objects(self.docker)
            for name in result.created_objects:
                self.notify("success", f"Created {name}")
            result.selection = select_services(deployment, skip_tailscale=result.skip_tailscale)
            compose_env = self._compose_env(env, result)
            self.notify("info", f"Using compose file: {result.compose_file.name}")
            self.notify("info", f"Pulling images ({result.selection.describe()})")
            self.compose.pull(
                result.compose_file,
                env=compose_env,
                services=result.selection.services,
                profiles=result.selection.profiles,
            )
            started = True
            self.compose.up(
                result.compose_file,
                env=compose_env,
                services=result.selection.services,
                profiles=result.selection.profiles,
            )
            self.notify("success", "Services started.")
            result.traefik_healthy = self._wait_for_traefik(compose_env, result)
            result.traefik_api = self._traefik_api_responding()
            if not result.traefik_api:
                result.warnings.append("Traefik API not responding on localhost:8080.")
            status = self.compose.ps(result.compose_file, env=compose_env)
            result.status_table = (status.stdout or "").rstrip()
        except (ComposeError, DockerError, environment.HostError) as exc:
            if started:
                self._cleanup(result.compose_file)
            raise SetupError(f"Setup failed: {exc}", rc=4) from exc
        return result

    # ------------------------------------------------------------------
    def _check_requirements(self, options: SetupOptions) -> None:
        report = environment.check_requirements(self.project_root)
        if not report.enough_disk:
            raise SetupError("Insufficient disk space. At least 1GB required.", rc=3)
        self.notify("success", "Sufficient disk space available.")
        if report.ports_in_use:
            ports = ", ".join(str(port) for port in report.ports_in_use)
            self.notify("warning", f"Ports {ports} appear to be in use; this may cause conflicts.")
            if not options.assume_yes and not self.confirm("Continue anyway?"):
                raise SetupError("Setup cancelled: required ports are in use.", rc=1)

    def _check_docker(self, options: SetupOptions) -> None:
        try:
            status = environment.ensure_docker(
                self.docker,
                self.compose,
                install=options.install_docker,
                sleep=self.sleep,
            )
        except environment.HostError as exc:
            raise SetupError(str(exc), rc=3) from exc
        for action in status.actions:
            self.notify("info", action)
        self.notify("success", f"Docker {status.server_version or 'unknown'} is running.")
        self.notify("success", f"Docker Compose {status.compose_version} is available.")

    def _validate_configuration(
        self,
        deployment: DeploymentType,
        env: dict[str, str],
        result: SetupResult,
    ) -> None:
        missing = missing_required(deployment, env)
        if missing:
            raise SetupError(f"Missing or placeholder values for: {', '.join(missing)}")
        if deployment is DeploymentType.PRIVATE_LOCAL and not acme_available(env):
            result.warnings.append("No Cloudflare DNS token configured; ACME is skipped.")
        if deployment.is_public:
            for domain in invalid_domains(domains_to_check(env)):
                result.warnings.append(f"Domain format may be invalid: {domain}")
        self.notify("success", "Configuration validated.")

    def _configure_public_dns(self, env: dict[str, str], result: SetupResult) -> None:
        public_ip = env.get("PUBLIC_IP", "").strip()
        if truthy(env.get("AUTO_DETECT_IP"), default=True) or not public_ip or public_ip == "auto":
            try:
                public_ip = detect_public_ip(
                    self.dns.ip_services,
                    timeout=self.dns.ip_timeout,
                    session=self.session,
                )
            except DNSError as exc:
                raise SetupError(f"{exc} Please set PUBLIC_IP in .env.", rc=4) from exc
            self.notify("success", f"Detected public IP: {public_ip}")
        result.public_ip = public_ip

        client = CloudflareClient(
            token=env.get("CF_DNS_API_TOKEN", ""),
            api_base=self.dns.api_base,
            timeout=self.dns.timeout,
            session=self.session or requests.Session(),
        )
        try:
            result.dns_records = setup_public_dns(
                client,
                env.get("DOMAIN", ""),
                public_ip,
                proxied=truthy(env.get("CLOUDFLARE_PROXY")),
                records=self.dns.records,
            )
        except DNSError as exc:
            result.warnings.append(f"Failed to set up DNS records ({exc}); configure DNS manually.")
            return
        self.notify("success", f"DNS records configured ({len(result.dns_records)}).")

    def _compose_env(self, env: dict[str, str], result: SetupResult) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(env)
        if result.skip_tailscale:
            merged["SKIP_TAILSCALE"] = "true"
        if result.deployment is DeploymentType.PRIVATE_LOCAL and not acme_available(env):
            merged["SKIP_ACME"] = "true"
        return merged

    def _wait_for_traefik(self, compose_env: dict[str, str], result: SetupResult) -> bool:
        attempts = max(1, self.health.wait_attempts)
        for attempt in range(attempts):
            states = self.compose.service_states(
                result.compose_file,
                env=compose_env,
                services=["traefik"],
            )
            if any(state.health == "healthy" for state in states):
                self.notify("success", "Traefik is healthy.")
                return True
            if attempt < attempts - 1:
                self.sleep(self.health.wait_interval)
        result.warnings.append("Traefik health check timeout; services may still be starting.")
        return False

    def _traefik_api_responding(self) -> bool:
        http = self.session or requests.Session()
        try:
            http.get(self.health.traefik_ping_url, timeout=5)
        except requests.RequestException:
            return False
        return True

    def _cleanup(self, compose_file: Path) -> None:
        self.notify("error", "Setup failed, performing cleanup...")
        try:
            self.compose.down(compose_file, remove_orphans=True, check=False)
        except ComposeError as exc:
            LOGGER.warning("Cleanup after failed setup did not complete: %s", exc)
            return
        self.notify("info", "Cleanup completed. You can safely retry the setup.")


__all__ = ["SetupError", "SetupOptions", "SetupResult", "SetupRunner"]
