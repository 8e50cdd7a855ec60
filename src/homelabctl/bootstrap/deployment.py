"""Deployment types and the values each one requires from ``.env``."""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..envfile import missing_values, truthy

DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]{1,61}[a-zA-Z0-9]\.[a-zA-Z]{2,}$")
DISABLED_DOMAIN = "disabled.local"
CORE_SERVICES = ("traefik", "socket-proxy", "portainer", "whoami")
BASE_PROFILE = "base"

LOCAL_DEFAULTS: Mapping[str, str] = {
    "DOMAIN": "local",
    "ACME_EMAIL": "admin@local",
    "CF_DNS_API_TOKEN": "not-needed-for-local",
    "TS_AUTHKEY": "optional-for-local",
}


class DeploymentError(RuntimeError):
    """Raised when the deployment configuration is invalid."""


class DeploymentType(str, Enum):
    """How the homelab is exposed."""

    PUBLIC_DIRECT = "PUBLIC_DIRECT"
    PUBLIC_TUNNEL = "PUBLIC_TUNNEL"
    PRIVATE_LOCAL = "PRIVATE_LOCAL"

    @classmethod
    def parse(cls, value: str | None) -> DeploymentType:
        """Return the type named by *value* (``PRIVATE_LOCAL`` when unset)."""
        text = (value or "").strip()
        if not text:
            return cls.PRIVATE_LOCAL
        try:
            return cls(text.upper())
        except ValueError as exc:
            valid = ", ".join(member.value for member in cls)
            raise DeploymentError(
                f"Invalid DEPLOYMENT_TYPE in .env: {text} (valid options: {valid})"
            ) from exc

    @property
    def mode(self) -> str:
        """Return the short mode label (``public``, ``tunnel`` or ``local``)."""
        return _MODES[self]

    @property
    def compose_file(self) -> str:
        """Return the Compose file used for this type."""
        return _COMPOSE_FILES[self]

    @property
    def required_vars(self) -> tuple[str, ...]:
        """Return the ``.env`` keys that must hold real values."""
        return _REQUIRED_VARS[self]

    @property
    def is_public(self) -> bool:
        """Return ``True`` for the internet-facing types."""
        return self is not DeploymentType.PRIVATE_LOCAL


_MODES = {
    DeploymentType.PUBLIC_DIRECT: "public",
    DeploymentType.PUBLIC_TUNNEL: "tunnel",
    DeploymentType.PRIVATE_LOCAL: "local",
}
_COMPOSE_FILES = {
    DeploymentType.PUBLIC_DIRECT: "docker-compose.public-direct.yml",
    DeploymentType.PUBLIC_TUNNEL: "docker-compose.public-tunnel.yml",
    DeploymentType.PRIVATE_LOCAL: "docker-compose.private-local.yml",
}
_REQUIRED_VARS = {
    DeploymentType.PUBLIC_DIRECT: ("DOMAIN", "ACME_EMAIL", "CF_DNS_API_TOKEN"),
    DeploymentType.PUBLIC_TUNNEL: ("DOMAIN", "CLOUDFLARED_TOKEN"),
    DeploymentType.PRIVATE_LOCAL: ("DOMAIN",),
}


@dataclass(slots=True, frozen=True)
class ServiceSelection:
    """Which services to pull and start, and with which profiles."""

    services: tuple[str, ...] = ()
    profiles: tuple[str, ...] = ()

    def describe(self) -> str:
        """Return a short human readable description."""
        if self.services:
            return " ".join(self.services)
        if self.profiles:
            return f"profile {', '.join(self.profiles)}"
        return "all services"


def select_services(deployment: DeploymentType, *, skip_tailscale: bool) -> ServiceSelection:
    """Return the services to start for *deployment*."""
    if deployment is DeploymentType.PRIVATE_LOCAL:
        return ServiceSelection()
    if skip_tailscale:
        services = CORE_SERVICES
        if deployment is DeploymentType.PUBLIC_TUNNEL:
            services = (*CORE_SERVICES, "cloudflared")
        return ServiceSelection(services=services)
    return ServiceSelection(profiles=(BASE_PROFILE,))


def missing_required(deployment: DeploymentType, env: Mapping[str, str]) -> list[str]:
    """Return required keys that are unset or still placeholders."""
    return missing_values(env, deployment.required_vars)


def domains_to_check(env: Mapping[str, str]) -> list[str]:
    """Return ``DOMAIN`` plus any enabled ``DOMAIN2``/``DOMAIN3``."""
    domains: list[str] = []
    primary = env.get("DOMAIN", "").strip()
    if primary:
        domains.append(primary)
    for key in ("DOMAIN2", "DOMAIN3"):
        value = env.get(key, "").strip()
        if value and value != DISABLED_DOMAIN:
            domains.append(value)
    return domains


def invalid_domains(domains: list[str]) -> list[str]:
    """Return entries of *domains* that do not look like ``name.tld``."""
    return [domain for domain in domains if not DOMAIN_RE.fullmatch(domain)]


def acme_available(env: Mapping[str, str]) -> bool:
    """Return ``True`` when a DNS challenge can issue real certificates."""
    return bool(env.get("CF_DNS_API_TOKEN", "").strip()) and bool(env.get("DOMAIN", "").strip())


def skip_tailscale(env: Mapping[str, str]) -> bool:
    """Return ``True`` when ``SKIP_TAILSCALE`` is set in *env*."""
    return truthy(env.get("SKIP_TAILSCALE"))


def stack_compose_file(project_root: Path, env: Mapping[str, str]) -> Path:
    """Return the Compose file for the core stack.

    The file for the configured deployment type is used when it exists;
    otherwise ``docker-compose.yml`` in the project root.
    """
    raw = env.get("DEPLOYMENT_TYPE", "").strip()
    if raw:
        try:
            candidate = project_root / DeploymentType.parse(raw).compose_file
        except DeploymentError:
            candidate = None
        if candidate is not None and candidate.is_file():
            return candidate
    return project_root / DEFAULT_COMPOSE_FILE


__all__ = [
    "BASE_PROFILE",
    "CORE_SERVICES",
    "DEFAULT_COMPOSE_FILE",
    "DOMAIN_RE",
    "DeploymentError",
    "DeploymentType",
    "LOCAL_DEFAULTS",
    "ServiceSelection",
    "acme_available",
    "domains_to_check",
    "invalid_domains",
    "missing_required",
    "select_services",
    "skip_tailscale",
    "stack_compose_file",
]
