"""Traefik dynamic configuration generated from ``.env``."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .templates import TemplateEngine

DASHBOARD_TEMPLATE = "traefik/dashboard.yml.j2"
DASHBOARD_RELATIVE_PATH = Path("traefik") / "dynamic" / "dashboard.yml"
DEFAULT_CERT_RESOLVER = "letsencrypt"


class TraefikConfigError(RuntimeError):
    """Raised when the dashboard configuration cannot be generated."""


@dataclass(slots=True, frozen=True)
class DashboardResult:
    """Outcome of rendering the dashboard router."""

    path: Path
    changed: bool
    auth_enabled: bool


def parse_auth_users(value: str | None) -> list[str]:
    """Split ``TRAEFIK_DASHBOARD_AUTH`` into htpasswd entries."""
    if not value:
        return []
    return [entry.strip() for entry in value.split(",") if entry.strip()]


def render_dashboard(
    templates: TemplateEngine,
    project_root: Path,
    env: Mapping[str, str],
    *,
    cert_resolver: str = DEFAULT_CERT_RESOLVER,
) -> DashboardResult:
    """Write ``traefik/dynamic/dashboard.yml`` for the configured domain."""
    domain = env.get("DOMAIN", "").strip()
    if not domain:
        raise TraefikConfigError("DOMAIN must be set in .env to generate the dashboard config.")
    users = parse_auth_users(env.get("TRAEFIK_DASHBOARD_AUTH"))
    destination = project_root / DASHBOARD_RELATIVE_PATH
    changed = templates.render_to_path(
        DASHBOARD_TEMPLATE,
        destination,
        {
            "domain": domain,
            "cert_resolver": cert_resolver,
            "auth_users": users,
        },
    )
    return DashboardResult(path=destination, changed=changed, auth_enabled=bool(users))


__all__ = [
    "DASHBOARD_RELATIVE_PATH",
    "DashboardResult",
    "TraefikConfigError",
    "parse_auth_users",
    "render_dashboard",
]
