"""Probe registration for the ``health`` and ``validate`` commands."""

from __future__ import annotations

import os
import platform
import re
import shutil
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime

import requests
from packaging.version import InvalidVersion, Version

from .. import __version__
from ..acme import SECURE_MODE, AcmeStoreError, acme_path, file_mode, load_certificates
from ..bootstrap.deployment import DeploymentError, DeploymentType, missing_required
from ..dns import resolve_via_dig
from ..providers.compose import ComposeError, ServiceState
from ..providers.docker import DockerError
from .models import (
    PROBE_CATEGORY_VALUES,
    DoctorImpact,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
)

MIN_COMPOSE_VERSION = Version("2.0")
SUMMARY_PROBE_ID = "services-summary"
HEALTH_CHECKS: tuple[str, ...] = (
    "all",
    "docker",
    "services",
    "network",
    "certs",
    "resources",
    "logs",
    "summary",
)

_ERROR_LINE_RE = re.compile(r"error|fatal|panic", re.IGNORECASE)
_CERT_TOPIC_RE = re.compile(r"certificate|acme|letsencrypt", re.IGNORECASE)
_CERT_FAILURE_RE = re.compile(r"error|fail", re.IGNORECASE)


def collect_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    """Return the set of health probes for the current context."""
    probes: list[ProbeDefinition] = []
    probes.extend(_env_probes())
    probes.extend(_config_probes())
    probes.extend(_docker_probes())
    probes.extend(_service_probes())
    probes.extend(_network_probes())
    probes.extend(_cert_probes())
    probes.extend(_resource_probes())
    probes.extend(_log_probes())
    return tuple(probes)


def select_probes(
    probes: Sequence[ProbeDefinition],
    check: str,
) -> list[ProbeDefinition]:
    """Return the probes a ``health <check>`` invocation should run."""
    name = check.strip().lower()
    if name == "all":
        return list(probes)
    if name == "summary":
        return [probe for probe in probes if probe.id == SUMMARY_PROBE_ID]
    if name in PROBE_CATEGORY_VALUES:
        return [probe for probe in probes if probe.category == name]
    valid = "|".join(HEALTH_CHECKS)
    raise ValueError(f"Unknown health check '{check}' (expected {valid}).")


def collect_validation_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    """Return the post-setup validation probes."""
    probes: list[ProbeDefinition] = [
        _make_probe("validate-traefik-running", "services", _probe_validate_traefik_running),
        _make_probe("validate-traefik-api", "network", _probe_traefik_ping),
        _make_probe("validate-certificates", "certs", _probe_validate_certificates),
    ]
    if context.domain:
        probes.append(
            _make_probe("validate-https-whoami", "certs", _probe_https_endpoint("whoami"))
        )
        probes.append(
            _make_probe("validate-https-portainer", "certs", _probe_https_endpoint("portainer"))
        )
    probes.append(_make_probe("validate-acme-permissions", "certs", _probe_acme_permissions))
    probes.append(_make_probe("validate-containers", "services", _probe_validate_containers))
    return tuple(probes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
) -> ProbeDefinition:
    def _runner(context: ProbeContext) -> ProbeResult:
        return handler(context)

    return ProbeDefinition(id=probe_id, category=category, run=_runner)


def _command_exists(command: str) -> bool:
    resolved = shutil.which(command)
    return resolved is not None and os.access(resolved, os.X_OK)


def _http_ok(context: ProbeContext, url: str, *, timeout: float | None = None) -> bool:
    """Return ``True`` when *url* answers at all (any HTTP status)."""
    limit = timeout if timeout is not None else context.options.request_timeout
    session = context.session_factory()
    try:
        for _attempt in range(context.options.retries + 1):
            try:
                session.get(
                    url,
                    timeout=(context.options.connect_timeout, limit),
                    allow_redirects=True,
                )
            except requests.RequestException:
                continue
            return True
        return False
    finally:
        session.close()


def _stack_states(context: ProbeContext) -> list[ServiceState]:
    return context.compose.service_states(context.compose_file, env=_compose_env(context))


def _compose_env(context: ProbeContext) -> dict[str, str]:
    env = dict(os.environ)
    env.update(context.env)
    return env


def _missing_compose_file(
    probe_id: str,
    category: ProbeCategory,
    context: ProbeContext,
) -> ProbeResult:
    return ProbeResult(
        id=probe_id,
        category=category,
        status=ProbeStatus.RED,
        impact=DoctorImpact.VALIDATION,
        message=f"Compose file {context.compose_file} not found.",
        remediation="Run 'homelabctl setup' from the project root.",
    )


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def _env_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("env-python", "env", _probe_env_python),
        _make_probe("env-docker", "env", _probe_env_command("docker", fatal=True)),
        _make_probe("env-tar", "env", _probe_env_command("tar", fatal=True)),
        _make_probe("env-dig", "env", _probe_env_command("dig", fatal=False)),
    )


def _probe_env_python(_context: ProbeContext) -> ProbeResult:
    return ProbeResult(
        id="env-python",
        category="env",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"homelabctl {__version__} on Python {platform.python_version()}.",
    )


def _probe_env_command(
    command: str,
    *,
    fatal: bool,
) -> Callable[[ProbeContext], ProbeResult]:
    def _run(_context: ProbeContext) -> ProbeResult:
        if _command_exists(command):
            return ProbeResult(
                id=f"env-{command}",
                category="env",
                status=ProbeStatus.GREEN,
                impact=DoctorImpact.OK,
                message=f"Binary '{command}' available.",
            )
        if fatal:
            return ProbeResult(
                id=f"env-{command}",
                category="env",
                status=ProbeStatus.RED,
                impact=DoctorImpact.ENVIRONMENT,
                message=f"Required binary '{command}' not found on PATH.",
            )
        return ProbeResult(
            id=f"env-{command}",
            category="env",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Optional binary '{command}' not found; related checks are skipped.",
            warnings=(f"missing:{command}",),
        )

    return _run


# ---------------------------------------------------------------------------
# Configuration probes
# ---------------------------------------------------------------------------


def _config_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("config-env-file", "config", _probe_config_env_file),
        _make_probe("config-required", "config", _probe_config_required),
    )


def _probe_config_env_file(context: ProbeContext) -> ProbeResult:
    env_file = context.config.env_file
    if env_file.is_file():
        return ProbeResult(
            id="config-env-file",
            category="config",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"Environment file {env_file} present.",
        )
    return ProbeResult(
        id="config-env-file",
        category="config",
        status=ProbeStatus.RED,
        impact=DoctorImpact.VALIDATION,
        message=f"Environment file {env_file} is missing.",
        remediation="Copy .env.example to .env or run 'homelabctl setup'.",
    )


def _probe_config_required(context: ProbeContext) -> ProbeResult:
    try:
        deployment = DeploymentType.parse(context.env.get("DEPLOYMENT_TYPE"))
    except DeploymentError as exc:
        return ProbeResult(
            id="config-required",
            category="config",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=str(exc),
        )
    missing = missing_required(deployment, context.env)
    if missing:
        return ProbeResult(
            id="config-required",
            category="config",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Missing or placeholder values for: {', '.join(missing)}",
            data={"deployment_type": deployment.value, "missing": missing},
        )
    return ProbeResult(
        id="config-required",
        category="config",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Required values for {deployment.value} are set.",
        data={"deployment_type": deployment.value},
    )


# ---------------------------------------------------------------------------
# Docker probes
# ---------------------------------------------------------------------------


def _docker_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("docker-daemon", "docker", _probe_docker_daemon),
        _make_probe("docker-version", "docker", _probe_docker_version),
        _make_probe("docker-compose", "docker", _probe_docker_compose),
    )


def _probe_docker_daemon(context: ProbeContext) -> ProbeResult:
    if context.docker.daemon_running():
        return ProbeResult(
            id="docker-daemon",
            category="docker",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="Docker daemon is running.",
        )
    return ProbeResult(
        id="docker-daemon",
        category="docker",
        status=ProbeStatus.RED,
        impact=DoctorImpact.ENVIRONMENT,
        message="Docker daemon is not running.",
        remediation="Start Docker (e.g. 'systemctl start docker').",
    )


def _probe_docker_version(context: ProbeContext) -> ProbeResult:
    version = context.docker.server_version()
    if version is None:
        return ProbeResult(
            id="docker-version",
            category="docker",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Docker server version unknown.",
            warnings=("docker:version-unknown",),
        )
    return ProbeResult(
        id="docker-version",
        category="docker",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Docker version: {version}",
        data={"version": version},
    )


def _probe_docker_compose(context: ProbeContext) -> ProbeResult:
    raw = context.compose.version()
    if raw is None:
        return ProbeResult(
            id="docker-compose",
            category="docker",
            status=ProbeStatus.RED,
            impact=DoctorImpact.ENVIRONMENT,
            message="Docker Compose plugin not found.",
            remediation="Install the docker-compose-plugin package.",
        )
    try:
        parsed = Version(raw.split("+", 1)[0])
    except InvalidVersion:
        return ProbeResult(
            id="docker-compose",
            category="docker",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Docker Compose version '{raw}' could not be parsed.",
            data={"version": raw},
        )
    if parsed < MIN_COMPOSE_VERSION:
        return ProbeResult(
            id="docker-compose",
            category="docker",
            status=ProbeStatus.RED,
            impact=DoctorImpact.ENVIRONMENT,
            message=f"Docker Compose {raw} is older than {MIN_COMPOSE_VERSION}.",
            data={"version": raw},
        )
    return ProbeResult(
        id="docker-compose",
        category="docker",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Docker Compose version: {raw}",
        data={"version": raw},
    )


# ---------------------------------------------------------------------------
# Service probes
# ---------------------------------------------------------------------------


def _service_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("services-core", "services", _probe_services_core),
        _make_probe(SUMMARY_PROBE_ID, "services", _probe_services_summary),
    )


def classify_service(state: ServiceState | None) -> str:
    """Return ``running``, ``unhealthy``, ``stopped`` or ``not deployed``."""
    if state is None:
        return "not deployed"
    if state.running:
        return "running" if state.healthy else "unhealthy"
    return "stopped"


def _probe_services_core(context: ProbeContext) -> ProbeResult:
    if not context.compose_file.is_file():
        return _missing_compose_file("services-core", "services", context)
    try:
        states = _stack_states(context)
    except ComposeError as exc:
        return ProbeResult(
            id="services-core",
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Failed to query service state: {exc}",
        )

    by_service = {state.service: state for state in states}
    summary: dict[str, str] = {}
    for service in context.config.health.core_services:
        state = by_service.get(service)
        label = classify_service(state)
        if label == "unhealthy" and state is not None:
            label = f"running (health: {state.health})"
        summary[service] = label

    stopped = [name for name, label in summary.items() if label == "stopped"]
    unhealthy = [name for name, label in summary.items() if label.startswith("running (")]
    if stopped:
        return ProbeResult(
            id="services-core",
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Core services stopped: {', '.join(stopped)}",
            remediation="Inspect with 'docker compose logs <service>'.",
            data={"services": summary},
        )
    if unhealthy:
        return ProbeResult(
            id="services-core",
            category="services",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Core services running but not healthy: {', '.join(unhealthy)}",
            data={"services": summary},
            warnings=("services:unhealthy",),
        )
    return ProbeResult(
        id="services-core",
        category="services",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message="Deployed core services are running.",
        data={"services": summary},
    )


def _probe_services_summary(context: ProbeContext) -> ProbeResult:
    if not context.compose_file.is_file():
        return _missing_compose_file(SUMMARY_PROBE_ID, "services", context)
    env = _compose_env(context)
    try:
        declared = context.compose.config_services(context.compose_file, env=env)
        states = context.compose.service_states(context.compose_file, env=env)
    except ComposeError as exc:
        return ProbeResult(
            id=SUMMARY_PROBE_ID,
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Failed to summarise services: {exc}",
        )

    running = len({state.service for state in states if state.running})
    total = len(declared)
    data = {"running": running, "declared": total}
    minimum = context.config.health.min_running
    if running < minimum:
        return ProbeResult(
            id=SUMMARY_PROBE_ID,
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=(
                f"Homelab may have issues: {running}/{total} services running "
                f"(at least {minimum} expected)."
            ),
            data=data,
        )
    if running < total:
        return ProbeResult(
            id=SUMMARY_PROBE_ID,
            category="services",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Some services are not running ({running}/{total}).",
            data=data,
            warnings=("services:partial",),
        )
    return ProbeResult(
        id=SUMMARY_PROBE_ID,
        category="services",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"All services are running ({running}/{total}).",
        data=data,
    )


# ---------------------------------------------------------------------------
# Network probes
# ---------------------------------------------------------------------------


def _network_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("network-traefik-api", "network", _probe_traefik_ping),
        _make_probe("network-external", "network", _probe_external_connectivity),
        _make_probe("network-domain", "network", _probe_domain_resolution),
    )


def _probe_traefik_ping(context: ProbeContext) -> ProbeResult:
    url = context.config.health.traefik_ping_url
    if _http_ok(context, url):
        return ProbeResult(
            id="network-traefik-api",
            category="network",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"Traefik API responding at {url}.",
        )
    return ProbeResult(
        id="network-traefik-api",
        category="network",
        status=ProbeStatus.YELLOW,
        impact=DoctorImpact.OK,
        message=f"Traefik API not responding at {url} (it may be disabled for security).",
        warnings=("traefik:api-unreachable",),
    )


def _probe_external_connectivity(context: ProbeContext) -> ProbeResult:
    url = context.config.health.connectivity_url
    if _http_ok(context, url):
        return ProbeResult(
            id="network-external",
            category="network",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="External connectivity: OK",
        )
    return ProbeResult(
        id="network-external",
        category="network",
        status=ProbeStatus.RED,
        impact=DoctorImpact.ENVIRONMENT,
        message=f"External connectivity failed ({url}).",
    )


def _probe_domain_resolution(context: ProbeContext) -> ProbeResult:
    domain = context.domain
    if domain is None:
        return ProbeResult(
            id="network-domain",
            category="network",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="Domain not configured; resolution check skipped.",
        )
    if not _command_exists("dig"):
        return ProbeResult(
            id="network-domain",
            category="network",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="dig not available; domain resolution not checked.",
            warnings=("missing:dig",),
        )
    answer = resolve_via_dig(
        domain,
        resolver=context.config.dns.resolver,
        timeout=context.options.exec_timeout,
    )
    if answer:
        return ProbeResult(
            id="network-domain",
            category="network",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"Domain resolution: {domain} -> {answer}",
        )
    return ProbeResult(
        id="network-domain",
        category="network",
        status=ProbeStatus.YELLOW,
        impact=DoctorImpact.OK,
        message=f"Domain resolution failed: {domain}",
        warnings=("dns:unresolved",),
    )


# ---------------------------------------------------------------------------
# Certificate probes
# ---------------------------------------------------------------------------


def _cert_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("certs-acme-file", "certs", _probe_acme_permissions),
        _make_probe("certs-expiry", "certs", _probe_cert_expiry),
        _make_probe("certs-https", "certs", _probe_https_endpoint("whoami")),
    )


def _probe_acme_permissions(context: ProbeContext) -> ProbeResult:
    path = acme_path(context.config.project_root)
    if not path.is_file():
        return ProbeResult(
            id="certs-acme-file",
            category="certs",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="ACME certificates file not found (first run?).",
        )
    if path.stat().st_size == 0:
        return ProbeResult(
            id="certs-acme-file",
            category="certs",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="ACME certificates file exists but is empty.",
            warnings=("acme:empty",),
        )
    mode = file_mode(path)
    if mode != SECURE_MODE:
        return ProbeResult(
            id="certs-acme-file",
            category="certs",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"ACME file permissions: {mode:03o} (should be 600).",
            remediation=f"chmod 600 {path}",
            data={"mode": f"{mode:03o}"},
            warnings=("acme:permissions",),
        )
    return ProbeResult(
        id="certs-acme-file",
        category="certs",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message="ACME certificates file present with secure permissions (600).",
    )


def _probe_cert_expiry(context: ProbeContext) -> ProbeResult:
    path = acme_path(context.config.project_root)
    if not path.is_file():
        return ProbeResult(
            id="certs-expiry",
            category="certs",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="No certificate store yet.",
        )
    try:
        certificates = load_certificates(path)
    except (AcmeStoreError, OSError) as exc:
        return ProbeResult(
            id="certs-expiry",
            category="certs",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Failed to read certificates: {exc}",
        )
    if not certificates:
        return ProbeResult(
            id="certs-expiry",
            category="certs",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="No certificates issued yet (may take a few minutes on first run).",
            warnings=("acme:no-certificates",),
        )

    now = datetime.now(UTC)
    window = context.config.health.warn_expiry_days
    expired = [cert for cert in certificates if cert.not_valid_after <= now]
    expiring = [
        cert
        for cert in certificates
        if cert not in expired and cert.days_remaining(now) <= window
    ]
    data = {"certificates": [cert.to_dict() for cert in certificates]}
    if expired:
        return ProbeResult(
            id="certs-expiry",
            category="certs",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Expired certificates: {', '.join(cert.domain for cert in expired)}",
            remediation="Check Traefik logs for ACME renewal errors.",
            data=data,
        )
    if expiring:
        return ProbeResult(
            id="certs-expiry",
            category="certs",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=(
                f"Certificates expiring within {window} days: "
                f"{', '.join(cert.domain for cert in expiring)}"
            ),
            data=data,
            warnings=("certs:expiring",),
        )
    return ProbeResult(
        id="certs-expiry",
        category="certs",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"{len(certificates)} certificate(s) valid beyond {window} days.",
        data=data,
    )


def _probe_https_endpoint(subdomain: str) -> Callable[[ProbeContext], ProbeResult]:
    probe_id = f"https-{subdomain}"

    def _run(context: ProbeContext) -> ProbeResult:
        domain = context.domain
        if domain is None:
            return ProbeResult(
                id=probe_id,
                category="certs",
                status=ProbeStatus.GREEN,
                impact=DoctorImpact.OK,
                message="Domain not configured; HTTPS test skipped.",
            )
        url = f"https://{subdomain}.{domain}"
        if _http_ok(context, url, timeout=10.0):
            return ProbeResult(
                id=probe_id,
                category="certs",
                status=ProbeStatus.GREEN,
                impact=DoctorImpact.OK,
                message=f"HTTPS working for {subdomain}.{domain}",
            )
        return ProbeResult(
            id=probe_id,
            category="certs",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"HTTPS test failed for {subdomain}.{domain} (DNS or certificate issue).",
            warnings=("https:unreachable",),
        )

    return _run


# ---------------------------------------------------------------------------
# Resource probes
# ---------------------------------------------------------------------------


def _resource_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("resources-containers", "resources", _probe_container_stats),
        _make_probe("resources-disk", "resources", _probe_disk_usage),
        _make_probe("resources-docker-df", "resources", _probe_docker_df),
    )


def _probe_container_stats(context: ProbeContext) -> ProbeResult:
    try:
        table = context.docker.stats()
    except DockerError as exc:
        return ProbeResult(
            id="resources-containers",
            category="resources",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Container stats unavailable: {exc}",
        )
    rows = [line for line in table.splitlines()[1:] if line.strip()]
    if not rows:
        message = "No running containers."
    else:
        message = f"{len(rows)} running container(s) reporting usage."
    return ProbeResult(
        id="resources-containers",
        category="resources",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=message,
        data={"table": table},
    )


def _probe_disk_usage(context: ProbeContext) -> ProbeResult:
    path = context.config.project_root
    try:
        usage = shutil.disk_usage(path)
    except FileNotFoundError:
        return ProbeResult(
            id="resources-disk",
            category="resources",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Project root {path} does not exist; cannot determine disk usage.",
        )

    total = usage.total or 1
    percent_free = (usage.free / total) * 100
    data = {
        "total_bytes": total,
        "free_bytes": usage.free,
        "percent_free": round(percent_free, 2),
        "path": str(path),
    }
    if percent_free < 5:
        return ProbeResult(
            id="resources-disk",
            category="resources",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message="Disk free space below 5%.",
            data=data,
        )
    if percent_free < 10:
        return ProbeResult(
            id="resources-disk",
            category="resources",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Disk free space below 10%.",
            data=data,
            warnings=("disk:low-free",),
        )
    return ProbeResult(
        id="resources-disk",
        category="resources",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Disk free space {percent_free:.1f}%.",
        data=data,
    )


def _probe_docker_df(context: ProbeContext) -> ProbeResult:
    try:
        table = context.docker.system_df()
    except DockerError as exc:
        return ProbeResult(
            id="resources-docker-df",
            category="resources",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Docker disk usage unavailable: {exc}",
        )
    return ProbeResult(
        id="resources-docker-df",
        category="resources",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message="Docker disk usage collected.",
        data={"table": table},
    )


# ---------------------------------------------------------------------------
# Log probes
# ---------------------------------------------------------------------------


def _log_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("logs-traefik-errors", "logs", _probe_traefik_errors),
        _make_probe("logs-certificate-errors", "logs", _probe_certificate_errors),
    )


def _traefik_log_lines(context: ProbeContext, since: str) -> list[str]:
    result = context.compose.logs(
        context.compose_file,
        env=_compose_env(context),
        services=["traefik"],
        since=since,
        capture=True,
    )
    return (result.stdout or "").splitlines()


def find_error_lines(lines: Sequence[str], *, limit: int = 5) -> list[str]:
    """Return the last *limit* lines mentioning error, fatal or panic."""
    matches = [line for line in lines if _ERROR_LINE_RE.search(line)]
    return matches[-limit:]


def find_certificate_failures(lines: Sequence[str], *, limit: int = 3) -> list[str]:
    """Return the last *limit* certificate-related failure lines."""
    matches = [
        line for line in lines if _CERT_TOPIC_RE.search(line) and _CERT_FAILURE_RE.search(line)
    ]
    return matches[-limit:]


def _log_scan(
    probe_id: str,
    since: str,
    finder: Callable[[Sequence[str]], list[str]],
    found_message: str,
    clean_message: str,
) -> Callable[[ProbeContext], ProbeResult]:
    def _run(context: ProbeContext) -> ProbeResult:
        if not context.compose_file.is_file():
            return _missing_compose_file(probe_id, "logs", context)
        try:
            lines = _traefik_log_lines(context, since)
        except ComposeError as exc:
            return ProbeResult(
                id=probe_id,
                category="logs",
                status=ProbeStatus.YELLOW,
                impact=DoctorImpact.OK,
                message=f"Traefik logs unavailable: {exc}",
            )
        matches = finder(lines)
        if matches:
            return ProbeResult(
                id=probe_id,
                category="logs",
                status=ProbeStatus.YELLOW,
                impact=DoctorImpact.OK,
                message=found_message,
                data={"lines": matches, "since": since},
                warnings=("logs:errors",),
            )
        return ProbeResult(
            id=probe_id,
            category="logs",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=clean_message,
        )

    return _run


_probe_traefik_errors = _log_scan(
    "logs-traefik-errors",
    "1h",
    find_error_lines,
    "Recent errors found in Traefik logs (last 5 shown).",
    "No recent errors in Traefik logs.",
)
_probe_certificate_errors = _log_scan(
    "logs-certificate-errors",
    "24h",
    find_certificate_failures,
    "Recent certificate-related issues found.",
    "No recent certificate issues.",
)


# ---------------------------------------------------------------------------
# Validation probes
# ---------------------------------------------------------------------------


def _probe_validate_traefik_running(context: ProbeContext) -> ProbeResult:
    if not context.compose_file.is_file():
        return _missing_compose_file("validate-traefik-running", "services", context)
    try:
        states = _stack_states(context)
    except ComposeError as exc:
        return ProbeResult(
            id="validate-traefik-running",
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Failed to query service state: {exc}",
        )
    if any(state.service == "traefik" and state.running for state in states):
        return ProbeResult(
            id="validate-traefik-running",
            category="services",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="Core services are running.",
        )
    return ProbeResult(
        id="validate-traefik-running",
        category="services",
        status=ProbeStatus.RED,
        impact=DoctorImpact.PROVIDER,
        message="Core services are not running (traefik is down).",
    )


def _probe_validate_certificates(context: ProbeContext) -> ProbeResult:
    path = acme_path(context.config.project_root)
    if path.is_file() and path.stat().st_size > 0:
        return ProbeResult(
            id="validate-certificates",
            category="certs",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="SSL certificates are present.",
        )
    return ProbeResult(
        id="validate-certificates",
        category="certs",
        status=ProbeStatus.YELLOW,
        impact=DoctorImpact.OK,
        message="SSL certificates not yet obtained (may take a few minutes on first run).",
        warnings=("acme:pending",),
    )


def _probe_validate_containers(context: ProbeContext) -> ProbeResult:
    if not context.compose_file.is_file():
        return _missing_compose_file("validate-containers", "services", context)
    try:
        states = _stack_states(context)
    except ComposeError as exc:
        return ProbeResult(
            id="validate-containers",
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Failed to count containers: {exc}",
        )
    running = sum(1 for state in states if state.running)
    minimum = context.config.health.min_running
    if running >= minimum:
        return ProbeResult(
            id="validate-containers",
            category="services",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"{running} containers running.",
            data={"running": running},
        )
    return ProbeResult(
        id="validate-containers",
        category="services",
        status=ProbeStatus.YELLOW,
        impact=DoctorImpact.OK,
        message=f"Only {running} containers running (expected {minimum}+).",
        data={"running": running},
        warnings=("services:few-containers",),
    )


def access_urls(env: Mapping[str, str]) -> dict[str, str]:
    """Return the public URLs of the core services (empty without a domain)."""
    domain = env.get("DOMAIN", "").strip()
    if not domain or domain == "example.com":
        return {}
    return {
        "Portainer": f"https://portainer.{domain}",
        "Whoami": f"https://whoami.{domain}",
        "Traefik": f"https://traefik.{domain}",
    }


__all__ = [
    "HEALTH_CHECKS",
    "SUMMARY_PROBE_ID",
    "access_urls",
    "classify_service",
    "collect_probes",
    "collect_validation_probes",
    "find_certificate_failures",
    "find_error_lines",
    "select_probes",
]
