"""Configuration loader for homelabctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/homelabctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``HOMELABCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HOMELABCTL_BACKUPS__RETENTION_DAYS=14
    export HOMELABCTL_DNS__RESOLVER=9.9.9.9

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

The homelab's own ``.env`` file is *not* handled here; see
:mod:`homelabctl.envfile` for that.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load homelabctl configuration. Install with "
        "`pip install homelabctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "HOMELABCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ComposeConfig:
    """Docker / Docker Compose invocation defaults."""

    docker_bin: str = "docker"
    default_project: str = "homelab"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin, "default_project": self.default_project}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    prefix: str = "homelab-backup"
    retention_days: int = 30
    helper_image: str = "alpine"
    include: tuple[str, ...] = ("traefik", "docker-compose.yml", ".env", "aliases.sh")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "prefix": self.prefix,
            "retention_days": self.retention_days,
            "helper_image": self.helper_image,
            "include": list(self.include),
        }


@dataclass(frozen=True)
class DNSConfig:
    """Cloudflare API and public IP discovery settings."""

    api_base: str = "https://api.cloudflare.com/client/v4"
    timeout: float = 10.0
    ip_services: tuple[str, ...] = (
        "https://ipv4.icanhazip.com",
        "https://ipinfo.io/ip",
        "https://ifconfig.me",
        "https://checkip.amazonaws.com",
    )
    ip_timeout: float = 5.0
    resolver: str = "1.1.1.1"
    records: tuple[str, ...] = ("traefik", "portainer", "whoami")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "api_base": self.api_base,
            "timeout": self.timeout,
            "ip_services": list(self.ip_services),
            "ip_timeout": self.ip_timeout,
            "resolver": self.resolver,
            "records": list(self.records),
        }


@dataclass(frozen=True)
class HealthConfig:
    """Thresholds and endpoints used by health checks and setup waits."""

    traefik_ping_url: str = "http://localhost:8080/ping"
    connectivity_url: str = "https://1.1.1.1"
    core_services: tuple[str, ...] = ("traefik", "portainer", "socket-proxy")
    min_running: int = 3
    wait_attempts: int = 30
    wait_interval: float = 2.0
    warn_expiry_days: int = 14

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "traefik_ping_url": self.traefik_ping_url,
            "connectivity_url": self.connectivity_url,
            "core_services": list(self.core_services),
            "min_running": self.min_running,
            "wait_attempts": self.wait_attempts,
            "wait_interval": self.wait_interval,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for homelabctl."""

    config_file: Path
    project_root: Path
    roles_dir: Path
    instance_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    editor: str
    compose: ComposeConfig
    backups: BackupConfig
    dns: DNSConfig
    health: HealthConfig

    @property
    def env_file(self) -> Path:
        """Return the path of the homelab's main ``.env`` file."""
        return self.project_root / ".env"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project_root": str(self.project_root),
            "roles_dir": str(self.roles_dir),
            "instance_root": str(self.instance_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "editor": self.editor,
            "compose": self.compose.to_dict(),
            "backups": self.backups.to_dict(),
            "dns": self.dns.to_dict(),
            "health": self.health.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/homelabctl/config.yml",
    "project_root": ".",
    "roles_dir": None,  # derived from project_root when absent
    "instance_root": "/opt/homelab/instances",
    "logs_dir": "/var/log/homelabctl",
    "runtime_dir": "/run/homelabctl",
    "templates_dir": "/etc/homelabctl/templates",
    "lock_timeout": 30.0,
    "editor": None,  # falls back to $EDITOR, then nano
    "compose": {
        "docker_bin": "docker",
        "default_project": "homelab",
    },
    "backups": {
        "root": None,  # derived from project_root when absent
        "prefix": "homelab-backup",
        "retention_days": 30,
        "helper_image": "alpine",
        "include": ["traefik", "docker-compose.yml", ".env", "aliases.sh"],
    },
    "dns": {
        "api_base": "https://api.cloudflare.com/client/v4",
        "timeout": 10.0,
        "ip_services": [
            "https://ipv4.icanhazip.com",
            "https://ipinfo.io/ip",
            "https://ifconfig.me",
            "https://checkip.amazonaws.com",
        ],
        "ip_timeout": 5.0,
        "resolver": "1.1.1.1",
        "records": ["traefik", "portainer", "whoami"],
    },
    "health": {
        "traefik_ping_url": "http://localhost:8080/ping",
        "connectivity_url": "https://1.1.1.1",
        "core_services": ["traefik", "portainer", "socket-proxy"],
        "min_running": 3,
        "wait_attempts": 30,
        "wait_interval": 2.0,
        "warn_expiry_days": 14,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "compose": {"docker_bin", "default_project"},
    "backups": {"root", "prefix", "retention_days", "helper_image", "include"},
    "dns": {"api_base", "timeout", "ip_services", "ip_timeout", "resolver", "records"},
    "health": {
        "traefik_ping_url",
        "connectivity_url",
        "core_services",
        "min_running",
        "wait_attempts",
        "wait_interval",
        "warn_expiry_days",
    },
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged, resolved_env)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    retention = backups_map.get("retention_days")
    if retention is not None:
        days = _expect_int(retention, "backups.retention_days", default=30)
        if days < 0:
            raise ConfigError("backups.retention_days must be non-negative.")


def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    project_root = _absolute(_to_path(raw.get("project_root")))
    roles_value = raw.get("roles_dir")
    roles_dir = _absolute(_to_path(roles_value)) if roles_value else project_root / "roles"
    instance_root = _to_path(raw.get("instance_root"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    editor_value = raw.get("editor")
    if editor_value in (None, ""):
        editor = env.get("EDITOR") or "nano"
    else:
        editor = str(editor_value)

    compose_mapping = _as_dict(raw.get("compose"), "compose")
    compose = ComposeConfig(
        docker_bin=str(compose_mapping.get("docker_bin", "docker")),
        default_project=str(compose_mapping.get("default_project", "homelab")),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_mapping.get("root")
    backups_root = (
        _absolute(_to_path(backups_root_value))
        if backups_root_value
        else project_root / "backups"
    )
    backups = BackupConfig(
        root=backups_root,
        prefix=str(backups_mapping.get("prefix", "homelab-backup")),
        retention_days=_expect_int(
            backups_mapping.get("retention_days"), "backups.retention_days", default=30
        ),
        helper_image=str(backups_mapping.get("helper_image", "alpine")),
        include=_string_tuple(
            backups_mapping.get("include"),
            "backups.include",
            default=BackupConfig.include,
        ),
    )

    dns_mapping = _as_dict(raw.get("dns"), "dns")
    dns_defaults = DNSConfig()
    dns = DNSConfig(
        api_base=str(dns_mapping.get("api_base", dns_defaults.api_base)).rstrip("/"),
        timeout=_expect_positive_float(
            dns_mapping.get("timeout"), "dns.timeout", default=dns_defaults.timeout
        ),
        ip_services=_string_tuple(
            dns_mapping.get("ip_services"),
            "dns.ip_services",
            default=dns_defaults.ip_services,
        ),
        ip_timeout=_expect_positive_float(
            dns_mapping.get("ip_timeout"), "dns.ip_timeout", default=dns_defaults.ip_timeout
        ),
        resolver=str(dns_mapping.get("resolver", dns_defaults.resolver)),
        records=_string_tuple(
            dns_mapping.get("records"), "dns.records", default=dns_defaults.records
        ),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    health_defaults = HealthConfig()
    health = HealthConfig(
        traefik_ping_url=str(
            health_mapping.get("traefik_ping_url", health_defaults.traefik_ping_url)
        ),
        connectivity_url=str(
            health_mapping.get("connectivity_url", health_defaults.connectivity_url)
        ),
        core_services=_string_tuple(
            health_mapping.get("core_services"),
            "health.core_services",
            default=health_defaults.core_services,
        ),
        min_running=_expect_int(
            health_mapping.get("min_running"),
            "health.min_running",
            default=health_defaults.min_running,
        ),
        wait_attempts=_expect_int(
            health_mapping.get("wait_attempts"),
            "health.wait_attempts",
            default=health_defaults.wait_attempts,
        ),
        wait_interval=_expect_positive_float(
            health_mapping.get("wait_interval"),
            "health.wait_interval",
            default=health_defaults.wait_interval,
        ),
        warn_expiry_days=_expect_int(
            health_mapping.get("warn_expiry_days"),
            "health.warn_expiry_days",
            default=health_defaults.warn_expiry_days,
        ),
    )
    if health.wait_attempts <= 0:
        raise ConfigError("health.wait_attempts must be greater than zero.")

    return AppConfig(
        config_file=config_file,
        project_root=project_root,
        roles_dir=roles_dir,
        instance_root=instance_root,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        editor=editor,
        compose=compose,
        backups=backups,
        dns=dns,
        health=health,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _string_tuple(
    value: object | None,
    label: str,
    *,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        # Environment overrides arrive as comma-separated strings.
        return tuple(part.strip() for part in value.split(",") if part.strip())
    items: list[str] = []
    for index, entry in enumerate(_as_sequence(value, label)):
        if not isinstance(entry, str):
            raise ConfigError(f"{label}[{index}] must be a string.")
        if entry.strip():
            items.append(entry.strip())
    return tuple(items)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _absolute(path: Path) -> Path:
    if path.is_absolute():
        return path
    return Path.cwd() / path


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ComposeConfig",
    "ConfigError",
    "DNSConfig",
    "HealthConfig",
    "load_config",
]
