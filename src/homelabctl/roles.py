"""Role templates and per-instance environment rendering.

A role lives under ``roles/<name>/`` and carries at least a
``docker-compose.yml``. Instances of a role are declared either in a
structured ``role.yml`` manifest::

    instances:
      dev:
        MYSQL_ROOT_PASSWORD: secret
      prod: {}

or, for older roles, inside ``.env.example`` with an ``INSTANCES=a,b``
declaration plus ``<instance>_<KEY>=value`` lines. The legacy text is
converted into the same ``instance -> overrides`` mapping when the role is
loaded, so nothing downstream ever inspects variable names for prefixes.
"""
from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .envfile import EnvLine, parse_lines, unquote

LOGGER = logging.getLogger(__name__)

DEFAULT_INSTANCE = "default"
MANIFEST_NAME = "role.yml"
ENV_TEMPLATE_NAME = ".env.example"
COMPOSE_FILE_NAME = "docker-compose.yml"
INSTANCES_KEY = "INSTANCES"
INSTANCE_SUBDIRS = ("data", "config", "logs")
GENERATED_HEADER = "# Instance-specific variables (auto-generated)"
OVERRIDES_HEADER = "# Instance overrides"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class RoleError(RuntimeError):
    """Raised when a role is missing or its declarations are invalid."""


def validate_name(value: str, *, label: str = "Name") -> str:
    """Validate and normalise a role or instance name."""
    normalised = value.strip()
    if not normalised:
        raise RoleError(f"{label} must be a non-empty string.")
    if not _NAME_RE.fullmatch(normalised):
        raise RoleError(f"{label} '{normalised}' must match [A-Za-z0-9][A-Za-z0-9_.-]*.")
    return normalised


def parse_instances(value: str | None) -> list[str]:
    """Parse an ``INSTANCES`` value into trimmed, non-empty names.

    Quotes are removed and duplicates collapse to their first occurrence.
    An empty or missing declaration yields ``["default"]``.
    """
    if value is None:
        return [DEFAULT_INSTANCE]
    cleaned = value.replace('"', "").replace("'", "")
    names: list[str] = []
    for part in cleaned.split(","):
        name = part.strip()
        if name and name not in names:
            names.append(name)
    return names or [DEFAULT_INSTANCE]


def instance_dir(root: Path, role: str, instance: str) -> Path:
    """Return the directory holding *instance* of *role* under *root*."""
    return root / f"{role}-{instance}"


def project_name(base: str, role: str, instance: str) -> str:
    """Return the Compose project name for an instance."""
    return f"{base}-{role}-{instance}"


def instance_subdomain(instance: str) -> str:
    """Return the subdomain prefix for *instance* (empty for ``default``)."""
    if instance == DEFAULT_INSTANCE:
        return ""
    return f"{instance}-"


def available_roles(roles_dir: Path) -> list[str]:
    """Return the sorted role names found under *roles_dir*."""
    if not roles_dir.is_dir():
        return []
    return sorted(
        child.name
        for child in roles_dir.iterdir()
        if child.is_dir() and not child.name.startswith(".")
    )


def _stringify(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(slots=True)
class RoleTemplate:
    """A role directory plus its resolved instance declarations."""

    name: str
    path: Path
    instances: dict[str, dict[str, str]]
    template_lines: list[EnvLine] = field(default_factory=list)
    metadata_lines: frozenset[int] = frozenset()

    @classmethod
    def load(cls, roles_dir: Path, name: str) -> RoleTemplate:
        """Load role *name* from *roles_dir*."""
        role = validate_name(name, label="Role name")
        path = roles_dir / role
        if not path.is_dir():
            raise RoleError(f"Role '{role}' not found in {roles_dir}.")

        env_template = path / ENV_TEMPLATE_NAME
        text = env_template.read_text(encoding="utf-8") if env_template.is_file() else ""
        lines = parse_lines(text)

        legacy_names: list[str] | None = None
        for line in lines:
            if line.key == INSTANCES_KEY:
                legacy_names = parse_instances(line.value)
                break

        manifest = _load_manifest(path / MANIFEST_NAME)

        names: list[str] = []
        for candidate in [*manifest.keys(), *(legacy_names or [])]:
            if candidate not in names:
                names.append(candidate)
        if not names:
            names = [DEFAULT_INSTANCE]
        for instance in names:
            validate_name(instance, label="Instance name")

        template_keys = _template_keys(lines)
        metadata: set[int] = {
            index for index, line in enumerate(lines) if line.key == INSTANCES_KEY
        }
        found: dict[str, dict[str, str]] = {}
        # Longest names first so "dev_eu" wins over "dev" for "dev_eu_KEY".
        for instance in sorted(names, key=len, reverse=True):
            overrides, matched = _legacy_overrides(lines, instance, template_keys, metadata)
            found[instance] = overrides
            metadata.update(matched)
        instances = {instance: found[instance] for instance in names}

        for instance, overrides in manifest.items():
            instances[instance].update(overrides)

        return cls(
            name=role,
            path=path,
            instances=instances,
            template_lines=lines,
            metadata_lines=frozenset(metadata),
        )

    @property
    def compose_file(self) -> Path:
        """Return the role's template Compose file."""
        return self.path / COMPOSE_FILE_NAME

    @property
    def env_template(self) -> Path:
        """Return the role's ``.env.example`` path."""
        return self.path / ENV_TEMPLATE_NAME

    def instance_names(self) -> list[str]:
        """Return declared instance names in declaration order."""
        return list(self.instances.keys())

    def _resolve(self, instance: str) -> tuple[dict[str, str], frozenset[int]]:
        if instance in self.instances:
            return dict(self.instances[instance]), self.metadata_lines
        # Undeclared instances still pick up their own ``<instance>_<KEY>`` lines.
        overrides, matched = _legacy_overrides(
            self.template_lines,
            instance,
            _template_keys(self.template_lines),
            self.metadata_lines,
        )
        return overrides, self.metadata_lines | matched

    def overrides_for(self, instance: str) -> dict[str, str]:
        """Return the key overrides for *instance*."""
        overrides, _ = self._resolve(instance)
        return overrides

    def render_instance_env(self, instance: str, *, base_project: str) -> str:
        """Render the ``.env`` contents for *instance*."""
        overrides, skipped = self._resolve(instance)
        rendered: list[str] = []
        applied: set[str] = set()
        for index, line in enumerate(self.template_lines):
            if index in skipped:
                continue
            if line.key is not None and line.key in overrides:
                rendered.append(f"{line.key}={overrides[line.key]}")
                applied.add(line.key)
                continue
            rendered.append(line.raw)

        extra = [key for key in overrides if key not in applied]
        if extra:
            rendered.append("")
            rendered.append(OVERRIDES_HEADER)
            rendered.extend(f"{key}={overrides[key]}" for key in extra)

        rendered.append("")
        rendered.append(GENERATED_HEADER)
        rendered.append(f"INSTANCE_NAME={instance}")
        rendered.append(
            f"COMPOSE_PROJECT_NAME={project_name(base_project, self.name, instance)}"
        )
        rendered.append(f"INSTANCE_SUBDOMAIN={instance_subdomain(instance)}")
        return "\n".join(rendered) + "\n"

    def copy_files(self, destination: Path) -> None:
        """Copy the role's files into *destination* (merging with existing files)."""
        destination.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            self.path,
            destination,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(MANIFEST_NAME),
        )


def _template_keys(lines: list[EnvLine]) -> set[str]:
    return {line.key for line in lines if line.key is not None and line.key != INSTANCES_KEY}


def _legacy_overrides(
    lines: list[EnvLine],
    instance: str,
    template_keys: set[str],
    claimed: set[int] | frozenset[int],
) -> tuple[dict[str, str], set[int]]:
    """Collect ``<instance>_<KEY>=value`` lines for *instance*.

    Only keys assigned in the template count. Matched lines are returned so
    they can be dropped from the rendered file; empty values keep the default.
    """
    prefix = f"{instance}_"
    overrides: dict[str, str] = {}
    matched: set[int] = set()
    for index, line in enumerate(lines):
        if index in claimed or line.key is None or not line.key.startswith(prefix):
            continue
        target = line.key[len(prefix) :]
        if target not in template_keys:
            continue
        matched.add(index)
        if line.value:
            overrides.setdefault(target, line.value)
    return overrides, matched


def _load_manifest(path: Path) -> dict[str, dict[str, str]]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise RoleError(f"Failed to parse role manifest {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise RoleError(f"Role manifest {path} must contain a mapping.")

    raw_instances = data.get("instances")
    if raw_instances is None:
        return {}
    if isinstance(raw_instances, str):
        return {name: {} for name in parse_instances(raw_instances)}
    if isinstance(raw_instances, list):
        result: dict[str, dict[str, str]] = {}
        for entry in raw_instances:
            result[unquote(_stringify(entry))] = {}
        return result
    if not isinstance(raw_instances, Mapping):
        raise RoleError(f"'instances' in {path} must be a list or mapping.")

    parsed: dict[str, dict[str, str]] = {}
    for instance, overrides in raw_instances.items():
        name = _stringify(instance).strip()
        if overrides is None:
            parsed[name] = {}
            continue
        if not isinstance(overrides, Mapping):
            raise RoleError(f"Overrides for instance '{name}' in {path} must be a mapping.")
        parsed[name] = {str(key): _stringify(value) for key, value in overrides.items()}
    LOGGER.debug("Loaded %d instance declarations from %s", len(parsed), path)
    return parsed


__all__ = [
    "COMPOSE_FILE_NAME",
    "DEFAULT_INSTANCE",
    "ENV_TEMPLATE_NAME",
    "GENERATED_HEADER",
    "INSTANCE_SUBDIRS",
    "RoleError",
    "RoleTemplate",
    "available_roles",
    "instance_dir",
    "instance_subdomain",
    "parse_instances",
    "project_name",
    "validate_name",
]
