"""Lifecycle management for role instances.

Each instance is a copy of a role directory under the instance root, named
``<role>-<instance>``, with its own generated ``.env``. Lifecycle actions run
``docker compose -f <instance>/docker-compose.yml <verb>`` with the project
``.env``, the instance ``.env`` and the generated instance variables exported
into the subprocess environment.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from string import Template

from .envfile import read_env, write_text_atomic
from .locking import LockManager, LockTimeoutError
from .providers.compose import ComposeError, ComposeProvider
from .providers.process import run_command
from .roles import (
    COMPOSE_FILE_NAME,
    INSTANCE_SUBDIRS,
    RoleError,
    RoleTemplate,
    instance_dir,
    instance_subdomain,
    project_name,
    validate_name,
)

LOGGER = logging.getLogger(__name__)

DIRECTORIES_FILE = "directories.txt"
ACCESS_INFO_FILE = "access-info.txt"

STATE_RUNNING = "running"
STATE_STOPPED = "stopped"
STATE_NOT_DEPLOYED = "not deployed"


class InstanceError(RuntimeError):
    """Raised when an instance lifecycle action cannot proceed."""


@dataclass(slots=True, frozen=True)
class InstanceRef:
    """Resolved identity and paths for one role instance."""

    role: str
    instance: str
    directory: Path
    project: str

    @property
    def compose_file(self) -> Path:
        """Return the instance Compose file."""
        return self.directory / COMPOSE_FILE_NAME

    @property
    def env_file(self) -> Path:
        """Return the instance ``.env`` file."""
        return self.directory / ".env"

    @property
    def lock_name(self) -> str:
        """Return the lock identifier for this instance."""
        return self.directory.name


@dataclass(slots=True)
class InstallResult:
    """Outcome of installing a single instance."""

    ref: InstanceRef
    hooks: list[str] = field(default_factory=list)
    directories: list[Path] = field(default_factory=list)
    access_info: str | None = None


@dataclass(slots=True)
class UninstallResult:
    """Outcome of uninstalling a single instance."""

    ref: InstanceRef
    hooks: list[str] = field(default_factory=list)
    data_removed: bool = False


@dataclass(slots=True, frozen=True)
class InstanceListing:
    """An instance directory found on disk and its container state."""

    name: str
    directory: Path
    project: str
    state: str


@dataclass(slots=True, frozen=True)
class BatchItem:
    """Per-instance result inside a batch action."""

    instance: str
    ok: bool
    detail: str


@dataclass(slots=True)
class BatchResult:
    """Aggregated result of an ``*-all`` action (no rollback on failure)."""

    action: str
    role: str
    items: list[BatchItem] = field(default_factory=list)

    @property
    def total(self) -> int:
        """Return the number of instances attempted."""
        return len(self.items)

    @property
    def success_count(self) -> int:
        """Return the number of instances that succeeded."""
        return sum(1 for item in self.items if item.ok)

    @property
    def ok(self) -> bool:
        """Return ``True`` when every instance succeeded."""
        return self.success_count == self.total


_BATCH_ERRORS = (InstanceError, ComposeError, RoleError, LockTimeoutError)


class _EnvSubstitution(dict[str, str]):
    """Mapping that renders unknown variables as empty strings, like envsubst."""

    def __missing__(self, key: str) -> str:
        return ""


@dataclass(slots=True)
class InstanceManager:
    """Create, operate and remove role instances."""

    roles_dir: Path
    instance_root: Path
    project_env_file: Path
    compose: ComposeProvider
    default_project: str = "homelab"
    editor: str = "nano"
    locks: LockManager | None = None

    # ------------------------------------------------------------------
    # Resolution helpers
    # ------------------------------------------------------------------
    def load_role(self, role: str) -> RoleTemplate:
        """Load *role* from the roles directory."""
        return RoleTemplate.load(self.roles_dir, role)

    def base_project(self) -> str:
        """Return ``COMPOSE_PROJECT_NAME`` from the project ``.env`` or the default."""
        value = read_env(self.project_env_file).get("COMPOSE_PROJECT_NAME", "").strip()
        return value or self.default_project

    def ref(self, role: str, instance: str) -> InstanceRef:
        """Resolve *role*/*instance* into an :class:`InstanceRef`."""
        role_name = validate_name(role, label="Role name")
        instance_name = validate_name(instance, label="Instance name")
        return InstanceRef(
            role=role_name,
            instance=instance_name,
            directory=instance_dir(self.instance_root, role_name, instance_name),
            project=project_name(self.base_project(), role_name, instance_name),
        )

    def environment(self, ref: InstanceRef) -> dict[str, str]:
        """Return the subprocess environment for lifecycle commands on *ref*."""
        env = dict(os.environ)
        env.update(read_env(self.project_env_file))
        env.update(read_env(ref.env_file))
        env.update(
            {
                "INSTANCE_NAME": ref.instance,
                "INSTANCE_DIR": str(ref.directory),
                "COMPOSE_PROJECT_NAME": ref.project,
                "INSTANCE_SUBDOMAIN": instance_subdomain(ref.instance),
            }
        )
        return env

    # ------------------------------------------------------------------
    # Single-instance actions
    # ------------------------------------------------------------------
    def setup(self, role: str, instance: str) -> InstanceRef:
        """Materialise the instance directory and write its ``.env``."""
        template = self.load_role(role)
        ref = self.ref(template.name, instance)
        for subdir in INSTANCE_SUBDIRS:
            (ref.directory / subdir).mkdir(parents=True, exist_ok=True)
        template.copy_files(ref.directory)
        rendered = template.render_instance_env(ref.instance, base_project=self.base_project())
        write_text_atomic(ref.env_file, rendered, mode=0o600)
        LOGGER.info("Prepared instance directory %s", ref.directory)
        return ref

    def install(self, role: str, instance: str) -> InstallResult:
        """Install (or re-install) *instance* of *role* and start it."""
        ref = self.ref(role, instance)
        with self._locked(ref):
            ref = self.setup(role, instance)
            if not ref.compose_file.is_file():
                raise InstanceError(
                    f"Role '{ref.role}' is missing {COMPOSE_FILE_NAME} "
                    f"(looked in {ref.directory})."
                )
            env = self.environment(ref)
            result = InstallResult(ref=ref)
            if self._run_hook(ref, "pre-install.sh", env):
                result.hooks.append("pre-install.sh")
            result.directories = self.create_directories(ref)
            self.compose.up(ref.compose_file, env=env)
            if self._run_hook(ref, "post-install.sh", env):
                result.hooks.append("post-install.sh")
            result.access_info = self.render_access_info(ref, env)
            return result

    def uninstall(self, role: str, instance: str, *, remove_data: bool = False) -> UninstallResult:
        """Stop *instance*, remove its volumes, optionally delete its directory."""
        ref = self.require(role, instance)
        with self._locked(ref):
            env = self.environment(ref)
            result = UninstallResult(ref=ref)
            if self._run_hook(ref, "pre-uninstall.sh", env):
                result.hooks.append("pre-uninstall.sh")
            self.compose.down(ref.compose_file, env=env, volumes=True)
            if remove_data:
                try:
                    shutil.rmtree(ref.directory)
                except OSError as exc:
                    raise InstanceError(f"Failed to remove {ref.directory}: {exc}") from exc
                result.data_removed = True
            if ref.directory.is_dir() and self._run_hook(ref, "post-uninstall.sh", env):
                result.hooks.append("post-uninstall.sh")
            return result

    def status(self, role: str, instance: str) -> str:
        """Return ``docker compose ps`` output for the instance."""
        ref = self.require(role, instance)
        result = self.compose.ps(ref.compose_file, env=self.environment(ref))
        return (result.stdout or "").rstrip()

    def logs(
        self,
        role: str,
        instance: str,
        *,
        follow: bool = True,
        tail: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Stream the instance logs to the terminal."""
        ref = self.require(role, instance)
        return self.compose.logs(
            ref.compose_file,
            env=self.environment(ref),
            follow=follow,
            tail=tail,
        )

    def update(self, role: str, instance: str) -> InstanceRef:
        """Pull newer images and recreate the instance containers."""
        ref = self.require(role, instance)
        with self._locked(ref):
            env = self.environment(ref)
            self.compose.pull(ref.compose_file, env=env)
            self.compose.up(ref.compose_file, env=env)
        return ref

    def prepare_config(self, role: str, instance: str) -> Path:
        """Ensure the instance ``.env`` exists and return its path."""
        ref = self.ref(role, instance)
        if not ref.directory.is_dir():
            ref = self.setup(role, instance)
        if not ref.env_file.is_file():
            example = ref.directory / ".env.example"
            if not example.is_file():
                raise InstanceError(f"No .env or .env.example found for role '{ref.role}'.")
            shutil.copyfile(example, ref.env_file)
            os.chmod(ref.env_file, 0o600)
        return ref.env_file

    def edit_config(self, role: str, instance: str) -> Path:
        """Open the instance ``.env`` in the configured editor."""
        path = self.prepare_config(role, instance)
        command = [*shlex.split(self.editor), str(path)]
        run_command(
            command,
            error_cls=InstanceError,
            error_prefix=f"editor {command[0]}",
            capture_output=False,
        )
        return path

    def list_instances(self, role: str) -> list[InstanceListing]:
        """Return instance directories of *role* found under the instance root."""
        role_name = validate_name(role, label="Role name")
        if not self.instance_root.is_dir():
            return []
        base = self.base_project()
        prefix = f"{role_name}-"
        listings: list[InstanceListing] = []
        for child in sorted(self.instance_root.iterdir()):
            if not child.is_dir() or not child.name.startswith(prefix):
                continue
            name = child.name[len(prefix) :]
            declared = read_env(child / ".env").get("INSTANCE_NAME")
            if declared and declared != name:
                # Belongs to a role whose name shares this prefix.
                continue
            ref = InstanceRef(
                role=role_name,
                instance=name,
                directory=child,
                project=project_name(base, role_name, name),
            )
            listings.append(
                InstanceListing(
                    name=name,
                    directory=child,
                    project=ref.project,
                    state=self._probe_state(ref),
                )
            )
        return listings

    def require(self, role: str, instance: str) -> InstanceRef:
        """Return the ref for an existing instance or raise :class:`InstanceError`."""
        ref = self.ref(role, instance)
        if not ref.directory.is_dir():
            raise InstanceError(f"Instance '{ref.instance}' of role '{ref.role}' not found.")
        return ref

    # ------------------------------------------------------------------
    # Batch actions
    # ------------------------------------------------------------------
    def install_all(self, role: str) -> BatchResult:
        """Install every declared instance of *role*."""
        return self._batch(
            role,
            "install",
            lambda name: self.install(role, name).ref.directory.as_posix(),
        )

    def uninstall_all(self, role: str, *, remove_data: bool = False) -> BatchResult:
        """Uninstall every declared instance of *role*."""
        return self._batch(
            role,
            "uninstall",
            lambda name: self.uninstall(
                role, name, remove_data=remove_data
            ).ref.directory.as_posix(),
        )

    def status_all(self, role: str) -> BatchResult:
        """Collect ``ps`` output for every declared instance of *role*."""
        return self._batch(role, "status", lambda name: self.status(role, name))

    # ------------------------------------------------------------------
    def create_directories(self, ref: InstanceRef) -> list[Path]:
        """Create the directories listed in ``directories.txt`` (relative to the instance)."""
        listing = ref.directory / DIRECTORIES_FILE
        if not listing.is_file():
            return []
        created: list[Path] = []
        root = ref.directory.resolve()
        for raw in listing.read_text(encoding="utf-8").splitlines():
            entry = raw.strip()
            if not entry or entry.startswith("#"):
                continue
            target = (ref.directory / entry).resolve()
            if target != root and root not in target.parents:
                raise InstanceError(f"{DIRECTORIES_FILE} entry escapes the instance: {entry}")
            target.mkdir(parents=True, exist_ok=True)
            created.append(target)
        return created

    def render_access_info(self, ref: InstanceRef, env: Mapping[str, str]) -> str | None:
        """Render ``access-info.txt`` with ``$VAR`` substitution."""
        path = ref.directory / ACCESS_INFO_FILE
        if not path.is_file():
            return None
        template = Template(path.read_text(encoding="utf-8"))
        return template.safe_substitute(_EnvSubstitution(env))

    def _batch(self, role: str, action: str, handler: Callable[[str], str]) -> BatchResult:
        template = self.load_role(role)
        result = BatchResult(action=action, role=template.name)
        for name in template.instance_names():
            try:
                detail = handler(name)
            except _BATCH_ERRORS as exc:
                LOGGER.warning("%s of %s/%s failed: %s", action, template.name, name, exc)
                result.items.append(BatchItem(instance=name, ok=False, detail=str(exc)))
                continue
            result.items.append(BatchItem(instance=name, ok=True, detail=detail))
        return result

    def _run_hook(self, ref: InstanceRef, name: str, env: Mapping[str, str]) -> bool:
        script = ref.directory / name
        if not script.is_file():
            return False
        LOGGER.info("Running %s for %s", name, ref.directory.name)
        run_command(
            ["bash", name],
            error_cls=InstanceError,
            error_prefix=f"{ref.directory.name}/{name}",
            capture_output=False,
            env=env,
            cwd=ref.directory,
        )
        return True

    def _probe_state(self, ref: InstanceRef) -> str:
        if not ref.compose_file.is_file():
            return STATE_NOT_DEPLOYED
        try:
            states = self.compose.service_states(ref.compose_file, env=self.environment(ref))
        except ComposeError:
            return STATE_NOT_DEPLOYED
        if any(state.running for state in states):
            return STATE_RUNNING
        return STATE_STOPPED

    @contextmanager
    def _locked(self, ref: InstanceRef) -> Iterator[None]:
        context = (
            self.locks.mutate_instances([ref.lock_name])
            if self.locks is not None
            else nullcontext()
        )
        with context:
            yield


__all__ = [
    "BatchItem",
    "BatchResult",
    "InstallResult",
    "InstanceError",
    "InstanceListing",
    "InstanceManager",
    "InstanceRef",
    "STATE_NOT_DEPLOYED",
    "STATE_RUNNING",
    "STATE_STOPPED",
    "UninstallResult",
]
