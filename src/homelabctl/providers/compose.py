"""Docker Compose provider used for the core stack and role instances."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .process import run_command


class ComposeError(RuntimeError):
    """Raised when ``docker compose`` operations fail."""


@dataclass(slots=True, frozen=True)
class ServiceState:
    """One row of ``docker compose ps`` output."""

    service: str
    name: str
    state: str
    health: str
    status: str

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is up."""
        return self.state.lower() == "running" or self.status.lower().startswith("up")

    @property
    def healthy(self) -> bool:
        """Return ``True`` unless a healthcheck reports a non-healthy state."""
        return self.health in ("", "healthy")


def parse_ps_json(output: str) -> list[ServiceState]:
    """Parse ``docker compose ps --format json`` output.

    Compose v2 releases emit either one JSON array or one object per line;
    both shapes are accepted.
    """
    text = output.strip()
    if not text:
        return []
    rows: list[object]
    if text.startswith("["):
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ComposeError(f"Unexpected compose ps output: {exc}") from exc
        rows = list(loaded) if isinstance(loaded, list) else []
    else:
        rows = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ComposeError(f"Unexpected compose ps output: {exc}") from exc

    states: list[ServiceState] = []
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        states.append(
            ServiceState(
                service=str(row.get("Service", "")),
                name=str(row.get("Name", "")),
                state=str(row.get("State", "")),
                health=str(row.get("Health", "") or ""),
                status=str(row.get("Status", "")),
            )
        )
    return states


@dataclass(slots=True)
class ComposeProvider:
    """Invoke ``docker compose -f <file> ...`` with a prepared environment."""

    docker_bin: str = "docker"

    def version(self) -> str | None:
        """Return the Compose plugin version (``None`` when it is missing)."""
        try:
            result = run_command(
                [self.docker_bin, "compose", "version", "--short"],
                error_cls=ComposeError,
                error_prefix="docker compose version",
                check=False,
            )
        except ComposeError:
            return None
        version = (result.stdout or "").strip()
        if result.returncode != 0 or not version:
            return None
        return version.lstrip("v")

    def up(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[str] = (),
        profiles: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Create and start services in detached mode."""
        return self.run(compose_file, ["up", "-d", *services], env=env, profiles=profiles)

    def down(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        volumes: bool = False,
        remove_orphans: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Stop and remove services."""
        args = ["down"]
        if volumes:
            args.append("--volumes")
        if remove_orphans:
            args.append("--remove-orphans")
        return self.run(compose_file, args, env=env, check=check)

    def pull(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[str] = (),
        profiles: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Pull images for the selected services."""
        return self.run(compose_file, ["pull", *services], env=env, profiles=profiles)

    def ps(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Return the human-readable ``ps`` table."""
        return self.run(compose_file, ["ps"], env=env)

    def service_states(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[str] = (),
    ) -> list[ServiceState]:
        """Return structured state for each container (including stopped ones)."""
        result = self.run(
            compose_file,
            ["ps", "--all", "--format", "json", *services],
            env=env,
        )
        return parse_ps_json(result.stdout or "")

    def config_services(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> list[str]:
        """Return the service names declared in *compose_file*."""
        result = self.run(compose_file, ["config", "--services"], env=env)
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def logs(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[str] = (),
        follow: bool = False,
        tail: int | None = None,
        since: str | None = None,
        capture: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Show (or capture) service logs."""
        args = ["logs"]
        if follow:
            args.append("-f")
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if since is not None:
            args.extend(["--since", since])
        args.extend(services)
        return self.run(compose_file, args, env=env, capture_output=capture)

    def run(
        self,
        compose_file: Path,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        profiles: Sequence[str] = (),
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run an arbitrary compose sub-command against *compose_file*."""
        command: list[str] = [self.docker_bin, "compose", "-f", str(compose_file)]
        for profile in profiles:
            command.extend(["--profile", profile])
        command.extend(args)
        verb = args[0] if args else ""
        return run_command(
            command,
            error_cls=ComposeError,
            error_prefix=f"docker compose {verb}".rstrip(),
            check=check,
            capture_output=capture_output,
            env=env,
            cwd=compose_file.parent,
        )


__all__ = ["ComposeError", "ComposeProvider", "ServiceState", "parse_ps_json"]
