"""Docker engine provider (daemon, volumes, networks, helper containers)."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from .process import run_command


class DockerError(RuntimeError):
    """Raised when docker CLI operations fail."""


@dataclass(slots=True)
class DockerProvider:
    """Thin wrapper around the ``docker`` CLI."""

    docker_bin: str = "docker"

    def is_installed(self) -> bool:
        """Return ``True`` when the docker binary is on PATH."""
        return shutil.which(self.docker_bin) is not None

    def daemon_running(self) -> bool:
        """Return ``True`` when ``docker info`` succeeds."""
        try:
            result = self._docker(["info"], check=False)
        except DockerError:
            return False
        return result.returncode == 0

    def server_version(self) -> str | None:
        """Return the Docker server version, or ``None`` when unavailable."""
        try:
            result = self._docker(
                ["version", "--format", "{{.Server.Version}}"],
                check=False,
            )
        except DockerError:
            return None
        version = (result.stdout or "").strip()
        if result.returncode != 0 or not version:
            return None
        return version

    def list_volumes(self, prefix: str | None = None) -> list[str]:
        """Return volume names, optionally filtered to those starting with *prefix*."""
        result = self._docker(["volume", "ls", "--format", "{{.Name}}"])
        names = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        if prefix:
            names = [name for name in names if name.startswith(prefix)]
        return names

    def volume_exists(self, name: str) -> bool:
        """Return ``True`` when volume *name* exists."""
        result = self._docker(["volume", "inspect", name], check=False)
        return result.returncode == 0

    def create_volume(self, name: str) -> None:
        """Create volume *name* (idempotent in docker itself)."""
        self._docker(["volume", "create", name])

    def network_exists(self, name: str) -> bool:
        """Return ``True`` when network *name* exists."""
        result = self._docker(["network", "inspect", name], check=False)
        return result.returncode == 0

    def create_network(self, name: str) -> None:
        """Create network *name*."""
        self._docker(["network", "create", name])

    def run_ephemeral(
        self,
        image: str,
        command: Sequence[str],
        *,
        mounts: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* in a throwaway ``--rm`` container of *image*."""
        args: list[str] = ["run", "--rm"]
        for mount in mounts:
            args.extend(["-v", mount])
        args.append(image)
        args.extend(command)
        return self._docker(args)

    def running_containers(self) -> list[str]:
        """Return names of running containers."""
        result = self._docker(["ps", "--format", "{{.Names}}"])
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def stats(self) -> str:
        """Return a one-shot resource usage table for running containers."""
        result = self._docker(
            [
                "stats",
                "--no-stream",
                "--format",
                "table {{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}\t{{.NetIO}}\t{{.PIDs}}",
            ]
        )
        return (result.stdout or "").rstrip()

    def system_df(self) -> str:
        """Return ``docker system df`` output."""
        result = self._docker(["system", "df"])
        return (result.stdout or "").rstrip()

    # ------------------------------------------------------------------
    def _docker(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        return run_command(
            command,
            error_cls=DockerError,
            error_prefix=f"{self.docker_bin} {' '.join(args[:2])}".rstrip(),
            check=check,
        )


__all__ = ["DockerError", "DockerProvider"]
