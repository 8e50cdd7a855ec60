"""Shared fakes and fixtures for the homelabctl test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from homelabctl.providers.compose import ServiceState


def completed(stdout: str = "", returncode: int = 0) -> subprocess.CompletedProcess[str]:
    """Return a CompletedProcess carrying *stdout*."""
    return subprocess.CompletedProcess(
        args=["fake"], returncode=returncode, stdout=stdout, stderr=""
    )


class DummyCompose:
    """Records compose invocations instead of running docker."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Path, dict[str, object]]] = []
        self.states: list[ServiceState] = []
        self.declared: list[str] = []
        self.ps_output = "NAME   STATUS\nweb    Up 2 minutes"
        self.log_output = ""
        self.version_value: str | None = "2.24.5"
        self.failures: dict[str, Exception] = {}

    @property
    def verbs(self) -> list[str]:
        return [verb for verb, _, _ in self.calls]

    def _record(self, verb: str, compose_file: Path, stdout: str = "", **kwargs: object):
        self.calls.append((verb, Path(compose_file), kwargs))
        if verb in self.failures:
            raise self.failures[verb]
        return completed(stdout)

    def version(self) -> str | None:
        return self.version_value

    def up(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[str] = (),
        profiles: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        return self._record(
            "up", compose_file, env=env, services=list(services), profiles=list(profiles)
        )

    def down(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        volumes: bool = False,
        remove_orphans: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return self._record(
            "down", compose_file, env=env, volumes=volumes, remove_orphans=remove_orphans
        )

    def pull(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[str] = (),
        profiles: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        return self._record(
            "pull", compose_file, env=env, services=list(services), profiles=list(profiles)
        )

    def ps(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return self._record("ps", compose_file, stdout=self.ps_output, env=env)

    def service_states(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[str] = (),
    ) -> list[ServiceState]:
        self._record("states", compose_file, env=env, services=list(services))
        if services:
            return [state for state in self.states if state.service in services]
        return list(self.states)

    def config_services(
        self,
        compose_file: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> list[str]:
        self._record("config", compose_file, env=env)
        return list(self.declared)

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
        return self._record(
            "logs",
            compose_file,
            stdout=self.log_output,
            env=env,
            services=list(services),
            follow=follow,
            tail=tail,
            since=since,
        )


class DummyDocker:
    """In-memory stand-in for the docker CLI."""

    def __init__(self) -> None:
        self.installed = True
        self.running = True
        self.version: str | None = "24.0.7"
        self.volumes: list[str] = []
        self.networks: set[str] = set()
        self.containers: list[str] = []
        self.ephemeral: list[tuple[str, list[str], list[str]]] = []
        self.stats_output = "NAME CPU %"
        self.df_output = "TYPE TOTAL"

    def is_installed(self) -> bool:
        return self.installed

    def daemon_running(self) -> bool:
        return self.running

    def server_version(self) -> str | None:
        return self.version if self.running else None

    def list_volumes(self, prefix: str | None = None) -> list[str]:
        if prefix:
            return [name for name in self.volumes if name.startswith(prefix)]
        return list(self.volumes)

    def volume_exists(self, name: str) -> bool:
        return name in self.volumes

    def create_volume(self, name: str) -> None:
        if name not in self.volumes:
            self.volumes.append(name)

    def network_exists(self, name: str) -> bool:
        return name in self.networks

    def create_network(self, name: str) -> None:
        self.networks.add(name)

    def run_ephemeral(
        self,
        image: str,
        command: Sequence[str],
        *,
        mounts: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        self.ephemeral.append((image, list(command), list(mounts)))
        return completed()

    def running_containers(self) -> list[str]:
        return list(self.containers)

    def stats(self) -> str:
        return self.stats_output

    def system_df(self) -> str:
        return self.df_output


class DummyResponse:
    """Minimal ``requests.Response`` replacement."""

    def __init__(self, status_code: int = 200, *, text: str = "", payload: object = None) -> None:
        self.status_code = status_code
        self.text = text
        self._payload = payload

    def json(self) -> object:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class DummySession:
    """Routes requests to canned responses keyed by ``(method, url)``."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[dict[str, object]] = []
        self.closed = 0

    def add(self, method: str, url: str, response: object) -> None:
        self.routes[(method.upper(), url)] = response

    def request(self, method: str, url: str, **kwargs: object) -> DummyResponse:
        self.requests.append({"method": method.upper(), "url": url, **kwargs})
        outcome = self.routes.get((method.upper(), url))
        if outcome is None:
            return DummyResponse(404, payload={"success": False, "errors": [], "result": []})
        if isinstance(outcome, Exception):
            raise outcome
        assert isinstance(outcome, DummyResponse)
        return outcome

    def get(self, url: str, **kwargs: object) -> DummyResponse:
        return self.request("GET", url, **kwargs)

    def close(self) -> None:
        self.closed += 1


@pytest.fixture
def compose() -> DummyCompose:
    """Return a fresh compose recorder."""
    return DummyCompose()


@pytest.fixture
def docker() -> DummyDocker:
    """Return a fresh docker stand-in."""
    return DummyDocker()


@pytest.fixture
def session() -> DummySession:
    """Return a fresh HTTP session stand-in."""
    return DummySession()


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Create a minimal homelab project tree."""
    root = tmp_path / "homelab"
    (root / "traefik" / "dynamic").mkdir(parents=True)
    (root / "traefik" / "traefik.yml").write_text("api: {}\n", encoding="utf-8")
    (root / "docker-compose.yml").write_text("services:\n  traefik: {}\n", encoding="utf-8")
    (root / ".env").write_text(
        "DEPLOYMENT_TYPE=PRIVATE_LOCAL\n"
        "DOMAIN=lab.example.org\n"
        "COMPOSE_PROJECT_NAME=homelab\n",
        encoding="utf-8",
    )
    return root
