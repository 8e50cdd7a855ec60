"""Tests for the instance lifecycle manager."""
from __future__ import annotations

import os
from pathlib import Path

import pytest
from conftest import DummyCompose, completed

import homelabctl.instances as instances_module
from homelabctl.instances import (
    STATE_NOT_DEPLOYED,
    STATE_RUNNING,
    STATE_STOPPED,
    InstanceError,
    InstanceManager,
)
from homelabctl.locking import LockManager, LockTimeoutError
from homelabctl.providers.compose import ComposeError, ServiceState
from homelabctl.roles import RoleError

MYSQL_ENV = """\
INSTANCES=dev,prod
MYSQL_ROOT_PASSWORD=default
dev_MYSQL_ROOT_PASSWORD=secret
"""


@pytest.fixture
def layout(tmp_path: Path) -> dict[str, Path]:
    roles = tmp_path / "roles"
    role = roles / "mysql"
    role.mkdir(parents=True)
    (role / "docker-compose.yml").write_text("services:\n  db: {}\n", encoding="utf-8")
    (role / ".env.example").write_text(MYSQL_ENV, encoding="utf-8")
    (role / "directories.txt").write_text("# data dirs\n\ndata/mysql\nbackups\n", encoding="utf-8")
    (role / "access-info.txt").write_text(
        "Connect to ${INSTANCE_NAME} as root/$MYSQL_ROOT_PASSWORD ($UNSET)\n",
        encoding="utf-8",
    )
    project_env = tmp_path / "project.env"
    project_env.write_text("COMPOSE_PROJECT_NAME=lab\n", encoding="utf-8")
    return {"roles": roles, "instances": tmp_path / "instances", "env": project_env}


@pytest.fixture
def hooks(monkeypatch: pytest.MonkeyPatch) -> list[tuple[list[str], Path | None]]:
    calls: list[tuple[list[str], Path | None]] = []

    def fake_run(args: list[str], **kwargs: object) -> object:
        cwd = kwargs.get("cwd")
        calls.append((list(args), cwd if isinstance(cwd, Path) else None))
        return completed()

    monkeypatch.setattr(instances_module, "run_command", fake_run)
    return calls


def _manager(layout: dict[str, Path], compose: DummyCompose, **kwargs: object) -> InstanceManager:
    return InstanceManager(
        roles_dir=layout["roles"],
        instance_root=layout["instances"],
        project_env_file=layout["env"],
        compose=compose,  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def test_ref_uses_project_env_base(layout: dict[str, Path], compose: DummyCompose) -> None:
    """The compose project name is derived from the project .env."""
    manager = _manager(layout, compose)

    ref = manager.ref("mysql", "dev")

    assert ref.directory == layout["instances"] / "mysql-dev"
    assert ref.project == "lab-mysql-dev"


def test_base_project_defaults(tmp_path: Path, compose: DummyCompose) -> None:
    """Without a project .env the default project name is used."""
    manager = InstanceManager(
        roles_dir=tmp_path,
        instance_root=tmp_path,
        project_env_file=tmp_path / "missing.env",
        compose=compose,  # type: ignore[arg-type]
    )

    assert manager.base_project() == "homelab"


def test_install_materialises_instance(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """Install copies the role, writes .env, creates dirs and starts compose."""
    manager = _manager(layout, compose)

    result = manager.install("mysql", "dev")

    directory = layout["instances"] / "mysql-dev"
    assert result.ref.directory == directory
    for sub in ("data", "config", "logs", "data/mysql", "backups"):
        assert (directory / sub).is_dir()
    env_text = (directory / ".env").read_text(encoding="utf-8")
    assert "MYSQL_ROOT_PASSWORD=secret" in env_text
    assert "COMPOSE_PROJECT_NAME=lab-mysql-dev" in env_text
    assert (directory / ".env").stat().st_mode & 0o777 == 0o600

    assert compose.verbs == ["up"]
    _, compose_file, kwargs = compose.calls[0]
    assert compose_file == directory / "docker-compose.yml"
    env = kwargs["env"]
    assert isinstance(env, dict)
    assert env["INSTANCE_NAME"] == "dev"
    assert env["INSTANCE_DIR"] == str(directory)
    assert env["COMPOSE_PROJECT_NAME"] == "lab-mysql-dev"
    assert env["INSTANCE_SUBDOMAIN"] == "dev-"
    assert env["MYSQL_ROOT_PASSWORD"] == "secret"

    assert result.access_info == "Connect to dev as root/secret ()\n"
    assert hooks == []


def test_install_runs_hooks_in_order(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """Pre and post install hooks run inside the instance directory."""
    role = layout["roles"] / "mysql"
    (role / "pre-install.sh").write_text("#!/bin/bash\n", encoding="utf-8")
    (role / "post-install.sh").write_text("#!/bin/bash\n", encoding="utf-8")
    manager = _manager(layout, compose)

    result = manager.install("mysql", "prod")

    directory = layout["instances"] / "mysql-prod"
    assert result.hooks == ["pre-install.sh", "post-install.sh"]
    assert hooks == [
        (["bash", "pre-install.sh"], directory),
        (["bash", "post-install.sh"], directory),
    ]


def test_install_unknown_role(layout: dict[str, Path], compose: DummyCompose) -> None:
    """Unknown roles raise RoleError before touching compose."""
    manager = _manager(layout, compose)

    with pytest.raises(RoleError):
        manager.install("ghost", "dev")
    assert compose.calls == []


def test_directories_cannot_escape_instance(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """directories.txt entries are confined to the instance directory."""
    (layout["roles"] / "mysql" / "directories.txt").write_text("../../etc\n", encoding="utf-8")
    manager = _manager(layout, compose)

    with pytest.raises(InstanceError, match="escapes"):
        manager.install("mysql", "dev")
    assert "up" not in compose.verbs


def test_uninstall_keeps_or_removes_data(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """Uninstall brings the stack down with volumes; data removal is opt-in."""
    manager = _manager(layout, compose)
    manager.install("mysql", "dev")
    directory = layout["instances"] / "mysql-dev"

    kept = manager.uninstall("mysql", "dev")
    assert kept.data_removed is False
    assert directory.is_dir()
    verb, _, kwargs = compose.calls[-1]
    assert verb == "down"
    assert kwargs["volumes"] is True

    removed = manager.uninstall("mysql", "dev", remove_data=True)
    assert removed.data_removed is True
    assert not directory.exists()


def test_uninstall_missing_instance(layout: dict[str, Path], compose: DummyCompose) -> None:
    """Operating on an instance that was never installed fails cleanly."""
    manager = _manager(layout, compose)

    with pytest.raises(InstanceError, match="not found"):
        manager.uninstall("mysql", "dev")


def test_status_update_and_logs(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """Read-only and update actions target the instance compose file."""
    manager = _manager(layout, compose)
    manager.install("mysql", "dev")

    assert manager.status("mysql", "dev") == compose.ps_output
    manager.update("mysql", "dev")
    manager.logs("mysql", "dev", follow=False, tail=50)

    assert compose.verbs == ["up", "ps", "pull", "up", "logs"]
    _, _, log_kwargs = compose.calls[-1]
    assert log_kwargs["follow"] is False
    assert log_kwargs["tail"] == 50


def test_prepare_config_creates_env_from_example(
    layout: dict[str, Path],
    compose: DummyCompose,
) -> None:
    """``config`` sets up the directory and ensures an .env exists."""
    manager = _manager(layout, compose)

    path = manager.prepare_config("mysql", "dev")

    assert path == layout["instances"] / "mysql-dev" / ".env"
    assert path.is_file()
    path.unlink()
    assert manager.prepare_config("mysql", "dev").is_file()
    assert os.stat(path).st_mode & 0o777 == 0o600


def test_edit_config_launches_editor(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """The configured editor command is split and given the env path."""
    manager = _manager(layout, compose, editor="code --wait")

    path = manager.edit_config("mysql", "dev")

    assert hooks[-1][0] == ["code", "--wait", str(path)]


def test_list_instances_reports_state(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """Instances are discovered on disk and classified by container state."""
    manager = _manager(layout, compose)
    manager.install("mysql", "dev")
    manager.install("mysql", "prod")
    (layout["instances"] / "mysql-old").mkdir()
    (layout["instances"] / "redis-cache").mkdir()

    compose.states = [ServiceState("db", "lab-mysql-dev-db-1", "running", "", "Up")]
    listings = manager.list_instances("mysql")

    assert [(item.name, item.state) for item in listings] == [
        ("dev", STATE_RUNNING),
        ("old", STATE_NOT_DEPLOYED),
        ("prod", STATE_RUNNING),
    ]

    compose.states = [ServiceState("db", "x", "exited", "", "Exited (0)")]
    assert manager.list_instances("mysql")[0].state == STATE_STOPPED


def test_list_instances_skips_other_role_with_shared_prefix(
    layout: dict[str, Path],
    compose: DummyCompose,
) -> None:
    """``mysql-backup-x`` belonging to role ``mysql-backup`` is not a mysql instance."""
    other = layout["instances"] / "mysql-backup-nightly"
    other.mkdir(parents=True)
    (other / ".env").write_text("INSTANCE_NAME=nightly\n", encoding="utf-8")
    manager = _manager(layout, compose)

    assert manager.list_instances("mysql") == []


def test_install_all_counts_without_rollback(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failing instance is reported and the others still install."""
    manager = _manager(layout, compose)
    original_up = compose.up
    seen: list[str] = []

    def flaky_up(compose_file: Path, **kwargs: object) -> object:
        seen.append(compose_file.parent.name)
        if compose_file.parent.name == "mysql-dev":
            raise ComposeError("docker compose up failed")
        return original_up(compose_file, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(compose, "up", flaky_up)

    result = manager.install_all("mysql")

    assert seen == ["mysql-dev", "mysql-prod"]
    assert result.total == 2
    assert result.success_count == 1
    assert result.ok is False
    assert [item.ok for item in result.items] == [False, True]
    assert (layout["instances"] / "mysql-prod").is_dir()


def test_status_all_and_uninstall_all(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
) -> None:
    """Batch actions iterate over every declared instance."""
    manager = _manager(layout, compose)
    manager.install_all("mysql")

    status = manager.status_all("mysql")
    assert status.ok
    assert [item.detail for item in status.items] == [compose.ps_output] * 2

    removed = manager.uninstall_all("mysql", remove_data=True)
    assert removed.success_count == 2
    assert not (layout["instances"] / "mysql-dev").exists()


def test_mutations_take_instance_lock(
    layout: dict[str, Path],
    compose: DummyCompose,
    tmp_path: Path,
) -> None:
    """A held instance lock makes install time out."""
    locks = LockManager(tmp_path / "run", default_timeout=0.1)
    manager = _manager(layout, compose, locks=locks)

    with locks.instance_lock("mysql-dev"):
        with pytest.raises(LockTimeoutError):
            manager.install("mysql", "dev")
    assert compose.calls == []


def test_mutations_wait_for_global_lock(
    layout: dict[str, Path],
    compose: DummyCompose,
    tmp_path: Path,
) -> None:
    """Install cannot run while another command holds the global lock."""
    locks = LockManager(tmp_path / "run", default_timeout=0.1)
    manager = _manager(layout, compose, locks=locks)

    with locks.global_lock():
        with pytest.raises(LockTimeoutError):
            manager.install("mysql", "dev")
    assert compose.calls == []


def test_uninstall_all_counts_removal_failures(
    layout: dict[str, Path],
    compose: DummyCompose,
    hooks: list[tuple[list[str], Path | None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A directory that cannot be deleted fails that instance only."""
    manager = _manager(layout, compose)
    manager.install_all("mysql")

    def denied(path: Path) -> None:
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(instances_module.shutil, "rmtree", denied)

    result = manager.uninstall_all("mysql", remove_data=True)

    assert result.total == 2
    assert result.success_count == 0
    assert all("Failed to remove" in item.detail for item in result.items)
    assert (layout["instances"] / "mysql-dev").is_dir()
