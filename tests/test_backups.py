"""Tests for backup creation, restore and retention."""
from __future__ import annotations

import os
import re
import tarfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from conftest import DummyCompose, DummyDocker

from homelabctl.archive import checksum_path_for, compute_checksum
from homelabctl.backups import (
    BackupError,
    BackupManager,
    archive_age,
    backup_name,
    format_size,
)

FIXED_NOW = datetime(2024, 5, 17, 3, 4, 5)


def _manager(project_root: Path, docker: DummyDocker, compose: DummyCompose) -> BackupManager:
    return BackupManager(
        project_root=project_root,
        root=project_root / "backups",
        docker=docker,  # type: ignore[arg-type]
        compose=compose,  # type: ignore[arg-type]
        volume_prefix="homelab",
    )


def test_backup_name_format() -> None:
    """Archive stems follow ``<prefix>-YYYYMMDD-HHMMSS``."""
    assert backup_name("homelab-backup", FIXED_NOW) == "homelab-backup-20240517-030405"
    assert re.fullmatch(r"homelab-backup-\d{8}-\d{6}", backup_name("homelab-backup"))


@pytest.mark.parametrize(
    ("size", "expected"),
    [(512, "512B"), (2048, "2.0K"), (5 * 1024 * 1024, "5.0M")],
)
def test_format_size(size: int, expected: str) -> None:
    """Sizes render like ``du -h``."""
    assert format_size(size) == expected


def test_create_archives_config_and_volumes(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """Create stages configuration, backs up project volumes and writes a checksum."""
    docker.volumes = ["homelab_portainer_data", "other_data"]
    manager = _manager(project_root, docker, compose)

    result = manager.create(now=FIXED_NOW)

    assert result.archive == project_root / "backups" / "homelab-backup-20240517-030405.tar.gz"
    assert result.archive.is_file()
    assert result.files == ["traefik", "docker-compose.yml", ".env"]
    assert result.volumes == ["homelab_portainer_data"]
    assert result.warnings == ["aliases.sh not found; skipped."]
    assert result.checksum == compute_checksum(result.archive)
    assert checksum_path_for(result.archive).is_file()
    assert not (project_root / "backups" / "homelab-backup-20240517-030405").exists()

    image, command, mounts = docker.ephemeral[0]
    assert image == "alpine"
    assert command[:3] == ["tar", "czf", "/backup/homelab_portainer_data.tar.gz"]
    assert mounts[0] == "homelab_portainer_data:/source:ro"

    with tarfile.open(result.archive) as tar:
        names = tar.getnames()
    stem = "homelab-backup-20240517-030405"
    assert f"{stem}/docker-compose.yml" in names
    assert f"{stem}/.env" in names
    assert f"{stem}/traefik/traefik.yml" in names


def test_create_requires_compose_file(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """docker-compose.yml must be present to back up."""
    (project_root / "docker-compose.yml").unlink()
    manager = _manager(project_root, docker, compose)

    with pytest.raises(BackupError, match="docker-compose.yml"):
        manager.create(now=FIXED_NOW)
    assert list((project_root / "backups").iterdir()) == []


def test_create_warns_without_volumes(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """A project without volumes still produces an archive."""
    (project_root / "aliases.sh").write_text("alias dc='docker compose'\n", encoding="utf-8")
    manager = _manager(project_root, docker, compose)

    result = manager.create(now=FIXED_NOW)

    assert "aliases.sh" in result.files
    assert result.warnings == ["No project volumes found to back up."]


def test_create_refuses_duplicate(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """Two backups in the same second do not overwrite each other."""
    manager = _manager(project_root, docker, compose)
    manager.create(include_volumes=False, now=FIXED_NOW)

    with pytest.raises(BackupError, match="already exists"):
        manager.create(include_volumes=False, now=FIXED_NOW)


def test_list_archives_newest_first(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """Archives are sorted by modification time, newest first."""
    manager = _manager(project_root, docker, compose)
    older = manager.create(include_volumes=False, now=FIXED_NOW).archive
    newer = manager.create(include_volumes=False, now=FIXED_NOW + timedelta(hours=1)).archive
    stamp = datetime.now().timestamp()
    os.utime(older, (stamp - 3600, stamp - 3600))
    os.utime(newer, (stamp, stamp))

    archives = manager.list_archives()

    assert [item.path for item in archives] == [newer, older]
    assert archives[0].to_dict()["name"] == newer.name


def test_resolve_archive_by_name(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """Archives resolve by path, file name or stem."""
    manager = _manager(project_root, docker, compose)
    archive = manager.create(include_volumes=False, now=FIXED_NOW).archive

    assert manager.resolve_archive(str(archive)) == archive
    assert manager.resolve_archive(archive.name) == archive
    assert manager.resolve_archive("homelab-backup-20240517-030405") == archive
    with pytest.raises(BackupError, match="not found"):
        manager.resolve_archive("nope")


def test_restore_round_trips_configuration(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """Restored files match the originals byte-for-byte and volumes are refilled."""
    original_env = (project_root / ".env").read_bytes()
    original_compose = (project_root / "docker-compose.yml").read_bytes()
    manager = _manager(project_root, docker, compose)
    archive = manager.create(include_volumes=False, now=FIXED_NOW).archive

    (project_root / ".env").write_text("DOMAIN=changed\n", encoding="utf-8")
    (project_root / "docker-compose.yml").unlink()

    result = manager.restore(archive, stop_services=False)

    assert result.checksum_verified is True
    assert (project_root / ".env").read_bytes() == original_env
    assert (project_root / "docker-compose.yml").read_bytes() == original_compose
    assert sorted(result.files) == [".env", "docker-compose.yml", "traefik"]
    assert result.volumes == []
    assert compose.calls == []


def test_restore_recreates_volumes(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
    tmp_path: Path,
) -> None:
    """Volume tarballs inside the archive are restored through the helper image."""
    stem = "homelab-backup-20240101-000000"
    stage = tmp_path / "stage" / stem
    (stage / "volumes").mkdir(parents=True)
    (stage / ".env").write_text("DOMAIN=restored.example\n", encoding="utf-8")
    (stage / "volumes" / "homelab_portainer_data.tar.gz").write_bytes(b"not really gzip")
    archive = tmp_path / f"{stem}.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(stage, arcname=stem)
    manager = _manager(project_root, docker, compose)

    result = manager.restore(archive)

    assert result.checksum_verified is None
    assert result.files == [".env"]
    assert result.volumes == ["homelab_portainer_data"]
    assert "homelab_portainer_data" in docker.volumes
    image, command, mounts = docker.ephemeral[0]
    assert image == "alpine"
    assert command[-1] == "cd /target && tar xzf /backup.tar.gz"
    assert mounts[0] == "homelab_portainer_data:/target"
    assert not (project_root / "volumes").exists()
    assert compose.verbs == ["down"]


def test_restore_rejects_checksum_mismatch(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """A tampered archive is not restored."""
    manager = _manager(project_root, docker, compose)
    archive = manager.create(include_volumes=False, now=FIXED_NOW).archive
    checksum_path_for(archive).write_text("0" * 64 + "  x\n", encoding="utf-8")

    with pytest.raises(BackupError, match="Checksum mismatch"):
        manager.restore(archive)


def test_restore_rejects_foreign_archive(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
    tmp_path: Path,
) -> None:
    """Archives without a backup directory are rejected."""
    stage = tmp_path / "random"
    stage.mkdir()
    (stage / "file.txt").write_text("x", encoding="utf-8")
    archive = tmp_path / "random.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(stage, arcname="random")
    manager = _manager(project_root, docker, compose)

    with pytest.raises(BackupError, match="Invalid backup format"):
        manager.restore(archive, stop_services=False)


def test_cleanup_removes_only_expired(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """Archives older than the retention window go; newer ones stay."""
    manager = _manager(project_root, docker, compose)
    old = manager.create(include_volumes=False, now=FIXED_NOW).archive
    recent = manager.create(include_volumes=False, now=FIXED_NOW + timedelta(days=1)).archive
    now = datetime.now()
    old_stamp = (now - timedelta(days=31)).timestamp()
    recent_stamp = (now - timedelta(days=29)).timestamp()
    os.utime(old, (old_stamp, old_stamp))
    os.utime(recent, (recent_stamp, recent_stamp))

    result = manager.cleanup(now=now)

    assert result.removed == [old]
    assert result.remaining == 1
    assert not old.exists()
    assert not checksum_path_for(old).exists()
    assert recent.exists()
    assert archive_age(manager.list_archives()[0], now=now) > timedelta(days=28)


def test_cleanup_keeps_archive_at_retention_edge(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """An archive exactly as old as the retention window is kept."""
    manager = _manager(project_root, docker, compose)
    archive = manager.create(include_volumes=False, now=FIXED_NOW).archive
    edge = (FIXED_NOW - timedelta(days=30)).timestamp()
    os.utime(archive, (edge, edge))

    result = manager.cleanup(now=FIXED_NOW)

    assert result.removed == []
    assert archive_age(manager.list_archives()[0], now=FIXED_NOW) == timedelta(days=30)


def test_cleanup_rejects_negative_retention(
    project_root: Path,
    docker: DummyDocker,
    compose: DummyCompose,
) -> None:
    """Negative retention windows are invalid."""
    manager = _manager(project_root, docker, compose)

    with pytest.raises(BackupError):
        manager.cleanup(retention_days=-1)
