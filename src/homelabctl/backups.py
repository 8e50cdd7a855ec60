"""Backup, restore and retention for the homelab project directory.

A backup is ``<prefix>-<YYYYMMDD-HHMMSS>.tar.gz`` under the backup root. It
contains one top-level directory of the same name holding copies of the
configured project files plus ``volumes/<volume>.tar.gz`` for every Docker
volume whose name starts with the project name. Volume contents are read and
written through a throwaway helper container.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from .archive import (
    ArchiveError,
    checksum_path_for,
    compute_checksum,
    create_archive,
    extract_archive,
    verify_checksum,
    write_checksum_file,
)
from .providers.compose import ComposeError, ComposeProvider
from .providers.docker import DockerProvider

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
VOLUMES_DIR = "volumes"
REQUIRED_ENTRIES = frozenset({"docker-compose.yml"})


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


def backup_name(prefix: str, now: datetime | None = None) -> str:
    """Return the archive stem for a backup taken at *now* (local time)."""
    moment = now or datetime.now()
    return f"{prefix}-{moment.strftime(TIMESTAMP_FORMAT)}"


def copy_into(source: Path, destination: Path) -> None:
    """Copy or mirror *source* into *destination*, preserving file bytes."""
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


@dataclass(slots=True, frozen=True)
class BackupArchive:
    """A backup archive found under the backup root."""

    path: Path
    size_bytes: int
    modified: datetime

    @property
    def name(self) -> str:
        """Return the archive file name."""
        return self.path.name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "modified": self.modified.isoformat(timespec="seconds"),
        }


@dataclass(slots=True)
class BackupResult:
    """Outcome of :meth:`BackupManager.create`."""

    archive: Path
    checksum: str
    size_bytes: int
    files: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RestoreResult:
    """Outcome of :meth:`BackupManager.restore`."""

    archive: Path
    files: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    checksum_verified: bool | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CleanupResult:
    """Outcome of :meth:`BackupManager.cleanup`."""

    removed: list[Path] = field(default_factory=list)
    remaining: int = 0


def format_size(size_bytes: int) -> str:
    """Return *size_bytes* as a short human readable string (``du -h`` style)."""
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            if unit == "B":
                return f"{int(size)}{unit}"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size_bytes}B"  # pragma: no cover - loop always returns


@dataclass(slots=True)
class BackupManager:
    """Create, list, restore and prune project backups."""

    project_root: Path
    root: Path
    docker: DockerProvider
    compose: ComposeProvider
    prefix: str = "homelab-backup"
    retention_days: int = 30
    helper_image: str = "alpine"
    include: tuple[str, ...] = ("traefik", "docker-compose.yml", ".env", "aliases.sh")
    volume_prefix: str | None = None

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    @property
    def project_volume_prefix(self) -> str:
        """Return the prefix identifying this project's Docker volumes."""
        return self.volume_prefix or self.project_root.name

    # ------------------------------------------------------------------
    def create(self, *, include_volumes: bool = True, now: datetime | None = None) -> BackupResult:
        """Stage configuration and volumes, then write a compressed archive."""
        self.ensure_root()
        name = backup_name(self.prefix, now)
        stage = self.root / name
        archive_path = self.root / f"{name}{ARCHIVE_SUFFIX}"
        if archive_path.exists() or stage.exists():
            raise BackupError(f"Backup {name} already exists.")

        files: list[str] = []
        volumes: list[str] = []
        warnings: list[str] = []
        try:
            stage.mkdir(parents=True)
            for entry in self.include:
                source = self.project_root / entry
                if not source.exists():
                    if entry in REQUIRED_ENTRIES:
                        raise BackupError(f"{entry} not found under {self.project_root}.")
                    warnings.append(f"{entry} not found; skipped.")
                    continue
                copy_into(source, stage / entry)
                files.append(entry)

            if include_volumes:
                volumes = self._backup_volumes(stage)
                if not volumes:
                    warnings.append("No project volumes found to back up.")

            try:
                create_archive(stage, archive_path)
            except ArchiveError as exc:
                raise BackupError(f"Failed to create archive: {exc}") from exc
        finally:
            shutil.rmtree(stage, ignore_errors=True)

        checksum = compute_checksum(archive_path)
        write_checksum_file(archive_path, checksum)
        size = archive_path.stat().st_size
        LOGGER.info("Created backup %s (%s)", archive_path, format_size(size))
        return BackupResult(
            archive=archive_path,
            checksum=checksum,
            size_bytes=size,
            files=files,
            volumes=volumes,
            warnings=warnings,
        )

    def list_archives(self) -> list[BackupArchive]:
        """Return backup archives, newest first."""
        if not self.root.is_dir():
            return []
        archives: list[BackupArchive] = []
        for path in self.root.glob(f"{self.prefix}-*{ARCHIVE_SUFFIX}"):
            if not path.is_file():
                continue
            info = path.stat()
            archives.append(
                BackupArchive(
                    path=path,
                    size_bytes=info.st_size,
                    modified=datetime.fromtimestamp(info.st_mtime),
                )
            )
        archives.sort(key=lambda item: item.modified, reverse=True)
        return archives

    def resolve_archive(self, reference: str) -> Path:
        """Resolve *reference* as a path, or as a name under the backup root."""
        candidate = Path(reference).expanduser()
        if candidate.is_file():
            return candidate
        for name in (reference, f"{reference}{ARCHIVE_SUFFIX}"):
            in_root = self.root / name
            if in_root.is_file():
                return in_root
        raise BackupError(f"Backup file not found: {reference}")

    def restore(
        self,
        archive_path: Path,
        *,
        compose_file: Path | None = None,
        stop_services: bool = True,
    ) -> RestoreResult:
        """Restore configuration files and volumes from *archive_path*."""
        if not archive_path.is_file():
            raise BackupError(f"Backup file not found: {archive_path}")

        result = RestoreResult(archive=archive_path)
        try:
            result.checksum_verified = verify_checksum(archive_path)
        except ArchiveError as exc:
            raise BackupError(str(exc)) from exc
        if result.checksum_verified is False:
            raise BackupError(f"Checksum mismatch for {archive_path.name}; refusing to restore.")

        if stop_services:
            target = compose_file or (self.project_root / "docker-compose.yml")
            if target.is_file():
                try:
                    self.compose.down(target, check=False)
                except ComposeError as exc:
                    result.warnings.append(f"Could not stop services: {exc}")

        with tempfile.TemporaryDirectory(prefix="homelab-restore-") as tmp:
            staging = Path(tmp)
            try:
                extract_archive(archive_path, staging)
            except ArchiveError as exc:
                raise BackupError(str(exc)) from exc
            payload = self._find_payload(staging)

            for child in sorted(payload.iterdir()):
                if child.name == VOLUMES_DIR:
                    continue
                copy_into(child, self.project_root / child.name)
                result.files.append(child.name)

            volumes_dir = payload / VOLUMES_DIR
            if volumes_dir.is_dir():
                for tarball in sorted(volumes_dir.glob(f"*{ARCHIVE_SUFFIX}")):
                    volume = tarball.name[: -len(ARCHIVE_SUFFIX)]
                    self._restore_volume(volume, tarball)
                    result.volumes.append(volume)

        return result

    def cleanup(
        self,
        *,
        retention_days: int | None = None,
        now: datetime | None = None,
    ) -> CleanupResult:
        """Delete archives whose modification time is older than the retention window."""
        days = self.retention_days if retention_days is None else retention_days
        if days < 0:
            raise BackupError("Retention days must be zero or positive.")
        moment = now or datetime.now()
        window = timedelta(days=days)
        result = CleanupResult()
        for archive in self.list_archives():
            if archive_age(archive, now=moment) <= window:
                result.remaining += 1
                continue
            archive.path.unlink(missing_ok=True)
            checksum_path_for(archive.path).unlink(missing_ok=True)
            result.removed.append(archive.path)
        return result

    # ------------------------------------------------------------------
    def _backup_volumes(self, stage: Path) -> list[str]:
        names = self.docker.list_volumes(prefix=self.project_volume_prefix)
        if not names:
            return []
        volumes_dir = stage / VOLUMES_DIR
        volumes_dir.mkdir(parents=True, exist_ok=True)
        for volume in names:
            LOGGER.info("Backing up volume %s", volume)
            self.docker.run_ephemeral(
                self.helper_image,
                ["tar", "czf", f"/backup/{volume}{ARCHIVE_SUFFIX}", "-C", "/source", "."],
                mounts=[f"{volume}:/source:ro", f"{volumes_dir.resolve()}:/backup"],
            )
        return names

    def _restore_volume(self, volume: str, tarball: Path) -> None:
        LOGGER.info("Restoring volume %s", volume)
        self.docker.create_volume(volume)
        self.docker.run_ephemeral(
            self.helper_image,
            ["sh", "-c", "cd /target && tar xzf /backup.tar.gz"],
            mounts=[f"{volume}:/target", f"{tarball.resolve()}:/backup.tar.gz:ro"],
        )

    def _find_payload(self, staging: Path) -> Path:
        for candidate in sorted(staging.iterdir()):
            if candidate.is_dir() and candidate.name.startswith(f"{self.prefix}-"):
                return candidate
        raise BackupError("Invalid backup format: no backup directory inside the archive.")


def archive_age(archive: BackupArchive, *, now: datetime | None = None) -> timedelta:
    """Return how long ago *archive* was last modified."""
    moment = now or datetime.now()
    return moment - archive.modified


__all__ = [
    "BackupArchive",
    "BackupError",
    "BackupManager",
    "BackupResult",
    "CleanupResult",
    "RestoreResult",
    "archive_age",
    "backup_name",
    "copy_into",
    "format_size",
]
