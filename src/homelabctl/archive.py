"""Archive helpers for backup creation and restore."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when tar operations or checksum checks fail."""


def _tar_bin() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to work with backup archives.")
    return tar_bin


def create_archive(source_dir: Path, archive_path: Path) -> None:
    """Create a gzip tarball of *source_dir* at *archive_path*.

    The archive holds a single top-level directory named after *source_dir*.
    """
    cmd = [
        _tar_bin(),
        "-czf",
        str(archive_path),
        "-C",
        str(source_dir.parent),
        source_dir.name,
    ]
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    try:
        os.chmod(archive_path, 0o600)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Extract the gzip tarball *archive_path* into *destination*."""
    destination.mkdir(parents=True, exist_ok=True)
    cmd = [_tar_bin(), "-xzf", str(archive_path), "-C", str(destination)]
    result = subprocess.run(  # noqa: S603, S607 - controlled command
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise ArchiveError(f"Failed to extract {archive_path.name}: {message}")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar path."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o600)
    except OSError:
        pass
    return checksum_path


def verify_checksum(archive_path: Path) -> bool | None:
    """Compare *archive_path* against its sidecar.

    Returns ``None`` when no sidecar exists, otherwise whether the digests match.
    """
    checksum_path = checksum_path_for(archive_path)
    if not checksum_path.is_file():
        return None
    recorded = checksum_path.read_text(encoding="utf-8").split()
    if not recorded:
        raise ArchiveError(f"Checksum file {checksum_path} is empty.")
    return recorded[0].lower() == compute_checksum(archive_path)


__all__ = [
    "ArchiveError",
    "checksum_path_for",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "verify_checksum",
    "write_checksum_file",
]
