"""Helpers for the homelab's ``KEY=value`` environment files.

Values are read with python-dotenv. Role templates (``.env.example``) are
also parsed line by line so that comments and ordering survive when instance
files are generated from them.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values, set_key

_ASSIGNMENT_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$")

PLACEHOLDER_VALUES = frozenset({"example.com"})
PLACEHOLDER_MARKERS = ("change-me", "put-your")


class EnvFileError(RuntimeError):
    """Raised when an env file cannot be read or written."""


@dataclass(slots=True, frozen=True)
class EnvLine:
    """A single physical line from an env file."""

    raw: str
    key: str | None = None
    value: str | None = None

    @property
    def is_assignment(self) -> bool:
        """Return ``True`` when the line assigns a value."""
        return self.key is not None


def unquote(value: str) -> str:
    """Strip surrounding whitespace and one matching pair of quotes."""
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
        return text[1:-1]
    return text


def parse_lines(text: str) -> list[EnvLine]:
    """Split *text* into :class:`EnvLine` records, preserving every line."""
    lines: list[EnvLine] = []
    for raw in text.splitlines():
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            lines.append(EnvLine(raw=raw))
            continue
        match = _ASSIGNMENT_RE.match(raw)
        if match is None:
            lines.append(EnvLine(raw=raw))
            continue
        lines.append(EnvLine(raw=raw, key=match.group(1), value=unquote(match.group(2))))
    return lines


def read_env(path: Path) -> dict[str, str]:
    """Return the key/value pairs in *path* (empty when the file is missing)."""
    if not path.is_file():
        return {}
    try:
        values = dotenv_values(path)
    except OSError as exc:
        raise EnvFileError(f"Failed to read {path}: {exc}") from exc
    return {key: value or "" for key, value in values.items()}


def update_env(path: Path, updates: Mapping[str, str]) -> None:
    """Set each key in *updates* inside *path*, appending keys that are absent."""
    if not path.exists():
        raise EnvFileError(f"Env file {path} does not exist.")
    for key, value in updates.items():
        success, _, _ = set_key(path, key, value, quote_mode="never")
        if not success:
            raise EnvFileError(f"Failed to set {key} in {path}.")


def write_text_atomic(path: Path, content: str, *, mode: int = 0o600) -> None:
    """Write *content* to *path* atomically with permissions *mode*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise EnvFileError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def is_placeholder(value: str | None) -> bool:
    """Return ``True`` when *value* is empty or an obvious template placeholder."""
    if value is None:
        return True
    text = value.strip()
    if not text or text in PLACEHOLDER_VALUES:
        return True
    return any(marker in text for marker in PLACEHOLDER_MARKERS)


def missing_values(env: Mapping[str, str], required: Iterable[str]) -> list[str]:
    """Return the keys in *required* that are unset or still placeholders."""
    return [key for key in required if is_placeholder(env.get(key))]


def truthy(value: str | None, *, default: bool = False) -> bool:
    """Interpret shell-style boolean strings (``true``/``false``)."""
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


__all__ = [
    "EnvFileError",
    "EnvLine",
    "is_placeholder",
    "missing_values",
    "parse_lines",
    "read_env",
    "truthy",
    "unquote",
    "update_env",
    "write_text_atomic",
]
