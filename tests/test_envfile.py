"""Tests for env file helpers."""
from __future__ import annotations

from pathlib import Path

import pytest

from homelabctl.envfile import (
    EnvFileError,
    is_placeholder,
    missing_values,
    parse_lines,
    read_env,
    truthy,
    unquote,
    update_env,
    write_text_atomic,
)


def test_read_env_missing_file_is_empty(tmp_path: Path) -> None:
    """A missing file yields no values."""
    assert read_env(tmp_path / ".env") == {}


def test_read_env_parses_values(tmp_path: Path) -> None:
    """Quoted values and comments are handled by python-dotenv."""
    path = tmp_path / ".env"
    path.write_text(
        "# comment\nDOMAIN=lab.example.org\nACME_EMAIL=\"ops@example.org\"\nEMPTY=\n",
        encoding="utf-8",
    )

    assert read_env(path) == {
        "DOMAIN": "lab.example.org",
        "ACME_EMAIL": "ops@example.org",
        "EMPTY": "",
    }


def test_parse_lines_preserves_layout() -> None:
    """Every physical line is kept and assignments are recognised."""
    lines = parse_lines("# header\n\nexport KEY='value'\nnot an assignment\n")

    assert [line.raw for line in lines] == [
        "# header",
        "",
        "export KEY='value'",
        "not an assignment",
    ]
    assert [line.key for line in lines] == [None, None, "KEY", None]
    assert lines[2].value == "value"
    assert lines[2].is_assignment


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(' "a b" ', "a b"), ("'x'", "x"), ('"mismatch\'', '"mismatch\''), ("plain", "plain")],
)
def test_unquote(raw: str, expected: str) -> None:
    """One matching pair of quotes is removed."""
    assert unquote(raw) == expected


def test_update_env_replaces_and_appends(tmp_path: Path) -> None:
    """Existing keys are rewritten in place and new ones appended."""
    path = tmp_path / ".env"
    path.write_text("DOMAIN=example.com\nOTHER=1\n", encoding="utf-8")

    update_env(path, {"DOMAIN": "homelab.local", "TS_AUTHKEY": "local"})

    values = read_env(path)
    assert values["DOMAIN"] == "homelab.local"
    assert values["OTHER"] == "1"
    assert values["TS_AUTHKEY"] == "local"


def test_update_env_requires_existing_file(tmp_path: Path) -> None:
    """Updating a missing file is an error."""
    with pytest.raises(EnvFileError):
        update_env(tmp_path / ".env", {"A": "b"})


def test_write_text_atomic_sets_mode(tmp_path: Path) -> None:
    """Atomic writes create parents and apply the requested mode."""
    path = tmp_path / "nested" / ".env"

    write_text_atomic(path, "A=1\n", mode=0o600)

    assert path.read_text(encoding="utf-8") == "A=1\n"
    assert path.stat().st_mode & 0o777 == 0o600


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, True),
        ("", True),
        ("example.com", True),
        ("your-token-change-me", True),
        ("put-your-email-here", True),
        ("lab.example.org", False),
    ],
)
def test_is_placeholder(value: str | None, expected: bool) -> None:
    """Template placeholders are detected."""
    assert is_placeholder(value) is expected


def test_missing_values_lists_unset_keys() -> None:
    """Only unset or placeholder keys are reported, in order."""
    env = {"DOMAIN": "example.com", "ACME_EMAIL": "ops@lab.org"}

    assert missing_values(env, ["DOMAIN", "ACME_EMAIL", "CF_DNS_API_TOKEN"]) == [
        "DOMAIN",
        "CF_DNS_API_TOKEN",
    ]


def test_truthy() -> None:
    """Shell-style booleans are interpreted with a default for blanks."""
    assert truthy("true") is True
    assert truthy("YES") is True
    assert truthy("false") is False
    assert truthy(None) is False
    assert truthy("", default=True) is True
