"""Inspection of Traefik's ``acme.json`` certificate store."""
from __future__ import annotations

import base64
import binascii
import json
import stat
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509

ACME_RELATIVE_PATH = Path("traefik") / "acme" / "acme.json"
SECURE_MODE = 0o600


class AcmeStoreError(RuntimeError):
    """Raised when ``acme.json`` cannot be parsed."""


@dataclass(slots=True, frozen=True)
class StoredCertificate:
    """A certificate held by one of Traefik's certificate resolvers."""

    resolver: str
    domain: str
    not_valid_after: datetime

    def days_remaining(self, now: datetime) -> float:
        """Return the days left until expiry (negative once expired)."""
        return (self.not_valid_after - now).total_seconds() / 86400

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "resolver": self.resolver,
            "domain": self.domain,
            "not_valid_after": self.not_valid_after.isoformat(),
        }


def acme_path(project_root: Path) -> Path:
    """Return the location of ``acme.json`` under *project_root*."""
    return project_root / ACME_RELATIVE_PATH


def file_mode(path: Path) -> int:
    """Return the permission bits of *path*."""
    return stat.S_IMODE(path.stat().st_mode)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _not_after(cert: x509.Certificate) -> datetime:
    value = getattr(cert, "not_valid_after_utc", None)
    if isinstance(value, datetime):
        return value
    return _as_utc(cert.not_valid_after)  # pragma: no cover - older cryptography


def load_certificates(path: Path) -> list[StoredCertificate]:
    """Return every certificate stored in *path* (empty for an empty file)."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AcmeStoreError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(document, Mapping):
        raise AcmeStoreError(f"{path} must contain a JSON object.")

    found: list[StoredCertificate] = []
    for resolver, section in document.items():
        if not isinstance(section, Mapping):
            continue
        for entry in section.get("Certificates") or []:
            if not isinstance(entry, Mapping):
                continue
            domain_info = entry.get("domain")
            domain = ""
            if isinstance(domain_info, Mapping):
                domain = str(domain_info.get("main", ""))
            encoded = entry.get("certificate")
            if not isinstance(encoded, str) or not encoded:
                continue
            try:
                pem = base64.b64decode(encoded)
                cert = x509.load_pem_x509_certificate(pem)
            except (binascii.Error, ValueError) as exc:
                raise AcmeStoreError(
                    f"Certificate for {domain or 'unknown domain'} in {path} is unreadable: {exc}"
                ) from exc
            found.append(
                StoredCertificate(
                    resolver=str(resolver),
                    domain=domain,
                    not_valid_after=_not_after(cert),
                )
            )
    return found


__all__ = [
    "ACME_RELATIVE_PATH",
    "AcmeStoreError",
    "SECURE_MODE",
    "StoredCertificate",
    "acme_path",
    "file_mode",
    "load_certificates",
]
