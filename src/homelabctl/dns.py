"""Cloudflare DNS helper: public IP discovery, record upserts and validation."""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

import requests

from .providers.process import run_command

LOGGER = logging.getLogger(__name__)

IPV4_RE = re.compile(r"^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$")
DEFAULT_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_IP_SERVICES = (
    "https://ipv4.icanhazip.com",
    "https://ipinfo.io/ip",
    "https://ifconfig.me",
    "https://checkip.amazonaws.com",
)


class DNSError(RuntimeError):
    """Raised when DNS automation fails."""


def detect_public_ip(
    services: Sequence[str] = DEFAULT_IP_SERVICES,
    *,
    timeout: float = 5.0,
    session: requests.Session | None = None,
) -> str:
    """Return the first dotted-quad answer from *services*."""
    http = session or requests.Session()
    for url in services:
        try:
            response = http.get(url, timeout=timeout)
        except requests.RequestException as exc:
            LOGGER.debug("IP service %s failed: %s", url, exc)
            continue
        if response.status_code != 200:
            continue
        candidate = response.text.strip()
        if IPV4_RE.fullmatch(candidate):
            return candidate
    raise DNSError("Failed to detect public IP address.")


@dataclass(slots=True, frozen=True)
class RecordChange:
    """One record written through the Cloudflare API."""

    name: str
    content: str
    type: str
    proxied: bool
    action: str


@dataclass(slots=True)
class CloudflareClient:
    """Minimal Cloudflare v4 client for zone lookup and DNS record upserts."""

    token: str
    api_base: str = DEFAULT_API_BASE
    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        payload: Mapping[str, object] | None = None,
    ) -> dict[str, object]:
        url = f"{self.api_base.rstrip('/')}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                params=dict(params) if params else None,
                json=dict(payload) if payload is not None else None,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DNSError(f"Cloudflare API request failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise DNSError(
                f"Cloudflare API returned non-JSON response (HTTP {response.status_code})."
            ) from exc
        if not isinstance(body, dict):
            raise DNSError("Cloudflare API returned an unexpected payload.")
        return body

    def zone_id(self, domain: str) -> str:
        """Return the zone identifier for *domain*."""
        body = self._request("GET", "zones", params={"name": domain})
        zone = _first_result_id(body)
        if zone is None:
            raise DNSError(f"Failed to get zone ID for domain: {domain}")
        return zone

    def find_record(self, zone_id: str, name: str, record_type: str = "A") -> str | None:
        """Return the identifier of an existing record, or ``None``."""
        body = self._request(
            "GET",
            f"zones/{zone_id}/dns_records",
            params={"name": name, "type": record_type},
        )
        return _first_result_id(body)

    def upsert_record(
        self,
        zone_id: str,
        name: str,
        content: str,
        *,
        record_type: str = "A",
        proxied: bool = False,
    ) -> RecordChange:
        """Update *name* when it exists, otherwise create it."""
        payload = {"type": record_type, "name": name, "content": content, "proxied": proxied}
        record_id = self.find_record(zone_id, name, record_type)
        if record_id is not None:
            LOGGER.info("Updating existing DNS record: %s", name)
            body = self._request("PUT", f"zones/{zone_id}/dns_records/{record_id}", payload=payload)
            action = "updated"
        else:
            LOGGER.info("Creating new DNS record: %s", name)
            body = self._request("POST", f"zones/{zone_id}/dns_records", payload=payload)
            action = "created"
        if body.get("success") is not True:
            raise DNSError(f"Failed to create/update DNS record {name}: {_first_error(body)}")
        return RecordChange(
            name=name,
            content=content,
            type=record_type,
            proxied=proxied,
            action=action,
        )


def _first_result_id(body: Mapping[str, object]) -> str | None:
    result = body.get("result")
    if not isinstance(result, list) or not result:
        return None
    first = result[0]
    if not isinstance(first, Mapping):
        return None
    value = first.get("id")
    if not value or value == "null":
        return None
    return str(value)


def _first_error(body: Mapping[str, object]) -> str:
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
        message = errors[0].get("message")
        if message:
            return str(message)
    return "Unknown error"


def public_record_names(domain: str, records: Iterable[str]) -> list[str]:
    """Return the wildcard record followed by one record per subdomain."""
    return [f"*.{domain}", *(f"{sub}.{domain}" for sub in records)]


def setup_public_dns(
    client: CloudflareClient,
    domain: str,
    public_ip: str,
    *,
    proxied: bool = False,
    records: Iterable[str] = ("traefik", "portainer", "whoami"),
) -> list[RecordChange]:
    """Point the wildcard and service records of *domain* at *public_ip*."""
    if not domain:
        raise DNSError("DOMAIN is required for DNS management.")
    zone = client.zone_id(domain)
    LOGGER.info("Found zone ID %s for %s", zone, domain)
    return [
        client.upsert_record(zone, name, public_ip, proxied=proxied)
        for name in public_record_names(domain, records)
    ]


@dataclass(slots=True, frozen=True)
class DNSValidation:
    """Outcome of resolving one record through a public resolver."""

    fqdn: str
    resolved: str | None
    expected: str | None
    proxied: bool

    @property
    def ok(self) -> bool:
        """Return ``True`` when the record resolves as expected."""
        if not self.resolved:
            return False
        if self.proxied or self.expected is None:
            return True
        return self.resolved == self.expected

    @property
    def message(self) -> str:
        """Return a one-line description of the outcome."""
        if not self.resolved:
            return f"DNS resolution failed for {self.fqdn}"
        if self.proxied:
            return f"DNS resolves to Cloudflare IP: {self.resolved} (proxied)"
        if self.ok:
            return f"DNS resolves correctly: {self.fqdn} -> {self.resolved}"
        return (
            f"DNS mismatch: {self.fqdn} -> {self.resolved} (expected: {self.expected}); "
            "propagation may take up to 24 hours"
        )


def resolve_via_dig(fqdn: str, *, resolver: str = "1.1.1.1", timeout: float = 10.0) -> str | None:
    """Return the first answer of ``dig +short <fqdn> @<resolver>``."""
    result = run_command(
        ["dig", "+short", fqdn, f"@{resolver}"],
        error_cls=DNSError,
        error_prefix=f"dig {fqdn}",
        check=False,
        timeout=timeout,
    )
    if result.returncode != 0:
        return None
    for line in (result.stdout or "").splitlines():
        answer = line.strip()
        if answer:
            return answer
    return None


def validate_dns(
    subdomain: str,
    domain: str,
    expected_ip: str | None,
    *,
    proxied: bool = False,
    resolver: str = "1.1.1.1",
) -> DNSValidation:
    """Resolve ``<subdomain>.<domain>`` and compare it with *expected_ip*."""
    fqdn = f"{subdomain}.{domain}"
    resolved = resolve_via_dig(fqdn, resolver=resolver)
    outcome = DNSValidation(fqdn=fqdn, resolved=resolved, expected=expected_ip, proxied=proxied)
    if outcome.ok:
        LOGGER.info(outcome.message)
    else:
        LOGGER.warning(outcome.message)
    return outcome


__all__ = [
    "CloudflareClient",
    "DNSError",
    "DNSValidation",
    "RecordChange",
    "detect_public_ip",
    "public_record_names",
    "resolve_via_dig",
    "setup_public_dns",
    "validate_dns",
]
