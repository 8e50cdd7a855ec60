"""Data models and helpers for health probes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    import requests

    from ..config import AppConfig
    from ..providers.compose import ComposeProvider
    from ..providers.docker import DockerProvider


class ProbeStatus(str, Enum):
    """High-level outcome for a health probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is ProbeStatus.YELLOW


class DoctorImpact(Enum):
    """Impact tier used to derive the health exit code."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4

    @classmethod
    def from_exit_code(cls, code: int) -> DoctorImpact:
        """Translate an exit code back into a DoctorImpact."""
        for impact in cls:
            if impact.value == code:
                return impact
        raise ValueError(f"Unsupported health exit code: {code}")


ProbeCategory = Literal[
    "docker",
    "services",
    "network",
    "certs",
    "resources",
    "logs",
    "config",
    "env",
]

# Keep in sync with ``ProbeCategory``.
PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = (
    "docker",
    "services",
    "network",
    "certs",
    "resources",
    "logs",
    "config",
    "env",
)


@dataclass(slots=True, frozen=True)
class ProbeExecutorOptions:
    """Runtime tunables for executing health probes."""

    max_concurrency: int = 4
    exec_timeout: float = 15.0
    connect_timeout: float = 3.0
    request_timeout: float = 10.0
    retries: int = 0


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Execution context provided to health probes."""

    config: AppConfig
    env: Mapping[str, str]
    docker: DockerProvider
    compose: ComposeProvider
    compose_file: Path
    session_factory: Callable[[], requests.Session]
    options: ProbeExecutorOptions

    @property
    def domain(self) -> str | None:
        """Return ``DOMAIN`` when it is configured with a real value."""
        value = self.env.get("DOMAIN", "").strip()
        if not value or value == "example.com":
            return None
        return value


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running a probe."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    impact: DoctorImpact
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.status.is_failure

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the probe result represents a warning."""
        return self.status.is_warning

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready view of the result, omitting empty fields."""
        payload: dict[str, Any] = {
            "id": self.id,
            "category": self.category,
            "status": self.status.value,
            "impact": self.impact.name.lower(),
            "message": self.message,
        }
        if self.remediation:
            payload["remediation"] = self.remediation
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        if self.data:
            payload["data"] = _plain(self.data)
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe."""

    id: str
    category: ProbeCategory
    run: Callable[[ProbeContext], ProbeResult]


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Aggregated summary derived from probe results."""

    status: ProbeStatus
    impact: DoctorImpact
    exit_code: int
    totals: Mapping[ProbeStatus, int]


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Complete report for a health run."""

    results: Sequence[ProbeResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None

    def issues(self) -> list[ProbeResult]:
        """Return results that are not green."""
        return [result for result in self.results if result.status is not ProbeStatus.GREEN]

    def categories(self) -> dict[str, ProbeStatus]:
        """Return the worst status seen in each category, in first-seen order."""
        worst: dict[str, ProbeStatus] = {}
        for result in self.results:
            current = worst.get(result.category, ProbeStatus.GREEN)
            if STATUS_ORDER[result.status] >= STATUS_ORDER[current]:
                worst[result.category] = result.status
        return worst

    def to_dict(self) -> dict[str, Any]:
        """Return the report as printed by ``health --json``."""
        summary = self.summary
        return {
            "summary": {
                "status": summary.status.value,
                "impact": summary.impact.name.lower(),
                "exit_code": summary.exit_code,
                "issues": len(self.issues()),
                "totals": {status.value: summary.totals.get(status, 0) for status in ProbeStatus},
                "categories": {name: status.value for name, status in self.categories().items()},
            },
            "results": [result.to_dict() for result in self.results],
            "metadata": _plain(self.metadata) if self.metadata else {},
        }


STATUS_ORDER: Mapping[ProbeStatus, int] = {
    ProbeStatus.GREEN: 0,
    ProbeStatus.YELLOW: 1,
    ProbeStatus.RED: 2,
}


def aggregate_results(results: Iterable[ProbeResult]) -> DoctorSummary:
    """Compute the overall status and exit code (worst status, worst impact)."""
    totals: dict[ProbeStatus, int] = {
        ProbeStatus.GREEN: 0,
        ProbeStatus.YELLOW: 0,
        ProbeStatus.RED: 0,
    }
    worst_impact = DoctorImpact.OK
    worst_status = ProbeStatus.GREEN
    for result in results:
        totals[result.status] += 1
        if result.impact.value > worst_impact.value:
            worst_impact = result.impact
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status

    return DoctorSummary(
        status=worst_status,
        impact=worst_impact,
        exit_code=worst_impact.value,
        totals=totals,
    )


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Create a full DoctorReport from probe results."""
    summary = aggregate_results(results)
    return DoctorReport(results=tuple(results), summary=summary, metadata=metadata)


def _plain(value: object) -> object:
    """Reduce probe data to JSON types; paths and other objects become strings."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(item) for item in value]
    return str(value)
