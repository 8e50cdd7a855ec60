"""Health and validation probe infrastructure."""

from __future__ import annotations

from .engine import DoctorEngine, create_probe_context, run_probes
from .models import (
    PROBE_CATEGORY_VALUES,
    DoctorImpact,
    DoctorReport,
    DoctorSummary,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
)
from .probes import (
    HEALTH_CHECKS,
    access_urls,
    collect_probes,
    collect_validation_probes,
    select_probes,
)

__all__ = [
    "DoctorEngine",
    "DoctorImpact",
    "DoctorReport",
    "DoctorSummary",
    "HEALTH_CHECKS",
    "ProbeCategory",
    "PROBE_CATEGORY_VALUES",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeExecutorOptions",
    "ProbeResult",
    "ProbeStatus",
    "access_urls",
    "aggregate_results",
    "build_report",
    "collect_probes",
    "collect_validation_probes",
    "create_probe_context",
    "run_probes",
    "select_probes",
]
