"""Run health and validation probes and collect them into a report."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import TYPE_CHECKING

import requests

from ..bootstrap.deployment import stack_compose_file
from ..envfile import read_env
from .models import (
    DoctorImpact,
    DoctorReport,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    build_report,
)

if TYPE_CHECKING:
    from ..cli import RuntimeContext

LOGGER = logging.getLogger(__name__)

THREAD_PREFIX = "homelabctl-health"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _execute(probe: ProbeDefinition, context: ProbeContext) -> ProbeResult:
    """Run one probe; a crash is reported as a red result instead of propagating."""
    started = time.perf_counter()
    try:
        outcome = probe.run(context)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Health check %s crashed", probe.id)
        outcome = ProbeResult(
            id=probe.id,
            category=probe.category,
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Probe '{probe.id}' raised an unexpected error: {exc}",
            remediation="See the homelabctl log for the traceback.",
            data={"exception": repr(exc)},
            warnings=("unhandled-exception",),
        )
    # The definition owns identity; the handler may only report how it went.
    return replace(
        outcome,
        id=probe.id,
        category=probe.category,
        duration_ms=(
            outcome.duration_ms if outcome.duration_ms is not None else _elapsed_ms(started)
        ),
    )


def run_probes(
    context: ProbeContext,
    probes: Sequence[ProbeDefinition],
) -> list[ProbeResult]:
    """Execute *probes* on a bounded pool; results follow the order of *probes*."""
    workers = min(max(1, context.options.max_concurrency), len(probes))
    if workers <= 1:
        return [_execute(probe, context) for probe in probes]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=THREAD_PREFIX) as pool:
        return list(pool.map(lambda probe: _execute(probe, context), probes))


def create_probe_context(
    runtime: RuntimeContext,
    options: ProbeExecutorOptions | None = None,
    *,
    session_factory: Callable[[], requests.Session] | None = None,
) -> ProbeContext:
    """Build a ProbeContext from the CLI runtime context.

    HTTP probes open their own session from *session_factory* (``requests.Session``
    by default) so worker threads never share one.
    """
    config = runtime.config
    env = read_env(config.env_file)
    return ProbeContext(
        config=config,
        env=env,
        docker=runtime.docker,
        compose=runtime.compose,
        compose_file=stack_compose_file(config.project_root, env),
        session_factory=session_factory or requests.Session,
        options=options or ProbeExecutorOptions(),
    )


class DoctorEngine:
    """Runs a probe selection against one homelab and reports on it."""

    def __init__(self, context: ProbeContext) -> None:
        """Store the probe execution context."""
        self._context = context

    @property
    def options(self) -> ProbeExecutorOptions:
        """Return the execution options associated with this engine."""
        return self._context.options

    def run(
        self,
        probes: Sequence[ProbeDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> DoctorReport:
        """Run *probes* and build a report describing the stack they ran against."""
        started = time.perf_counter()
        results = run_probes(self._context, probes)
        env = self._context.env
        run_metadata: dict[str, object] = {
            "duration_ms": _elapsed_ms(started),
            "probe_count": len(results),
            "concurrency": self.options.max_concurrency,
            "compose_file": str(self._context.compose_file),
            "deployment_type": env.get("DEPLOYMENT_TYPE") or "PRIVATE_LOCAL",
            "domain": self._context.domain,
        }
        if metadata:
            run_metadata.update(metadata)
        LOGGER.debug("Ran %d health probes in %sms", len(results), run_metadata["duration_ms"])
        return build_report(results, metadata=run_metadata)
