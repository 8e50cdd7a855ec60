"""Shared subprocess plumbing for the Docker and Compose providers."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

LOGGER = logging.getLogger(__name__)


def run_command(
    args: Sequence[str],
    *,
    error_cls: type[RuntimeError],
    error_prefix: str,
    check: bool = True,
    capture_output: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* and translate failures into *error_cls*.

    ``capture_output=False`` streams output straight to the terminal, which
    is what interactive commands such as ``logs -f`` need.
    """
    LOGGER.debug("exec: %s", " ".join(args))
    try:
        result = subprocess.run(  # noqa: S603, S607 - controlled command execution
            list(args),
            capture_output=capture_output,
            text=True,
            check=False,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise error_cls(f"{error_prefix} timed out after {timeout}s") from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise error_cls(f"{error_prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = ["run_command"]
