"""Jinja2 template rendering with operator overrides.

Built-in templates ship inside the package under ``resources/templates``.
Operators may shadow any of them by placing a file with the same relative
name under the configured ``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


class TemplateEngine:
    """Render built-in or overridden templates."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("homelabctl", "resources/templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders YAML/config, not HTML
        )
        return cls(environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context* and return the text."""
        try:
            template = self._environment.get_template(name)
            return template.render(**dict(context))
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template {name}: {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        rendered = self.render_to_string(name, context)
        if destination.exists():
            try:
                current = destination.read_text(encoding="utf-8")
            except OSError:
                current = None
            if current == rendered:
                os.chmod(destination, mode)
                return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine", "TemplateRenderError"]
