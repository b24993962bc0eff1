"""Jinja2 template rendering for files pushed to fleet nodes."""
from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined
from jinja2 import TemplateError as JinjaTemplateError

BUILTIN_TEMPLATE_PACKAGE = "mongofleet"
BUILTIN_TEMPLATE_PATH = "resources/templates"


class TemplateError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


@dataclass(slots=True, frozen=True)
class RenderedFile:
    """Rendered template content destined for a remote path."""

    template: str
    content: str

    @property
    def checksum(self) -> str:
        """Return the SHA-256 digest of the rendered content."""
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()


class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._env = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader(BUILTIN_TEMPLATE_PACKAGE, BUILTIN_TEMPLATE_PATH))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self._env.get_template(template_name)
            return template.render(**dict(context))
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template {template_name}: {exc}") from exc

    def render(self, template_name: str, context: Mapping[str, object]) -> RenderedFile:
        """Render *template_name* into a :class:`RenderedFile`."""
        return RenderedFile(
            template=template_name,
            content=self.render_to_string(template_name, context),
        )


__all__ = ["RenderedFile", "TemplateEngine", "TemplateError"]
