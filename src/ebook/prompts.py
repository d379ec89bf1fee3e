"""Prompt templates for the ebook generator.

Templates live in src/ebook/templates/*.md.j2 and are loaded once by
PromptRegistry. PromptComposer renders them with Jinja2; the output is
plain Markdown sent to the model as the user message.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from jinja2 import BaseLoader, Environment, TemplateError

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

SYSTEM_PROMPT = (
    "You are an experienced ghostwriter and instructional designer who writes "
    "practical business ebooks for marketing agencies' clients. Follow the "
    "requested output format exactly."
)


class PromptRegistry:
    """Loads and caches the prompt templates."""

    def __init__(self, templates_dir: Optional[Path] = None):
        self.templates_dir = templates_dir or TEMPLATES_DIR
        self._templates: dict[str, str] = {}
        self._load_templates()

    def _load_templates(self) -> None:
        if not self.templates_dir.exists():
            logger.warning(f"Prompt templates directory not found: {self.templates_dir}")
            return

        for template_file in sorted(self.templates_dir.glob("*.md.j2")):
            name = template_file.name[: -len(".md.j2")]  # chapter.md.j2 -> chapter
            self._templates[name] = template_file.read_text(encoding="utf-8")

        logger.debug(f"PromptRegistry: loaded {len(self._templates)} templates")

    def get_template(self, name: str) -> Optional[str]:
        return self._templates.get(name)

    def list_templates(self) -> list[str]:
        return sorted(self._templates)


class PromptComposer:
    """Renders prompt templates with generation parameters.

    Usage:
        composer = PromptComposer()
        prompt = composer.compose("description", title="SEO for Dentists", ...)
    """

    def __init__(self, registry: Optional[PromptRegistry] = None):
        self.registry = registry or PromptRegistry()

        self.env = Environment(
            loader=BaseLoader(),
            autoescape=False,  # Markdown, not HTML
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["join_lines"] = lambda items: "\n".join(f"- {item}" for item in items)
        self.env.filters["numbered"] = lambda items: "\n".join(
            f"{i}. {item}" for i, item in enumerate(items, start=1)
        )

    def compose(self, name: str, **context: Any) -> str:
        """Render template ``name`` with ``context``.

        Raises:
            ValueError: If the template is missing or fails to render
        """
        template_str = self.registry.get_template(name)
        if not template_str:
            raise ValueError(f"Prompt template not found: {name}")

        try:
            rendered = self.env.from_string(template_str).render(**context)
        except TemplateError as e:
            raise ValueError(f"Template rendering error for {name}: {e}") from e

        return rendered.strip()
