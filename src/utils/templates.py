"""
Jinja2 template loader for ticket text.

Ticket descriptions live in src/templates/ as .jinja2 files, never
hardcoded in Python. Use render_template() to render one with variables.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

# src/utils/templates.py → src/templates/
_TEMPLATES_DIR = Path(__file__).parent.parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATES_DIR)),
    undefined=StrictUndefined,   # raise on undefined variables instead of rendering ""
    trim_blocks=True,
    lstrip_blocks=True,
    autoescape=False,            # plain-text ticket bodies
)


def render_template(name: str, **kwargs: object) -> str:
    """Render a template from src/templates/.

    Args:
        name: Template filename, e.g. "ticket_description.jinja2"
        **kwargs: Variables passed into the template.

    Raises:
        jinja2.TemplateNotFound: If the template file doesn't exist.
        jinja2.UndefinedError: If the template references a variable not in kwargs.
    """
    return _env.get_template(name).render(**kwargs).strip()
