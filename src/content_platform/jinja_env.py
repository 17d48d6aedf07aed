# -*- coding: utf-8 -*-
"""
Centralized Jinja2 environment for prompt and snippet templates.

Prompts live under ``templates/prompts/``; the client-side tracking snippet
is ``templates/tracking_script.j2``.
"""
import re
import secrets
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template

from .config import settings

# Variables carrying uploaded markup; never interpreted by Jinja2
DOCUMENT_VARS = ["document", "excerpt"]


class CleanTemplate(Template):
    """Template that collapses runs of blank lines in its output."""

    _EXCESS_NEWLINES = re.compile(r"\n{3,}")

    def render(self, *args, **kwargs) -> str:
        output = super().render(*args, **kwargs)
        return self._EXCESS_NEWLINES.sub("\n\n", output).strip()


def create_jinja_env(template_dir: Path | str | None = None) -> Environment:
    """
    Create a configured Jinja2 environment.

    Args:
        template_dir: Path to templates directory. Defaults to settings.TEMPLATES_DIR.

    Returns:
        Configured Jinja2 Environment instance.
    """
    if template_dir is None:
        template_dir = settings.TEMPLATES_DIR

    env = Environment(
        loader=FileSystemLoader(str(template_dir)),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=False,
        undefined=StrictUndefined,
        autoescape=False,  # Prompts and scripts, not HTML pages
    )
    env.template_class = CleanTemplate
    return env


_default_env: Environment | None = None


def get_jinja_env() -> Environment:
    """Get or create the default Jinja2 environment."""
    global _default_env
    if _default_env is None:
        _default_env = create_jinja_env()
    return _default_env


def render_prompt(template_name: str, **context) -> str:
    """
    Render a template with the given context.

    Uploaded markup never goes through the template engine: document
    variables are swapped for per-call placeholders, the template is
    rendered, then all placeholders are substituted in a single pass. Markup
    containing ``{{ value }}`` (Vue, Angular, SCORM players) is left intact,
    and so are its blank lines.

    Args:
        template_name: Path of the template relative to the templates directory
        **context: Variables to pass to the template

    Returns:
        Rendered string
    """
    token = secrets.token_hex(8)
    raw_values: dict[str, str] = {}
    safe_context = {}

    for key, value in context.items():
        if key in DOCUMENT_VARS and isinstance(value, str):
            placeholder = f"@@{token}:{key}@@"
            raw_values[placeholder] = value
            safe_context[key] = placeholder
        else:
            safe_context[key] = value

    rendered = get_jinja_env().get_template(template_name).render(**safe_context)
    if not raw_values:
        return rendered

    # Single pass, so placeholder-like text inside a document is never expanded
    pattern = re.compile("|".join(re.escape(placeholder) for placeholder in raw_values))
    return pattern.sub(lambda m: raw_values[m.group(0)], rendered)


def render_tracking_script(api_base: str | None = None) -> str:
    """Render the tracking ``<script>`` block injected into served documents."""
    if api_base is None:
        api_base = settings.api_base
    return render_prompt("tracking_script.j2", api_base=api_base)
