"""Email template rendering (Jinja2, HTML autoescape, strict undefined)."""

import logging
from pathlib import Path
from typing import Any, Optional

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
    select_autoescape,
)

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


class EmailRenderError(Exception):
    """Raised when an email template cannot be rendered."""

    pass


class EmailRenderer:
    """Renders ``<name>.html`` / ``<name>.txt`` templates from the templates directory."""

    def __init__(self, templates_dir: Optional[Path] = None):
        self._env = Environment(
            loader=FileSystemLoader(str(templates_dir or TEMPLATES_DIR)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, **context: Any) -> tuple[str, Optional[str]]:
        """Render the HTML body and, when a ``.txt`` sibling exists, the text body.

        Returns:
            (html, text or None)

        Raises:
            EmailRenderError: If the template is missing or a variable is undefined
        """
        try:
            html = self._env.get_template(f"{template_name}.html").render(**context)
        except TemplateNotFound:
            raise EmailRenderError(f"Unknown email template: {template_name}")
        except (UndefinedError, TemplateSyntaxError) as e:
            raise EmailRenderError(f"Error rendering email template '{template_name}': {e}")

        try:
            text = self._env.get_template(f"{template_name}.txt").render(**context)
        except TemplateNotFound:
            text = None
        except (UndefinedError, TemplateSyntaxError) as e:
            raise EmailRenderError(f"Error rendering email template '{template_name}': {e}")

        logger.debug("email.template.rendered", extra={"template": template_name})
        return html, text


_renderer: Optional[EmailRenderer] = None


def get_email_renderer() -> EmailRenderer:
    global _renderer
    if _renderer is None:
        _renderer = EmailRenderer()
    return _renderer
