"""
Jinja2 rendering for customer confirmation emails.

A message named ``<name>`` is made of ``<name>_subject.txt``, ``<name>.html``
and an optional plain-text ``<name>.txt`` under ``templates/notifications``.
"""

from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Union

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from marketplace.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parents[2] / "templates" / "notifications"


class TemplateEngineError(Exception):
    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


class TemplateNotFoundError(TemplateEngineError):
    pass


class TemplateRenderError(TemplateEngineError):
    pass


class TemplateEngine:
    """
    Renders email templates with ``currency`` and ``date`` filters.

    Undefined variables raise, so an outbox payload missing a field fails the
    send and gets retried instead of mailing a half-empty confirmation.
    """

    def __init__(
        self,
        template_dir: Optional[Union[str, Path]] = None,
        enable_autoescape: bool = True,
        currency_symbol: str = "₹",
    ):
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self.currency_symbol = currency_symbol
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]) if enable_autoescape else False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = self._format_currency
        self.env.filters["date"] = _format_date

    def render_email(self, template_name: str, context: dict[str, Any]) -> dict[str, str]:
        """
        Returns:
            ``subject`` and ``html_body``, plus ``text_body`` when a text
            variant exists

        Raises:
            TemplateNotFoundError: If the subject or HTML part is missing
            TemplateRenderError: If a part fails to render
        """
        try:
            rendered = {
                "subject": self._render(f"{template_name}_subject.txt", context).strip(),
                "html_body": self._render(f"{template_name}.html", context),
            }
            try:
                rendered["text_body"] = self._render(f"{template_name}.txt", context)
            except TemplateNotFound:
                pass
        except TemplateNotFound as e:
            logger.error("Email template missing", template_name=template_name, part=e.name)
            raise TemplateNotFoundError(
                f"Email template not found: {template_name}", template_name=template_name
            ) from e
        except TemplateError as e:
            logger.error(
                "Email template failed to render",
                template_name=template_name,
                error=str(e),
            )
            raise TemplateRenderError(
                f"Failed to render email template {template_name}: {e}",
                template_name=template_name,
            ) from e

        return rendered

    def _render(self, path: str, context: dict[str, Any]) -> str:
        return self.env.get_template(path).render(**context)

    def _format_currency(self, value: Union[Decimal, float, str]) -> str:
        return f"{self.currency_symbol}{Decimal(str(value)):,.2f}"


def _format_date(value: Union[str, datetime]) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value.strftime("%B %d, %Y")


@lru_cache
def get_template_engine(template_dir: Optional[Union[str, Path]] = None) -> TemplateEngine:
    return TemplateEngine(template_dir=template_dir)
