"""Markdown reporter for license dossiers.

This module provides a reporter that renders a license, its audit trail and
its workflow records as a Markdown document using Jinja2 templates.
"""

from datetime import UTC, datetime
from importlib.resources import files
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, Template

from licensing_engine.models import FULL_SHARE_BPS
from licensing_engine.reporters.base import BaseReporter, LicenseDossier


def money(amount: int) -> str:
    """Format minor units as a major-unit amount, e.g. 473813 -> 4,738.13."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    return f"{sign}{major:,}.{minor:02d}"


def percent_bps(bps: int) -> str:
    return f"{bps * 100 / FULL_SHARE_BPS:g}%"


def _environment(**kwargs) -> Environment:
    env = Environment(autoescape=False, trim_blocks=True, lstrip_blocks=True, **kwargs)
    env.filters["money"] = money
    env.filters["bps"] = percent_bps
    return env


class MarkdownReporter(BaseReporter):
    """Reporter that generates a Markdown license dossier.

    Attributes:
        template: The Jinja2 template to use for rendering.
    """

    def __init__(self, template_path: Optional[Path] = None) -> None:
        """Initialize the Markdown reporter.

        Args:
            template_path: Optional path to a custom Jinja2 template.
                If not provided, uses the default bundled template.
        """
        if template_path:
            env = _environment(loader=FileSystemLoader(template_path.parent))
            self.template = env.get_template(template_path.name)
        else:
            self.template = self._load_default_template()

    def _load_default_template(self) -> Template:
        """Load the default bundled Jinja2 template.

        Returns:
            The default template loaded from package resources.
        """
        template_content = (
            files("licensing_engine.templates")
            .joinpath("license_report.md.j2")
            .read_text(encoding="utf-8")
        )
        return _environment().from_string(template_content)

    def render(self, dossier: LicenseDossier) -> str:
        """Render a dossier to Markdown.

        Args:
            dossier: License and its satellite records.

        Returns:
            Rendered Markdown document as a string.
        """
        return self.template.render(
            license=dossier.license,
            history=dossier.history,
            amendments=dossier.amendments,
            extensions=dossier.extensions,
            offers=dossier.offers,
            generated_at=datetime.now(UTC),
        )

    @property
    def format_name(self) -> str:
        return "markdown"

    @property
    def default_extension(self) -> str:
        return ".md"
