"""Base interface for output reporters.

Reporters generate formatted output (Markdown, HTML, JSON, etc.) from a
license dossier.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from licensing_engine.models import (
    Amendment,
    Extension,
    License,
    RenewalOffer,
    StatusHistoryEntry,
)


@dataclass
class LicenseDossier:
    """Everything known about one license, gathered for reporting."""

    license: License
    history: list[StatusHistoryEntry] = field(default_factory=list)
    amendments: list[Amendment] = field(default_factory=list)
    extensions: list[Extension] = field(default_factory=list)
    offers: list[RenewalOffer] = field(default_factory=list)


class BaseReporter(ABC):
    """Abstract base class for output reporters."""

    @abstractmethod
    def render(self, dossier: LicenseDossier) -> str:
        """Render a dossier to formatted output.

        Args:
            dossier: License and its satellite records.

        Returns:
            Rendered output as a string.
        """
        ...

    def write(self, dossier: LicenseDossier, output_path: Path) -> None:
        """Render and write output to a file.

        Args:
            dossier: License and its satellite records.
            output_path: Path to write the output file.
        """
        content = self.render(dossier)
        output_path.write_text(content, encoding="utf-8")

    @property
    @abstractmethod
    def format_name(self) -> str:
        """Return the output format name, like "markdown"."""
        ...

    @property
    @abstractmethod
    def default_extension(self) -> str:
        """Return the default file extension, like ".md"."""
        ...
