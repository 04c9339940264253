"""Output reporters for license dossiers.

This module provides reporters that render a license with its status
history, amendments, extensions and renewal offers.
"""

from licensing_engine.reporters.base import BaseReporter, LicenseDossier
from licensing_engine.reporters.markdown import MarkdownReporter

__all__ = ["BaseReporter", "LicenseDossier", "MarkdownReporter"]
