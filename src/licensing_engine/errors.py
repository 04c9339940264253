"""Typed errors raised by the licensing engine.

Every operation either returns the updated entity or raises one of these.
Callers can catch LicensingError to handle them uniformly.
"""

from typing import Optional

from licensing_engine.models import Conflict


class LicensingError(Exception):
    """Base class for all engine errors."""


class ValidationError(LicensingError):
    """Malformed input. Raised before any transaction opens.

    Attributes:
        errors: Individual validation messages.
    """

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class NotFound(LicensingError):
    """Unknown license, amendment, extension or offer id."""


class Forbidden(LicensingError):
    """The actor lacks the role or ownership the operation requires."""


class InvalidTransition(LicensingError):
    """The requested status change is not in the legal table."""


class ConflictDetected(LicensingError):
    """The conflict detector returned hard-blocking results.

    Attributes:
        conflicts: The full list, so callers can render detail.
    """

    def __init__(self, conflicts: list[Conflict], message: Optional[str] = None) -> None:
        if message is None:
            ids = ", ".join(sorted({c.license_id for c in conflicts}))
            message = f"License conflicts detected with: {ids}"
        super().__init__(message)
        self.conflicts = conflicts


class OfferExpired(LicensingError):
    """A renewal offer was accepted after its window or was already consumed."""


class IneligibleForRenewal(LicensingError):
    """The eligibility check failed.

    Attributes:
        reasons: Why the license cannot be renewed.
    """

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("License not eligible for renewal: " + "; ".join(reasons))
        self.reasons = reasons


class ConcurrentModification(LicensingError):
    """Retries were exhausted because of contention on the same license."""
