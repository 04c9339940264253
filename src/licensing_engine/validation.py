"""Input validation run before any transaction opens."""

import re
from datetime import date
from typing import Optional

from licensing_engine.errors import ValidationError
from licensing_engine.models import (
    FULL_SHARE_BPS,
    GLOBAL_TERRITORY,
    MEDIA_CHANNELS,
    PLACEMENTS,
    LicenseScope,
)

_TERRITORY = re.compile(r"^[A-Z]{2}$")


def validate_scope(scope: LicenseScope) -> list[str]:
    """Return problems with a scope, empty if it is well formed."""
    errors = []
    unknown_media = sorted(set(scope.media) - set(MEDIA_CHANNELS))
    if unknown_media:
        errors.append(f"Unknown media channel(s): {', '.join(unknown_media)}")
    unknown_placements = sorted(set(scope.placements) - set(PLACEMENTS))
    if unknown_placements:
        errors.append(f"Unknown placement(s): {', '.join(unknown_placements)}")
    if not scope.territories:
        errors.append("At least one territory is required")
    for territory in scope.territories:
        if territory.upper() != GLOBAL_TERRITORY and not _TERRITORY.match(territory.upper()):
            errors.append(f"Territory {territory!r} is not an ISO country code or GLOBAL")
    if scope.max_cutdown_seconds is not None and scope.max_cutdown_seconds < 0:
        errors.append("max_cutdown_seconds must be non-negative")
    return errors


def validate_terms(
    start_date: Optional[date],
    end_date: Optional[date],
    fee_amount: int,
    rev_share_bps: int,
    scope: LicenseScope,
) -> None:
    """Check the terms of a new or edited license.

    Raises:
        ValidationError: Listing every problem found.
    """
    errors = []
    if start_date is None or end_date is None:
        errors.append("start_date and end_date are required")
    elif end_date <= start_date:
        errors.append("end_date must be after start_date")
    if fee_amount < 0:
        errors.append("fee_amount must be non-negative")
    if not 0 <= rev_share_bps <= FULL_SHARE_BPS:
        errors.append(f"rev_share_bps must be between 0 and {FULL_SHARE_BPS}")
    errors.extend(validate_scope(scope))
    if errors:
        raise ValidationError(errors[0], errors)
