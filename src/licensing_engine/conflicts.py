"""Conflict detection between a proposed grant and existing licenses.

Every rule is symmetric: checking A against B yields a conflict exactly when
checking B against A would. The detector reports every matching reason and
leaves the blocking decision to the caller (see
ConflictCheckResult.blocking()).
"""

import logging
from datetime import date
from typing import Optional

from licensing_engine.models import (
    CANDIDATE_STATUSES,
    GLOBAL_TERRITORY,
    OCCUPYING_STATUSES,
    Conflict,
    ConflictCheckResult,
    ConflictPreview,
    ConflictReason,
    License,
    LicenseScope,
    LicenseType,
)
from licensing_engine.store import StoreSession

logger = logging.getLogger(__name__)


def territories_intersect(a: list[str], b: list[str]) -> bool:
    """GLOBAL intersects any non-empty territory set."""
    if not a or not b:
        return False
    left = {t.upper() for t in a}
    right = {t.upper() for t in b}
    if GLOBAL_TERRITORY in left or GLOBAL_TERRITORY in right:
        return True
    return bool(left & right)


def _categories_match(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return True
    return a.strip().lower() == b.strip().lower()


def _blocks(blocker: LicenseScope, brand_id: Optional[str], other: LicenseScope) -> bool:
    return (
        brand_id is not None
        and brand_id in blocker.blocked_competitors
        and _categories_match(blocker.exclusivity_category, other.exclusivity_category)
    )


def _same_usage(a: LicenseScope, b: LicenseScope) -> bool:
    return set(a.media) == set(b.media) and set(a.placements) == set(b.placements)


def evaluate(
    license_type: LicenseType,
    scope: LicenseScope,
    brand_id: Optional[str],
    candidate: License,
) -> list[Conflict]:
    """Return every reason the request collides with one overlapping candidate.

    The caller has already established that the date intervals intersect.
    """
    reasons = []
    types = {license_type, candidate.license_type}

    if LicenseType.EXCLUSIVE in types:
        reasons.append(
            (
                ConflictReason.EXCLUSIVE_OVERLAP,
                f"Exclusive license {candidate.id} overlaps "
                f"{candidate.start_date} to {candidate.end_date}",
            )
        )

    if LicenseType.EXCLUSIVE_TERRITORY in types and territories_intersect(
        scope.territories, candidate.scope.territories
    ):
        shared = sorted(
            {t.upper() for t in scope.territories} & {t.upper() for t in candidate.scope.territories}
        ) or [GLOBAL_TERRITORY]
        reasons.append(
            (
                ConflictReason.TERRITORY_OVERLAP,
                f"Territory-exclusive overlap with {candidate.id} in {', '.join(shared)}",
            )
        )

    if brand_id != candidate.brand_id and (
        _blocks(candidate.scope, brand_id, scope)
        or _blocks(scope, candidate.brand_id, candidate.scope)
    ):
        category = scope.exclusivity_category or candidate.scope.exclusivity_category or "any"
        reasons.append(
            (
                ConflictReason.COMPETITOR_BLOCKED,
                f"Competitor block between {brand_id} and {candidate.brand_id} "
                f"in category {category}",
            )
        )

    if types == {LicenseType.NON_EXCLUSIVE} and _same_usage(scope, candidate.scope):
        reasons.append(
            (
                ConflictReason.DATE_OVERLAP,
                f"Non-exclusive license {candidate.id} uses the same media and placements",
            )
        )

    return [
        Conflict(
            license_id=candidate.id,
            reason=reason,
            details=details,
            brand_id=candidate.brand_id,
            license_type=candidate.license_type,
            status=candidate.status,
            start_date=candidate.start_date,
            end_date=candidate.end_date,
        )
        for reason, details in reasons
    ]


class ConflictDetector:
    """Runs conflict checks against the licenses visible to a store session.

    Results are never cached. Callers that gate a write pass the session of
    that write's transaction.
    """

    def check(
        self,
        session: StoreSession,
        asset_id: str,
        start: date,
        end: date,
        license_type: LicenseType,
        scope: LicenseScope,
        brand_id: Optional[str] = None,
        exclude_license_id: Optional[str] = None,
    ) -> ConflictCheckResult:
        """Check a proposed grant against every candidate on the asset.

        Args:
            session: Open store session.
            asset_id: IP asset the grant covers.
            start: Inclusive start of the proposed interval.
            end: Exclusive end of the proposed interval.
            license_type: Type of the proposed grant.
            scope: Scope of the proposed grant.
            brand_id: Requesting brand, for competitor blocks.
            exclude_license_id: License being re-checked against others.

        Returns:
            All conflicts, ordered by candidate start date.
        """
        result = ConflictCheckResult()
        candidates = session.licenses_for_asset(
            asset_id, CANDIDATE_STATUSES, exclude_id=exclude_license_id
        )
        for candidate in candidates:
            if not candidate.overlaps(start, end):
                continue
            found = evaluate(license_type, scope, brand_id, candidate)
            logger.debug(
                "Candidate %s (%s, %s): %s",
                candidate.id,
                candidate.license_type.value,
                candidate.status.value,
                [c.reason.value for c in found] or "clear",
            )
            result.conflicts.extend(found)

        if result.has_conflicts:
            logger.debug(
                "Asset %s [%s, %s): %d conflict(s), %d blocking",
                asset_id,
                start,
                end,
                len(result.conflicts),
                len(result.blocking()),
            )
        return result

    def check_license(self, session: StoreSession, lic: License) -> ConflictCheckResult:
        """Re-check an existing license against everything else on its asset."""
        return self.check(
            session,
            lic.ip_asset_id,
            lic.start_date,
            lic.end_date,
            lic.license_type,
            lic.scope,
            brand_id=lic.brand_id,
            exclude_license_id=lic.id,
        )

    def preview(self, session: StoreSession, asset_id: str, as_of: date) -> ConflictPreview:
        """Summarize what the asset already has committed from `as_of` on."""
        occupying = [
            lic
            for lic in session.licenses_for_asset(asset_id, OCCUPYING_STATUSES)
            if lic.end_date > as_of
        ]
        exclusive = [lic for lic in occupying if lic.license_type == LicenseType.EXCLUSIVE]
        territorial = [lic for lic in occupying if lic.is_exclusive]

        blocked_media = sorted({m for lic in exclusive for m in lic.scope.media})
        territories = sorted({t.upper() for lic in territorial for t in lic.scope.territories})
        suggested = max((lic.end_date for lic in exclusive), default=as_of)

        return ConflictPreview(
            ip_asset_id=asset_id,
            occupying_licenses=len(occupying),
            exclusive_licenses=len(exclusive),
            blocked_media=blocked_media,
            territories_in_use=territories,
            suggested_start_date=max(suggested, as_of),
        )
