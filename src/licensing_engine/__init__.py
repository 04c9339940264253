"""Licensing Engine - license lifecycle and conflict management.

This package governs licenses between brands and the creators who own an
IP asset: proposal, multi-party approval, conflict detection, amendments,
extensions, renewal pricing and termination.
"""

__version__ = "0.1.0"

from licensing_engine.config import EngineConfig
from licensing_engine.errors import (
    ConcurrentModification,
    ConflictDetected,
    Forbidden,
    IneligibleForRenewal,
    InvalidTransition,
    LicensingError,
    NotFound,
    OfferExpired,
    ValidationError,
)
from licensing_engine.lifecycle import LicenseEvent
from licensing_engine.models import (
    Actor,
    ActorRole,
    Decision,
    License,
    LicenseScope,
    LicenseStatus,
    LicenseType,
    PricingStrategy,
)
from licensing_engine.service import LicensingEngine

__all__ = [
    "__version__",
    "Actor",
    "ActorRole",
    "ConcurrentModification",
    "ConflictDetected",
    "Decision",
    "EngineConfig",
    "Forbidden",
    "IneligibleForRenewal",
    "InvalidTransition",
    "License",
    "LicenseEvent",
    "LicenseScope",
    "LicenseStatus",
    "LicenseType",
    "LicensingEngine",
    "LicensingError",
    "NotFound",
    "OfferExpired",
    "PricingStrategy",
    "ValidationError",
]
