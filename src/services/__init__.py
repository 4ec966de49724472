"""Nagarika Mitra service layer -- backend gateway, sessions, flows and feature services.

Only the leaf modules are exported here; the flows and the registry are
imported from their own modules.
"""

from __future__ import annotations

from src.services.cache import CacheManager, InMemoryCacheBackend, LocalState, RedisCacheBackend
from src.services.errors import (
    FormValidationError,
    GatewayError,
    InvalidSessionTransition,
    LocationDataUnavailable,
    NagarikaError,
    OperationInProgress,
    PersistenceError,
)
from src.services.realtime import ChangeEvent, ChangeFeed, Subscription
from src.services.single_flight import SingleFlight

__all__ = [
    "CacheManager",
    "ChangeEvent",
    "ChangeFeed",
    "FormValidationError",
    "GatewayError",
    "InMemoryCacheBackend",
    "InvalidSessionTransition",
    "LocalState",
    "LocationDataUnavailable",
    "NagarikaError",
    "OperationInProgress",
    "PersistenceError",
    "RedisCacheBackend",
    "SingleFlight",
    "Subscription",
]
