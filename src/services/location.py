"""Location cascade: district -> mandal -> village.

:class:`LocationCascadeResolver` is a pure view over a set of
:class:`~src.models.location.LocationRecord` triples.  Membership is an
exact join on the reference table; codes are never matched by prefix.

:class:`LocationDirectory` owns loading that set from the row store and
reports an explicit :class:`~src.models.enums.LocationLoadState`, so
callers can tell "not loaded yet" and "failed" apart from "confirmed
empty".

:class:`LocationSelection` is a chosen (district, mandal, village) that
clears children which stop being valid when a parent changes.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

import structlog

from src.models.enums import LocationLoadState
from src.models.location import LocationRecord
from src.services.errors import GatewayError, LocationDataUnavailable
from src.services.gateway import RowStore

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class LocationCascadeResolver:
    """Derives sorted, distinct child sets from the reference triples."""

    __slots__ = ("_index", "_triples")

    def __init__(self, records: Iterable[LocationRecord]) -> None:
        self._index: dict[str, dict[str, set[str]]] = defaultdict(lambda: defaultdict(set))
        self._triples: set[tuple[str, str, str]] = set()
        for rec in records:
            self._index[rec.district][rec.mandal].add(rec.village)
            self._triples.add((rec.district, rec.mandal, rec.village))

    def __len__(self) -> int:
        return len(self._triples)

    def districts(self) -> list[str]:
        return sorted(self._index)

    def mandals_of(self, district: str) -> list[str]:
        mandals = self._index.get(district)
        return sorted(mandals) if mandals else []

    def villages_of(self, district: str, mandal: str) -> list[str]:
        mandals = self._index.get(district)
        if not mandals:
            return []
        villages = mandals.get(mandal)
        return sorted(villages) if villages else []

    def contains(self, district: str, mandal: str | None = None, village: str | None = None) -> bool:
        """True when the given prefix of a triple exists in the reference set."""
        mandals = self._index.get(district)
        if not mandals:
            return False
        if mandal is None:
            return village is None
        villages = mandals.get(mandal)
        if not villages:
            return False
        return village is None or village in villages


# ---------------------------------------------------------------------------
# Directory (loading + state)
# ---------------------------------------------------------------------------


class LocationDirectory:
    """Loads the reference set from the row store and tracks load state.

    Parameters
    ----------
    store:
        Row store holding the locations table.
    table:
        Name of the locations table.
    timeout:
        Seconds before a load is abandoned with ``timed_out``.
    """

    def __init__(self, store: RowStore, *, table: str = "telangana_locations", timeout: float = 15.0) -> None:
        self._store = store
        self._table = table
        self._timeout = timeout
        self._state = LocationLoadState.NOT_LOADED
        self._resolver: LocationCascadeResolver | None = None
        self._lock = asyncio.Lock()
        self.last_error: str | None = None

    @property
    def state(self) -> LocationLoadState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == LocationLoadState.READY

    @property
    def resolver(self) -> LocationCascadeResolver:
        """The loaded resolver.

        Raises
        ------
        LocationDataUnavailable
            If the reference set has not loaded successfully.
        """
        if self._resolver is None or self._state != LocationLoadState.READY:
            raise LocationDataUnavailable(f"Location data is {self._state.value}")
        return self._resolver

    async def load(self, *, force: bool = False) -> LocationLoadState:
        """Fetch the reference set; returns the resulting state.

        Concurrent callers share one load.  A ready directory is not
        reloaded unless *force* is set.
        """
        async with self._lock:
            if self._state == LocationLoadState.READY and not force:
                return self._state

            self._state = LocationLoadState.LOADING
            self.last_error = None
            try:
                async with asyncio.timeout(self._timeout):
                    rows = await self._store.select(
                        self._table,
                        order_by=[("district", False), ("mandal", False), ("village", False)],
                    )
            except TimeoutError:
                self._state = LocationLoadState.TIMED_OUT
                self.last_error = f"Location data did not load within {self._timeout:g}s"
                logger.warning("location.load_timeout", timeout=self._timeout)
                return self._state
            except GatewayError as exc:
                self._state = LocationLoadState.ERROR
                self.last_error = exc.message
                logger.error("location.load_failed", error=exc.message)
                return self._state

            records: list[LocationRecord] = []
            for row in rows:
                try:
                    records.append(LocationRecord.from_row(row))
                except (KeyError, ValueError):
                    logger.warning("location.malformed_row", row=row)

            self._resolver = LocationCascadeResolver(records)
            self._state = LocationLoadState.READY
            logger.info("location.loaded", triples=len(self._resolver), districts=len(self._resolver.districts()))
            return self._state


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class LocationSelection:
    """A (district, mandal, village) choice that stays consistent with the cascade."""

    resolver: LocationCascadeResolver
    district: str | None = None
    mandal: str | None = None
    village: str | None = None

    def choose_district(self, district: str | None) -> None:
        self.district = district or None
        if self.mandal is not None and (
            self.district is None or self.mandal not in self.resolver.mandals_of(self.district)
        ):
            self.mandal = None
        self._revalidate_village()

    def choose_mandal(self, mandal: str | None) -> None:
        self.mandal = mandal or None
        self._revalidate_village()

    def choose_village(self, village: str | None) -> None:
        self.village = village or None

    def _revalidate_village(self) -> None:
        if self.village is None:
            return
        if self.district is None or self.mandal is None:
            self.village = None
        elif self.village not in self.resolver.villages_of(self.district, self.mandal):
            self.village = None

    @property
    def mandal_options(self) -> list[str]:
        return self.resolver.mandals_of(self.district) if self.district else []

    @property
    def village_options(self) -> list[str]:
        if not self.district or not self.mandal:
            return []
        return self.resolver.villages_of(self.district, self.mandal)
