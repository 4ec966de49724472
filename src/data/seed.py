"""Reference-data seeding for the in-process backend.

Loads the bundled Telangana location triples and the employee roster
from ``src/data/reference`` and writes them into a
:class:`~src.services.local_backend.LocalBackend`.  Against a Supabase
project these tables are maintained out-of-band and nothing here runs.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from src.models.identity import RosterEntry
from src.models.location import LocationRecord

if TYPE_CHECKING:
    from src.services.local_backend import LocalBackend

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_DATA_DIR: Path = Path(__file__).resolve().parent / "reference"
_LOCATIONS_PATH: Path = _DATA_DIR / "telangana_locations.json"
_EMPLOYEES_PATH: Path = _DATA_DIR / "employees.json"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _read_rows(file_path: Path) -> list[dict]:
    if not file_path.exists():
        raise FileNotFoundError(f"Reference data file not found: {file_path}")
    with file_path.open("r", encoding="utf-8") as f:
        rows = json.load(f)
    if not isinstance(rows, list):
        raise ValueError(f"Expected a JSON array in {file_path}")
    return rows


def load_locations(path: Path | None = None) -> list[LocationRecord]:
    """Load the (district, mandal, village) reference triples.

    Malformed rows are logged and skipped; duplicates are kept as-is
    since the cascade resolver deduplicates.

    Raises
    ------
    FileNotFoundError
        If the JSON file does not exist.
    json.JSONDecodeError
        If the JSON is malformed.
    """
    file_path = path or _LOCATIONS_PATH
    records: list[LocationRecord] = []
    for raw in _read_rows(file_path):
        try:
            records.append(LocationRecord.from_row(raw))
        except (KeyError, ValueError):
            logger.warning("seed.location_parse_error", row=raw, exc_info=True)
    logger.info("seed.loaded_locations", count=len(records), source=str(file_path))
    return records


def load_roster(path: Path | None = None) -> list[RosterEntry]:
    """Load the bundled employee roster."""
    file_path = path or _EMPLOYEES_PATH
    entries: list[RosterEntry] = []
    for raw in _read_rows(file_path):
        try:
            entries.append(RosterEntry.from_row(raw))
        except (KeyError, ValueError):
            logger.warning("seed.roster_parse_error", employee_id=raw.get("employee_id"), exc_info=True)
    logger.info("seed.loaded_roster", count=len(entries), source=str(file_path))
    return entries


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def seed_local_backend(
    backend: LocalBackend,
    *,
    locations_table: str = "telangana_locations",
    employees_table: str = "employees",
    locations_path: Path | None = None,
    employees_path: Path | None = None,
) -> tuple[int, int]:
    """Populate *backend* with the bundled reference tables.

    Parameters
    ----------
    backend:
        The in-process backend to seed.  Rows are written without
        publishing change events.
    locations_table, employees_table:
        Target table names (from settings).
    locations_path, employees_path:
        Optional overrides for the bundled JSON files.

    Returns
    -------
    tuple[int, int]
        Number of location rows and roster rows written.
    """
    locations = load_locations(locations_path)
    roster = load_roster(employees_path)

    backend.seed_table(locations_table, [loc.model_dump() for loc in locations])
    backend.seed_table(employees_table, [entry.model_dump() for entry in roster])

    logger.info("seed.complete", locations=len(locations), employees=len(roster))
    return len(locations), len(roster)
