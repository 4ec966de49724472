from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class LocationRecord(BaseModel):
    """One (district, mandal, village) triple of the reference set."""

    model_config = {"frozen": True}

    district: str = Field(..., min_length=1)
    mandal: str = Field(..., min_length=1)
    village: str = Field(..., min_length=1)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> LocationRecord:
        return cls(district=row["district"], mandal=row["mandal"], village=row["village"])
