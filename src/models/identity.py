"""Identity models for authenticated principals.

An :data:`Identity` is a tagged union of :class:`CitizenIdentity` and
:class:`OfficialIdentity`, discriminated on ``role``.  Both variants are
frozen: once a principal has been promoted into a session its role and
profile fields do not change for the lifetime of that session.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter

from src.models.enums import Gender

_PHONE_PATTERN = r"^\+\d{6,15}$"


class CitizenIdentity(BaseModel):
    """A citizen who has completed the profile form.

    ``district`` / ``mandal`` / ``village`` are codes from the location
    reference set and are copied onto every feedback the citizen submits.
    """

    model_config = {"frozen": True}

    role: Literal["citizen"] = "citizen"
    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = Field(..., min_length=1, max_length=200)
    age: int = Field(..., ge=1, le=120)
    gender: Gender | None = None
    phone_number: str = Field(..., pattern=_PHONE_PATTERN)
    locality: str | None = None
    district: str = Field(..., min_length=1)
    mandal: str = Field(..., min_length=1)
    village: str = Field(..., min_length=1)
    auth_user_id: str | None = None

    def to_row(self) -> dict[str, Any]:
        """Columns for the ``users`` table (``id`` is assigned by the store)."""
        now = datetime.now(UTC).isoformat()
        return {
            "name": self.name,
            "age": self.age,
            "gender": self.gender.value if self.gender else None,
            "phone_number": self.phone_number,
            "locality": self.locality,
            "district": self.district,
            "mandal": self.mandal,
            "village": self.village,
            "role": self.role,
            "auth_user_id": self.auth_user_id,
            "created_at": now,
            "updated_at": now,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CitizenIdentity:
        return cls(
            id=str(row["id"]),
            name=row["name"],
            age=row["age"],
            gender=row.get("gender") or None,
            phone_number=row["phone_number"],
            locality=row.get("locality"),
            district=row["district"],
            mandal=row["mandal"],
            village=row["village"],
            auth_user_id=row.get("auth_user_id"),
        )


class OfficialIdentity(BaseModel):
    """An official admitted through the employee roster.

    Officials are provisioned out-of-band; no row is ever written for
    them by this service.
    """

    model_config = {"frozen": True}

    role: Literal["official"] = "official"
    id: str
    name: str = Field(..., min_length=1)
    department: str = Field(..., min_length=1)
    employee_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., pattern=_PHONE_PATTERN)
    district: str | None = None
    mandal: str | None = None
    village: str | None = None


Identity = Annotated[CitizenIdentity | OfficialIdentity, Field(discriminator="role")]

identity_adapter: TypeAdapter[CitizenIdentity | OfficialIdentity] = TypeAdapter(Identity)


class RosterEntry(BaseModel):
    """A row of the externally maintained ``employees`` roster."""

    model_config = {"frozen": True}

    id: str | None = None
    name: str
    department: str
    employee_id: str
    phone_number: str | None = None
    district: str | None = None
    mandal: str | None = None
    village: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RosterEntry:
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            name=row["name"],
            department=row["department"],
            employee_id=row["employee_id"],
            phone_number=row.get("phone_number"),
            district=row.get("district"),
            mandal=row.get("mandal"),
            village=row.get("village"),
        )

    def to_identity(self, phone_number: str) -> OfficialIdentity:
        """Synthesize the session identity for this roster entry."""
        return OfficialIdentity(
            id=f"official_{self.id or self.employee_id}",
            name=self.name,
            department=self.department,
            employee_id=self.employee_id,
            phone_number=phone_number,
            district=self.district,
            mandal=self.mandal,
            village=self.village,
        )
