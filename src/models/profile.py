"""Profile-completion form models and results."""

from __future__ import annotations

from pydantic import BaseModel, Field

from src.models.enums import ErrorKind, ProfileOutcome
from src.models.identity import CitizenIdentity, OfficialIdentity


class CitizenProfileForm(BaseModel):
    """Citizen profile input as typed by the user.

    Fields are deliberately loose; ``validate_citizen_form`` reports every
    problem at once instead of failing on the first one.
    """

    name: str = ""
    age: int | str | None = None
    gender: str | None = None
    locality: str | None = None
    district: str | None = None
    mandal: str | None = None
    village: str | None = None


class OfficialCredentials(BaseModel):
    name: str = ""
    department: str = ""
    employee_id: str = ""


class FieldViolation(BaseModel):
    field: str
    message: str


class ProfileResult(BaseModel):
    outcome: ProfileOutcome
    identity: CitizenIdentity | OfficialIdentity | None = None
    violations: list[FieldViolation] = Field(default_factory=list)
    error: ErrorKind | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == ProfileOutcome.AUTHENTICATED
