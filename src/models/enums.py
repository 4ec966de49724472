from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    __slots__ = ()

    CITIZEN = "citizen"
    OFFICIAL = "official"


class Gender(StrEnum):
    __slots__ = ()

    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class OtpStage(StrEnum):
    """States of the phone verification flow."""

    __slots__ = ()

    PHONE_ENTRY = "phone_entry"
    DISPATCHING = "dispatching"
    AWAITING_CODE = "awaiting_code"
    VERIFYING = "verifying"
    VERIFIED = "verified"


class DispatchStatus(StrEnum):
    __slots__ = ()

    NOT_SENT = "not_sent"
    SENT = "sent"
    VERIFIED = "verified"
    FAILED = "failed"


class DispatchOutcome(StrEnum):
    __slots__ = ()

    SENT = "sent"
    INVALID_FORMAT = "invalid_format"
    DISPATCH_FAILED = "dispatch_failed"
    COOLDOWN_ACTIVE = "cooldown_active"
    WRONG_STAGE = "wrong_stage"
    BUSY = "busy"
    DISCARDED = "discarded"  # flow was reset while the call was in flight


class VerifyOutcome(StrEnum):
    __slots__ = ()

    VERIFIED = "verified"
    INVALID_CODE_FORMAT = "invalid_code_format"
    CODE_REJECTED = "code_rejected"
    TICKET_EXPIRED = "ticket_expired"
    WRONG_STAGE = "wrong_stage"
    BUSY = "busy"
    DISCARDED = "discarded"


class SessionState(StrEnum):
    """Lifecycle of the per-client session store."""

    __slots__ = ()

    UNINITIALIZED = "uninitialized"
    RESTORING = "restoring"
    ANONYMOUS = "anonymous"
    AWAITING_PROFILE = "awaiting_profile"  # backend session present, no profile yet
    AUTHENTICATED = "authenticated"
    ERROR = "error"


class ProfileOutcome(StrEnum):
    __slots__ = ()

    AUTHENTICATED = "authenticated"
    VALIDATION_FAILED = "validation_failed"
    INVALID_CREDENTIALS = "invalid_credentials"
    PERSISTENCE_ERROR = "persistence_error"
    LOCATION_DATA_UNAVAILABLE = "location_data_unavailable"
    NOT_VERIFIED = "not_verified"
    BUSY = "busy"


class LocationLoadState(StrEnum):
    __slots__ = ()

    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
    TIMED_OUT = "timed_out"


class ErrorKind(StrEnum):
    """User-facing error taxonomy shared by every flow."""

    __slots__ = ()

    INVALID_FORMAT = "invalid_format"
    INVALID_CODE_FORMAT = "invalid_code_format"
    DISPATCH_FAILED = "dispatch_failed"
    VERIFY_FAILED = "verify_failed"
    INVALID_CREDENTIALS = "invalid_credentials"
    PERSISTENCE_ERROR = "persistence_error"
    LOAD_TIMEOUT = "load_timeout"
    LOCATION_DATA_UNAVAILABLE = "location_data_unavailable"


class ServiceType(StrEnum):
    """Public service categories a citizen can rate."""

    __slots__ = ()

    HEALTHCARE = "Healthcare"
    EDUCATION = "Education"
    TRANSPORTATION = "Transportation"
    WATER_SUPPLY = "Water Supply"
    ELECTRICITY = "Electricity"
    SANITATION = "Sanitation"
    PUBLIC_SAFETY = "Public Safety"
    INFRASTRUCTURE = "Infrastructure"
    GOVERNMENT_SERVICES = "Government Services"
    OTHER = "Other"


class RatingBand(StrEnum):
    __slots__ = ()

    LOW = "low"        # 1-2
    MEDIUM = "medium"  # 3
    HIGH = "high"      # 4-5


class MessageUrgency(StrEnum):
    __slots__ = ()

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChangeType(StrEnum):
    __slots__ = ()

    INSERT = "INSERT"
    UPDATE = "UPDATE"
