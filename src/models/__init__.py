from src.models.enums import (
    DispatchOutcome,
    DispatchStatus,
    ErrorKind,
    Gender,
    LocationLoadState,
    MessageUrgency,
    OtpStage,
    ProfileOutcome,
    RatingBand,
    Role,
    ServiceType,
    SessionState,
    VerifyOutcome,
)
from src.models.feedback import (
    BroadcastRequest,
    DistrictSummary,
    FeedbackFilters,
    FeedbackRecord,
    FeedbackSubmission,
    MessageRecord,
)
from src.models.identity import (
    CitizenIdentity,
    Identity,
    OfficialIdentity,
    RosterEntry,
    identity_adapter,
)
from src.models.location import LocationRecord
from src.models.profile import (
    CitizenProfileForm,
    FieldViolation,
    OfficialCredentials,
    ProfileResult,
)
from src.models.verification import (
    AuthSession,
    AuthUser,
    DispatchResult,
    VerificationTicket,
    VerifyResult,
)

__all__ = [
    "AuthSession",
    "AuthUser",
    "BroadcastRequest",
    "CitizenIdentity",
    "CitizenProfileForm",
    "DispatchOutcome",
    "DispatchResult",
    "DispatchStatus",
    "DistrictSummary",
    "ErrorKind",
    "FeedbackFilters",
    "FeedbackRecord",
    "FeedbackSubmission",
    "FieldViolation",
    "Gender",
    "Identity",
    "LocationLoadState",
    "LocationRecord",
    "MessageRecord",
    "MessageUrgency",
    "OfficialCredentials",
    "OfficialIdentity",
    "OtpStage",
    "ProfileOutcome",
    "ProfileResult",
    "RatingBand",
    "Role",
    "RosterEntry",
    "ServiceType",
    "SessionState",
    "VerificationTicket",
    "VerifyOutcome",
    "VerifyResult",
    "identity_adapter",
]
