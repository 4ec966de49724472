"""Domain exceptions for the Nagarika Mitra service layer.

Gateway failures are raised as :class:`GatewayError` by the backend
clients and converted at the call site into either a result variant or
one of the narrower exceptions below.  The API layer maps the remaining
exceptions onto HTTP status codes; nothing here is fatal to the process.
"""

from __future__ import annotations

from src.models.enums import ErrorKind


class NagarikaError(Exception):
    """Base class for all service-layer errors."""

    kind: ErrorKind | None = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class GatewayError(NagarikaError):
    """The persistence gateway or OTP provider rejected or failed a call.

    ``status_code`` is the upstream HTTP status when one is known.
    ``retryable`` is True for transport errors and 5xx responses.
    """

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PersistenceError(NagarikaError):
    kind = ErrorKind.PERSISTENCE_ERROR


class LocationDataUnavailable(NagarikaError):
    kind = ErrorKind.LOCATION_DATA_UNAVAILABLE


class OperationInProgress(NagarikaError):
    """A second call of a single-flight operation arrived while one was pending."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} is already in progress")
        self.operation = operation


class InvalidSessionTransition(NagarikaError):
    """The session store cannot perform the requested transition from its current state."""


class FormValidationError(NagarikaError):
    """Form input failed validation; ``violations`` lists every problem found."""

    def __init__(self, violations: list[str]) -> None:
        super().__init__("; ".join(violations))
        self.violations = violations
