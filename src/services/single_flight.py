"""At-most-one-in-flight guard for user-triggered async operations.

Every operation that a user can trigger by tapping a button (dispatch
OTP, verify OTP, submit profile, submit feedback) holds a
:class:`SingleFlight` for the duration of its backend call.  A second
call arriving while the first is pending is rejected with
:class:`~src.services.errors.OperationInProgress` and never reaches the
backend.
"""

from __future__ import annotations

import contextlib
from typing import Iterator

from src.services.errors import OperationInProgress


class SingleFlight:
    __slots__ = ("_busy", "_name")

    def __init__(self, name: str) -> None:
        self._name = name
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        if self._busy:
            raise OperationInProgress(self._name)
        self._busy = True
        try:
            yield
        finally:
            self._busy = False
