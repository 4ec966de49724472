"""Per-client session registry.

A client session is the server-side equivalent of one browser tab: its
own OTP machine, session store and profile flow, plus the in-flight
guard for feedback submission.  Clients are identified by the
``X-Client-Id`` header and kept in an LRU bounded by ``capacity``; an
evicted client restores from its persisted local state on next use.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Final

import structlog

from src.models.enums import SessionState
from src.services.cache import CacheManager
from src.services.gateway import Backend
from src.services.location import LocationDirectory
from src.services.otp_session import OtpSessionMachine
from src.services.profile_completion import ProfileCompletionFlow
from src.services.session_store import SessionStore
from src.services.single_flight import SingleFlight

logger = structlog.get_logger(__name__)

CLIENT_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_-]{8,64}")


@dataclass(frozen=True, slots=True)
class ClientOptions:
    """Settings applied to every new client session."""

    code_length: int = 6
    resend_cooldown: float = 30.0
    ticket_ttl: float = 600.0
    country_code: str = "91"
    local_digits: int = 10
    mobile_prefixes: str = "6789"
    users_table: str = "users"
    employees_table: str = "employees"
    restore_timeout: float = 10.0


@dataclass(slots=True)
class ClientSession:
    client_id: str
    otp: OtpSessionMachine
    session: SessionStore
    profile: ProfileCompletionFlow
    feedback_flight: SingleFlight = field(default_factory=lambda: SingleFlight("feedback"))


class ClientRegistry:
    """LRU of live client sessions.

    Parameters
    ----------
    backend:
        Shared backend.
    cache:
        Shared cache; each client gets its own :class:`LocalState` view.
    locations:
        Shared location directory.
    options:
        Per-client settings.
    capacity:
        Maximum live clients before the least recently used is dropped.
    """

    def __init__(
        self,
        backend: Backend,
        cache: CacheManager,
        locations: LocationDirectory,
        *,
        options: ClientOptions | None = None,
        capacity: int = 10_000,
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._locations = locations
        self._options = options or ClientOptions()
        self._capacity = capacity
        self._clients: OrderedDict[str, ClientSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients

    def _create(self, client_id: str) -> ClientSession:
        opts = self._options
        otp = OtpSessionMachine(
            self._backend,
            code_length=opts.code_length,
            resend_cooldown=opts.resend_cooldown,
            ticket_ttl=opts.ticket_ttl,
            country_code=opts.country_code,
            local_digits=opts.local_digits,
            mobile_prefixes=opts.mobile_prefixes,
        )
        session = SessionStore(
            self._backend,
            self._cache.for_client(client_id),
            users_table=opts.users_table,
            restore_timeout=opts.restore_timeout,
        )
        profile = ProfileCompletionFlow(
            otp,
            session,
            self._backend,
            self._locations,
            employees_table=opts.employees_table,
        )
        return ClientSession(client_id=client_id, otp=otp, session=session, profile=profile)

    async def acquire(self, client_id: str) -> ClientSession:
        """Return the client's session, creating and restoring it on first use.

        Raises
        ------
        ValueError
            If *client_id* is malformed.
        """
        if not CLIENT_ID_PATTERN.fullmatch(client_id):
            raise ValueError("X-Client-Id must be 8-64 characters of [A-Za-z0-9_-]")

        client = self._clients.get(client_id)
        if client is None:
            client = self._create(client_id)
            self._clients[client_id] = client
            while len(self._clients) > self._capacity:
                evicted, _ = self._clients.popitem(last=False)
                logger.info("registry.client_evicted", client_id=evicted)
        else:
            self._clients.move_to_end(client_id)

        if client.session.state == SessionState.UNINITIALIZED:
            await client.session.restore()
        return client

    def discard(self, client_id: str) -> None:
        self._clients.pop(client_id, None)
