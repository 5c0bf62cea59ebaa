"""
Device authorization ledger (RFC 8628).

    pending --approve--> authorized --poll (ready, once)--> removed
    pending --deny-----> denied
    pending --past expires_at--> expired (checked lazily on every access)

Each authorization is stored once, under its device_code. user_code is a secondary index pointing at
the device_code; approve and deny resolve through it and mutate the canonical record.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Callable, NamedTuple

from grant_server.clock import as_clock
from grant_server.config import DEVICE_CODE_TTL_SECONDS
from grant_server.generators import RandomSource, RandomSourceError, normalize_user_code
from grant_server.locks import ReadWriteLock
from grant_server.scopes import parse_scope

logger = logging.getLogger(__name__)

_USER_CODE_ATTEMPTS = 16


class DeviceState(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    EXPIRED = "expired"


class DeviceErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class DeviceAuthorizationError(Exception):
    def __init__(self, kind: DeviceErrorKind):
        self.kind = kind
        super().__init__(kind.value)


class PollStatus(str, Enum):
    READY = "ready"
    PENDING = "pending"
    DENIED = "denied"
    EXPIRED = "expired"
    CLIENT_MISMATCH = "client_mismatch"
    NOT_FOUND = "not_found"


class PollResult(NamedTuple):
    status: PollStatus
    subject_id: str | None = None
    scopes: frozenset[str] = frozenset()


class DeviceTicket(NamedTuple):
    device_code: str
    user_code: str
    expires_in: int


@dataclass
class DeviceAuthorization:
    device_code: str
    user_code: str
    client_id: str
    scopes: frozenset[str]
    expires_at: float
    state: DeviceState = DeviceState.PENDING
    subject_id: str | None = None


class DeviceAuthorizationLedger:
    def __init__(
        self,
        ttl: float = DEVICE_CODE_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
        random_source: RandomSource | None = None,
    ) -> None:
        self._by_device_code: dict[str, DeviceAuthorization] = {}
        self._device_code_by_user_code: dict[str, str] = {}
        self._lock = ReadWriteLock()
        self._ttl = ttl
        self._clock = as_clock(clock)
        self._random = random_source or RandomSource()

    def request_authorization(
        self, client_id: str, scopes: Iterable[str], ttl: float | None = None
    ) -> DeviceTicket:
        """Start a device flow. Returns (device_code, user_code, expires_in seconds)."""
        ttl = self._ttl if ttl is None else ttl
        device_code = self._random.token()
        with self._lock.write():
            now = self._clock()
            user_code = self._unused_user_code(now)
            while device_code in self._by_device_code:
                device_code = self._random.token()
            self._by_device_code[device_code] = DeviceAuthorization(
                device_code=device_code,
                user_code=user_code,
                client_id=client_id,
                scopes=parse_scope(scopes),
                expires_at=now + ttl,
            )
            self._device_code_by_user_code[user_code] = device_code
        logger.info("Device authorization requested by client_id=%s", client_id)
        return DeviceTicket(device_code, user_code, int(ttl))

    def approve(self, user_code: str, subject_id: str) -> None:
        with self._lock.write():
            record = self._pending_by_user_code(user_code)
            record.state = DeviceState.AUTHORIZED
            record.subject_id = subject_id
        logger.info("Device authorization approved for client_id=%s sub=%s", record.client_id, subject_id)

    def deny(self, user_code: str) -> None:
        with self._lock.write():
            record = self._pending_by_user_code(user_code)
            record.state = DeviceState.DENIED
        logger.info("Device authorization denied for client_id=%s", record.client_id)

    def poll(self, device_code: str, client_id: str) -> PollResult:
        """Report the flow state to the polling device. READY is reported at most once."""
        with self._lock.write():
            record = self._by_device_code.get(device_code)
            if record is None:
                return PollResult(PollStatus.NOT_FOUND)
            if record.expires_at <= self._clock():
                self._expire(record)
                return PollResult(PollStatus.EXPIRED)
            if record.client_id != client_id:
                return PollResult(PollStatus.CLIENT_MISMATCH)
            if record.state is DeviceState.DENIED:
                return PollResult(PollStatus.DENIED)
            if record.state is DeviceState.PENDING:
                return PollResult(PollStatus.PENDING)
            self._remove(record)
            return PollResult(PollStatus.READY, record.subject_id, record.scopes)

    def lookup(self, user_code: str) -> DeviceAuthorization | None:
        """Read-only snapshot for the verification endpoint (client and scopes to show the user)."""
        with self._lock.read():
            device_code = self._device_code_by_user_code.get(normalize_user_code(user_code))
            record = self._by_device_code.get(device_code) if device_code else None
            if record is None or record.expires_at <= self._clock():
                return None
            return DeviceAuthorization(**vars(record))

    def sweep(self, now: float | None = None) -> int:
        if now is None:
            now = self._clock()
        with self._lock.write():
            expired = [r for r in self._by_device_code.values() if r.expires_at < now]
            for record in expired:
                self._remove(record)
        if expired:
            logger.debug("Swept %d expired device authorizations", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._by_device_code)

    # Helpers below run with the write lock held.

    def _unused_user_code(self, now: float) -> str:
        for _ in range(_USER_CODE_ATTEMPTS):
            candidate = self._random.user_code()
            device_code = self._device_code_by_user_code.get(candidate)
            if device_code is None:
                return candidate
            existing = self._by_device_code[device_code]
            if existing.expires_at <= now:
                # Stale holder of the code; drop it so the code can be reused
                self._expire(existing)
                return candidate
        raise RandomSourceError("Could not allocate a unique user code")

    def _pending_by_user_code(self, user_code: str) -> DeviceAuthorization:
        device_code = self._device_code_by_user_code.get(normalize_user_code(user_code))
        record = self._by_device_code.get(device_code) if device_code else None
        if record is None:
            raise DeviceAuthorizationError(DeviceErrorKind.NOT_FOUND)
        if record.expires_at <= self._clock():
            self._expire(record)
            raise DeviceAuthorizationError(DeviceErrorKind.EXPIRED)
        if record.state is not DeviceState.PENDING:
            raise DeviceAuthorizationError(DeviceErrorKind.NOT_FOUND)
        return record

    def _expire(self, record: DeviceAuthorization) -> None:
        record.state = DeviceState.EXPIRED
        self._remove(record)

    def _remove(self, record: DeviceAuthorization) -> None:
        self._by_device_code.pop(record.device_code, None)
        if self._device_code_by_user_code.get(record.user_code) == record.device_code:
            del self._device_code_by_user_code[record.user_code]
