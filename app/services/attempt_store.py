"""Shared storage of login attempt history, keyed by IP or account.

Two implementations live here. ``SqlAttemptStore`` is the one to deploy: every
attempt is its own row, so concurrent failures from many worker processes can
never overwrite each other, and lockouts are applied with a compare-and-set on
the key's lockout level. ``MemoryAttemptStore`` keeps state in the current
process only and is correct for a single-process deployment (or tests); run
behind several workers it lets an attacker spread attempts across processes.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from bisect import insort
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import get_sessionmaker
from app.models.login_attempt import LoginAttempt
from app.models.login_lockout import LoginLockout
from app.utils.security import hash_identifier
from app.utils.time import as_utc, seconds_until

logger = structlog.get_logger(__name__)

UNKNOWN_IP = "unknown"


class StoreUnavailableError(Exception):
    pass


class AttemptScope(str, Enum):
    IP = "ip"
    ACCOUNT = "account"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AttemptKey:
    scope: AttemptScope
    value: str

    @classmethod
    def ip(cls, address: str | None) -> AttemptKey:
        return cls(AttemptScope.IP, (address or "").strip() or UNKNOWN_IP)

    @classmethod
    def account(cls, email: str) -> AttemptKey:
        return cls(AttemptScope.ACCOUNT, email.strip().lower())

    def storage_id(self, salt: str | None = None) -> str:
        if salt:
            return f"{self.scope.value}:{hash_identifier(salt, self.value)}"
        return str(self)

    def __str__(self) -> str:
        return f"{self.scope.value}:{self.value}"


@dataclass(frozen=True)
class AttemptWindow:
    """Attempt history of one key as seen at a single moment.

    ``events`` only holds attempts inside the sliding window, oldest first.
    """

    events: tuple[tuple[datetime, AttemptOutcome], ...] = ()
    lockout_level: int = 0
    locked_at: datetime | None = None
    locked_until: datetime | None = None

    @property
    def consecutive_failures(self) -> int:
        count = 0
        for _, outcome in reversed(self.events):
            if outcome is AttemptOutcome.SUCCESS:
                break
            count += 1
        return count

    @property
    def unlocked_failures(self) -> int:
        """Consecutive failures newer than the start of the latest lockout."""
        if self.locked_at is None:
            return self.consecutive_failures
        count = 0
        for attempted_at, outcome in reversed(self.events):
            if outcome is AttemptOutcome.SUCCESS or attempted_at <= self.locked_at:
                break
            count += 1
        return count

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def retry_after_seconds(self, now: datetime) -> int:
        if not self.is_locked(now):
            return 0
        return seconds_until(self.locked_until, now)


class AttemptStore(ABC):
    def __init__(
        self,
        *,
        window: timedelta,
        salt: str | None = None,
        scope_windows: Mapping[AttemptScope, timedelta] | None = None,
    ) -> None:
        self.window = window
        self.salt = salt
        self.scope_windows = dict(scope_windows or {})

    def storage_id(self, key: AttemptKey) -> str:
        return key.storage_id(self.salt)

    def window_for(self, key: AttemptKey) -> timedelta:
        return self.scope_windows.get(key.scope, self.window)

    @abstractmethod
    async def configured(self) -> bool:
        """False when the store cannot be used; callers must then fail closed."""

    @abstractmethod
    async def get(self, key: AttemptKey, now: datetime) -> AttemptWindow:
        ...

    @abstractmethod
    async def append(
        self, key: AttemptKey, timestamp: datetime, outcome: AttemptOutcome
    ) -> AttemptWindow:
        """Record one attempt and return the key's window including it.

        A success also resets the key's lockout level.
        """

    @abstractmethod
    async def set_lockout(
        self,
        key: AttemptKey,
        *,
        locked_at: datetime,
        until: datetime,
        expected_level: int,
        level: int,
    ) -> bool:
        """Lock the key unless its lockout level moved away from ``expected_level``."""

    @abstractmethod
    async def clear(self, key: AttemptKey) -> None:
        ...


@dataclass
class _KeyState:
    events: list[tuple[datetime, AttemptOutcome]] = field(default_factory=list)
    lockout_level: int = 0
    locked_at: datetime | None = None
    locked_until: datetime | None = None


class MemoryAttemptStore(AttemptStore):
    """Process-local store. Only valid when a single process serves logins."""

    def __init__(
        self,
        *,
        window: timedelta,
        salt: str | None = None,
        scope_windows: Mapping[AttemptScope, timedelta] | None = None,
    ) -> None:
        super().__init__(window=window, salt=salt, scope_windows=scope_windows)
        self._states: dict[str, _KeyState] = {}
        self._lock = threading.Lock()

    async def configured(self) -> bool:
        return True

    async def get(self, key: AttemptKey, now: datetime) -> AttemptWindow:
        with self._lock:
            state = self._states.get(self.storage_id(key))
            if state is None:
                return AttemptWindow()
            return self._snapshot(state, now, self.window_for(key))

    async def append(
        self, key: AttemptKey, timestamp: datetime, outcome: AttemptOutcome
    ) -> AttemptWindow:
        timestamp = as_utc(timestamp)
        window = self.window_for(key)
        with self._lock:
            state = self._states.setdefault(self.storage_id(key), _KeyState())
            cutoff = timestamp - window
            state.events = [event for event in state.events if event[0] >= cutoff]
            insort(state.events, (timestamp, outcome))
            if outcome is AttemptOutcome.SUCCESS:
                state.lockout_level = 0
                state.locked_at = None
                state.locked_until = None
            return self._snapshot(state, timestamp, window)

    async def set_lockout(
        self,
        key: AttemptKey,
        *,
        locked_at: datetime,
        until: datetime,
        expected_level: int,
        level: int,
    ) -> bool:
        with self._lock:
            state = self._states.setdefault(self.storage_id(key), _KeyState())
            if state.lockout_level != expected_level:
                return False
            state.lockout_level = level
            state.locked_at = as_utc(locked_at)
            state.locked_until = as_utc(until)
            return True

    async def clear(self, key: AttemptKey) -> None:
        with self._lock:
            self._states.pop(self.storage_id(key), None)

    def _snapshot(self, state: _KeyState, now: datetime, window: timedelta) -> AttemptWindow:
        cutoff = now - window
        return AttemptWindow(
            events=tuple(event for event in state.events if event[0] >= cutoff),
            lockout_level=state.lockout_level,
            locked_at=state.locked_at,
            locked_until=state.locked_until,
        )


class SqlAttemptStore(AttemptStore):
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession] | None,
        *,
        window: timedelta,
        salt: str | None = None,
        scope_windows: Mapping[AttemptScope, timedelta] | None = None,
    ) -> None:
        super().__init__(window=window, salt=salt, scope_windows=scope_windows)
        self._sessionmaker = sessionmaker

    async def configured(self) -> bool:
        if self._sessionmaker is None:
            return False
        try:
            async with self._transaction() as session:
                await session.execute(select(1))
        except StoreUnavailableError as exc:
            logger.error("attempt_store_unavailable", stage="probe", error=str(exc))
            return False
        return True

    async def get(self, key: AttemptKey, now: datetime) -> AttemptWindow:
        async with self._transaction() as session:
            return await self._load(
                session, self.storage_id(key), as_utc(now), self.window_for(key)
            )

    async def append(
        self, key: AttemptKey, timestamp: datetime, outcome: AttemptOutcome
    ) -> AttemptWindow:
        storage_id = self.storage_id(key)
        timestamp = as_utc(timestamp)
        window = self.window_for(key)
        async with self._transaction() as session:
            # The key's lockout row is its mutex: appends to one key run one
            # at a time, so each re-read sees every earlier committed attempt.
            await self._ensure_lockout_row(session, storage_id)
            await session.execute(
                select(LoginLockout.attempt_key)
                .where(LoginLockout.attempt_key == storage_id)
                .with_for_update()
            )
            session.add(
                LoginAttempt(
                    attempt_key=storage_id,
                    success=outcome is AttemptOutcome.SUCCESS,
                    attempted_at=timestamp,
                )
            )
            await session.execute(
                delete(LoginAttempt).where(
                    LoginAttempt.attempt_key == storage_id,
                    LoginAttempt.attempted_at < timestamp - window,
                )
            )
            if outcome is AttemptOutcome.SUCCESS:
                await session.execute(
                    update(LoginLockout)
                    .where(LoginLockout.attempt_key == storage_id)
                    .values(lockout_level=0, locked_at=None, locked_until=None)
                    .execution_options(synchronize_session=False)
                )
            await session.flush()
            return await self._load(session, storage_id, timestamp, window)

    async def set_lockout(
        self,
        key: AttemptKey,
        *,
        locked_at: datetime,
        until: datetime,
        expected_level: int,
        level: int,
    ) -> bool:
        storage_id = self.storage_id(key)
        async with self._transaction() as session:
            await self._ensure_lockout_row(session, storage_id)
            result = await session.execute(
                update(LoginLockout)
                .where(
                    LoginLockout.attempt_key == storage_id,
                    LoginLockout.lockout_level == expected_level,
                )
                .values(
                    lockout_level=level,
                    locked_at=as_utc(locked_at),
                    locked_until=as_utc(until),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def clear(self, key: AttemptKey) -> None:
        storage_id = self.storage_id(key)
        async with self._transaction() as session:
            await session.execute(
                delete(LoginAttempt).where(LoginAttempt.attempt_key == storage_id)
            )
            await session.execute(
                delete(LoginLockout).where(LoginLockout.attempt_key == storage_id)
            )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise StoreUnavailableError("DATABASE_URL is not configured")
        try:
            async with self._sessionmaker() as session, session.begin():
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def _load(
        self, session: AsyncSession, storage_id: str, now: datetime, window: timedelta
    ) -> AttemptWindow:
        result = await session.execute(
            select(LoginAttempt.attempted_at, LoginAttempt.success)
            .where(
                LoginAttempt.attempt_key == storage_id,
                LoginAttempt.attempted_at >= now - window,
            )
            .order_by(LoginAttempt.attempted_at, LoginAttempt.id)
        )
        events = tuple(
            (
                as_utc(attempted_at),
                AttemptOutcome.SUCCESS if success else AttemptOutcome.FAILURE,
            )
            for attempted_at, success in result.all()
        )
        lockout = (
            await session.execute(
                select(LoginLockout).where(LoginLockout.attempt_key == storage_id)
            )
        ).scalars().first()
        if lockout is None:
            return AttemptWindow(events=events)
        return AttemptWindow(
            events=events,
            lockout_level=lockout.lockout_level or 0,
            locked_at=as_utc(lockout.locked_at),
            locked_until=as_utc(lockout.locked_until),
        )

    async def _ensure_lockout_row(self, session: AsyncSession, storage_id: str) -> None:
        values = {"attempt_key": storage_id, "lockout_level": 0}
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            statement = pg_insert(LoginLockout).values(**values)
        elif dialect == "sqlite":
            statement = sqlite_insert(LoginLockout).values(**values)
        else:
            raise StoreUnavailableError(f"Unsupported database dialect: {dialect}")
        await session.execute(
            statement.on_conflict_do_nothing(index_elements=["attempt_key"])
        )


def build_attempt_store(
    scope_windows: Mapping[AttemptScope, timedelta] | None = None,
) -> AttemptStore:
    window = timedelta(seconds=settings.LOGIN_WINDOW_SEC)
    backend = settings.ATTEMPT_STORE_BACKEND.strip().lower()
    if backend == "memory":
        logger.warning("attempt_store_in_memory", note="single-process deployments only")
        return MemoryAttemptStore(
            window=window, salt=settings.ATTEMPT_KEY_SALT, scope_windows=scope_windows
        )
    return SqlAttemptStore(
        get_sessionmaker(),
        window=window,
        salt=settings.ATTEMPT_KEY_SALT,
        scope_windows=scope_windows,
    )
