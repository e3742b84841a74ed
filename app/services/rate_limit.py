from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from app.core.config import settings
from app.services.attempt_store import (
    AttemptKey,
    AttemptOutcome,
    AttemptScope,
    AttemptStore,
    AttemptWindow,
)
from app.utils.time import seconds_until, utc_now

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

BLOCK_REASONS = {
    AttemptScope.IP: "ip_blocked",
    AttemptScope.ACCOUNT: "account_locked",
}


@dataclass(frozen=True)
class LoginPolicy:
    window_seconds: int = 600
    account_max_failures: int = 5
    ip_max_failures: int = 10
    lockout_base_seconds: int = 900
    lockout_factor: float = 2.0
    lockout_max_seconds: int = 86400
    base_delay_ms: int = 250
    max_delay_ms: int = 5000
    ip_window_seconds: int | None = None
    account_window_seconds: int | None = None
    ip_lockout_base_seconds: int | None = None
    account_lockout_base_seconds: int | None = None

    @classmethod
    def from_settings(cls) -> LoginPolicy:
        return cls(
            window_seconds=settings.LOGIN_WINDOW_SEC,
            account_max_failures=settings.LOGIN_ACCOUNT_MAX_FAILURES,
            ip_max_failures=settings.LOGIN_IP_MAX_FAILURES,
            lockout_base_seconds=settings.LOGIN_LOCKOUT_BASE_SEC,
            lockout_factor=settings.LOGIN_LOCKOUT_FACTOR,
            lockout_max_seconds=settings.LOGIN_LOCKOUT_MAX_SEC,
            base_delay_ms=settings.LOGIN_BASE_DELAY_MS,
            max_delay_ms=settings.LOGIN_MAX_DELAY_MS,
            ip_window_seconds=settings.LOGIN_IP_WINDOW_SEC,
            account_window_seconds=settings.LOGIN_ACCOUNT_WINDOW_SEC,
            ip_lockout_base_seconds=settings.LOGIN_IP_LOCKOUT_BASE_SEC,
            account_lockout_base_seconds=settings.LOGIN_ACCOUNT_LOCKOUT_BASE_SEC,
        )

    @property
    def window(self) -> timedelta:
        """Longest sliding window of the two scopes."""
        return max(self.scope_windows.values())

    @property
    def scope_windows(self) -> dict[AttemptScope, timedelta]:
        return {scope: self.window_for(scope) for scope in AttemptScope}

    def window_for(self, scope: AttemptScope) -> timedelta:
        if scope is AttemptScope.IP:
            seconds = self.ip_window_seconds
        else:
            seconds = self.account_window_seconds
        return timedelta(seconds=self.window_seconds if seconds is None else seconds)

    def threshold(self, scope: AttemptScope) -> int:
        if scope is AttemptScope.IP:
            return self.ip_max_failures
        return self.account_max_failures

    def delay_ms(self, consecutive_failures: int) -> int:
        """Capped exponential delay; no delay for a key without failures."""
        if consecutive_failures <= 0:
            return 0
        # Clamp the exponent so huge failure counts cannot build huge ints.
        exponent = min(consecutive_failures, 62)
        return int(min(self.max_delay_ms, self.base_delay_ms * 2**exponent))

    def lockout_level(self, scope: AttemptScope, window: AttemptWindow, now: datetime) -> int:
        """Escalation level for the next lockout of a key.

        Repeat offenders keep climbing; a key whose previous lockout ended more
        than one window ago starts over at level 0.
        """
        if window.locked_until is None or now - window.locked_until > self.window_for(scope):
            return 0
        return window.lockout_level

    def lockout_duration(self, scope: AttemptScope, level: int) -> timedelta:
        if scope is AttemptScope.IP:
            base = self.ip_lockout_base_seconds
        else:
            base = self.account_lockout_base_seconds
        if base is None:
            base = self.lockout_base_seconds
        seconds = base * self.lockout_factor ** min(level, 32)
        return timedelta(seconds=min(self.lockout_max_seconds, seconds))

    def needs_lockout(self, scope: AttemptScope, window: AttemptWindow, now: datetime) -> bool:
        return (
            not window.is_locked(now)
            and window.consecutive_failures >= self.threshold(scope)
            and window.unlocked_failures > 0
        )

    def blocked_until(
        self, scope: AttemptScope, window: AttemptWindow, now: datetime
    ) -> datetime | None:
        """End of the key's lockout, or None when the key may attempt a login.

        A key that reached its threshold but has not been locked yet counts as
        locked for the duration it is about to receive.
        """
        if window.is_locked(now):
            return window.locked_until
        if self.needs_lockout(scope, window, now):
            return now + self.lockout_duration(scope, self.lockout_level(scope, window, now))
        return None


async def apply_lockout(
    store: AttemptStore,
    policy: LoginPolicy,
    key: AttemptKey,
    window: AttemptWindow,
    now: datetime,
) -> datetime | None:
    """Lock ``key`` at the level its window calls for.

    Returns the end of the lockout in force afterwards. Racing writers go
    through the compare-and-set on the lockout level: one wins, the others
    adopt its lockout.
    """
    level = policy.lockout_level(key.scope, window, now)
    duration = policy.lockout_duration(key.scope, level)
    until = now + duration
    applied = await store.set_lockout(
        key,
        locked_at=now,
        until=until,
        expected_level=window.lockout_level,
        level=level + 1,
    )
    if applied:
        logger.warning(
            "login_lockout_applied",
            key=store.storage_id(key),
            level=level + 1,
            duration_seconds=int(duration.total_seconds()),
            failures=window.consecutive_failures,
        )
        return until
    current = await store.get(key, now)
    return current.locked_until if current.is_locked(now) else None


@dataclass(frozen=True)
class RateDecisionResult:
    allowed: bool
    delay_ms: int = 0
    retry_after_seconds: int | None = None
    reason: str | None = None
    remaining_attempts: int = 0


class RateDecision:
    """Verdict for one login attempt across the IP and account keys.

    The only write it performs is persisting a lockout that a key has earned
    but that no recorder managed to store, so the block it reports is the one
    that is actually kept.
    """

    def __init__(
        self, store: AttemptStore, policy: LoginPolicy, clock: Clock = utc_now
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock

    async def check_rate_limit(self, ip: str | None, account: str) -> RateDecisionResult:
        now = self.clock()
        keys = (AttemptKey.ip(ip), AttemptKey.account(account))
        windows = [await self.store.get(key, now) for key in keys]

        blocks: list[tuple[datetime, str]] = []
        for key, window in zip(keys, windows):
            if self.policy.needs_lockout(key.scope, window, now):
                until = await apply_lockout(self.store, self.policy, key, window, now)
            else:
                until = self.policy.blocked_until(key.scope, window, now)
            if until is not None:
                blocks.append((until, BLOCK_REASONS[key.scope]))
        if blocks:
            until, reason = max(blocks, key=lambda block: block[0])
            return RateDecisionResult(
                allowed=False,
                retry_after_seconds=max(1, seconds_until(until, now)),
                reason=reason,
            )

        delay_ms = max(self.policy.delay_ms(window.consecutive_failures) for window in windows)
        remaining = min(
            self.policy.threshold(key.scope) - window.consecutive_failures
            for key, window in zip(keys, windows)
        )
        return RateDecisionResult(
            allowed=True,
            delay_ms=delay_ms,
            remaining_attempts=max(0, remaining),
        )


class AttemptRecorder:
    """The only writer of attempt history."""

    def __init__(
        self, store: AttemptStore, policy: LoginPolicy, clock: Clock = utc_now
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock

    async def record_login_attempt(self, ip: str | None, account: str, success: bool) -> None:
        now = self.clock()
        account_key = AttemptKey.account(account)
        if success:
            # The IP keeps its failures: one account succeeding behind a shared
            # address must not reopen brute force against the others.
            await self.store.append(account_key, now, AttemptOutcome.SUCCESS)
            return

        for key in (AttemptKey.ip(ip), account_key):
            window = await self.store.append(key, now, AttemptOutcome.FAILURE)
            if self.policy.needs_lockout(key.scope, window, now):
                await apply_lockout(self.store, self.policy, key, window, now)


async def apply_delay(delay_ms: int) -> None:
    """Hold back the current request only; nothing else waits on it."""
    if delay_ms <= 0:
        return
    await asyncio.sleep(delay_ms / 1000)
