import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from app.core.config import settings
from app.services.attempt_store import (
    AttemptKey,
    AttemptOutcome,
    AttemptScope,
    AttemptWindow,
    MemoryAttemptStore,
)
from app.services.rate_limit import (
    AttemptRecorder,
    LoginPolicy,
    RateDecision,
    RateDecisionResult,
    apply_delay,
    apply_lockout,
)
from support import EXAMPLE_POLICY, FakeClock

EMAIL = "user@example.com"
IP = "1.2.3.4"


def _components(policy=EXAMPLE_POLICY, store=None):
    clock = FakeClock()
    if store is None:
        store = MemoryAttemptStore(window=policy.window, scope_windows=policy.scope_windows)
    return (
        store,
        clock,
        RateDecision(store, policy, clock),
        AttemptRecorder(store, policy, clock),
    )


def _fail(recorder: AttemptRecorder, times: int, *, ip: str = IP, email: str = EMAIL) -> None:
    async def run() -> None:
        for _ in range(times):
            await recorder.record_login_attempt(ip, email, False)

    asyncio.run(run())


class _RacingStore(MemoryAttemptStore):
    """Memory store that lets concurrent writers interleave.

    While ``racers`` is set, each account append returns the window as it was
    before any of the racing appends landed, plus its own attempt, the way
    concurrent transactions miss each other's uncommitted rows. Lockout writes
    yield before the compare-and-set.
    """

    def __init__(self, *, window: timedelta) -> None:
        super().__init__(window=window)
        self.racers = 0
        self.applied_lockouts = 0
        self._arrived = 0
        self._gate: asyncio.Event | None = None

    def expect_racers(self, racers: int) -> None:
        self.racers = racers
        self._arrived = 0
        self._gate = asyncio.Event()

    async def append(self, key, timestamp, outcome):
        if not self.racers or key.scope is not AttemptScope.ACCOUNT:
            return await super().append(key, timestamp, outcome)
        before = await self.get(key, timestamp)
        self._arrived += 1
        if self._arrived >= self.racers:
            self._gate.set()
        await self._gate.wait()
        await super().append(key, timestamp, outcome)
        return replace(before, events=before.events + ((timestamp, outcome),))

    async def set_lockout(self, key, *, locked_at, until, expected_level, level):
        await asyncio.sleep(0)
        applied = await super().set_lockout(
            key, locked_at=locked_at, until=until, expected_level=expected_level, level=level
        )
        self.applied_lockouts += int(applied)
        return applied


def test_delay_is_non_decreasing_and_capped() -> None:
    delays = [EXAMPLE_POLICY.delay_ms(failures) for failures in range(0, 40)]
    assert delays[0] == 0
    assert delays[1] == 500
    assert delays[2] == 1000
    assert delays == sorted(delays)
    assert max(delays) == EXAMPLE_POLICY.max_delay_ms
    assert EXAMPLE_POLICY.delay_ms(10_000) == EXAMPLE_POLICY.max_delay_ms


def test_lockout_duration_escalates_up_to_cap() -> None:
    policy = replace(EXAMPLE_POLICY, lockout_max_seconds=5000)
    account = AttemptScope.ACCOUNT
    assert policy.lockout_duration(account, 0) == timedelta(seconds=900)
    assert policy.lockout_duration(account, 1) == timedelta(seconds=1800)
    assert policy.lockout_duration(account, 2) == timedelta(seconds=3600)
    assert policy.lockout_duration(account, 3) == timedelta(seconds=5000)
    assert policy.lockout_duration(account, 500) == timedelta(seconds=5000)


def test_scopes_can_have_their_own_window_and_lockout() -> None:
    policy = replace(
        EXAMPLE_POLICY,
        ip_window_seconds=900,
        account_window_seconds=900,
        ip_lockout_base_seconds=900,
        account_lockout_base_seconds=1800,
    )
    assert policy.lockout_duration(AttemptScope.IP, 0) == timedelta(seconds=900)
    assert policy.lockout_duration(AttemptScope.ACCOUNT, 0) == timedelta(seconds=1800)
    assert policy.lockout_duration(AttemptScope.IP, 1) == timedelta(seconds=1800)
    assert policy.window_for(AttemptScope.IP) == timedelta(seconds=900)
    assert policy.window == timedelta(seconds=900)

    shared = replace(EXAMPLE_POLICY, ip_window_seconds=1200)
    assert shared.window_for(AttemptScope.ACCOUNT) == timedelta(seconds=600)
    assert shared.window == timedelta(seconds=1200)


def test_policy_reads_scope_overrides_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "LOGIN_IP_WINDOW_SEC", 900)
    monkeypatch.setattr(settings, "LOGIN_ACCOUNT_LOCKOUT_BASE_SEC", 1800)
    monkeypatch.setattr(settings, "LOGIN_IP_LOCKOUT_BASE_SEC", None)
    monkeypatch.setattr(settings, "LOGIN_ACCOUNT_WINDOW_SEC", None)

    policy = LoginPolicy.from_settings()

    assert policy.window_for(AttemptScope.IP) == timedelta(seconds=900)
    assert policy.window_for(AttemptScope.ACCOUNT) == timedelta(seconds=settings.LOGIN_WINDOW_SEC)
    assert policy.lockout_duration(AttemptScope.ACCOUNT, 0) == timedelta(seconds=1800)
    assert policy.lockout_duration(AttemptScope.IP, 0) == timedelta(
        seconds=settings.LOGIN_LOCKOUT_BASE_SEC
    )


def test_account_lockout_uses_the_account_duration() -> None:
    policy = replace(EXAMPLE_POLICY, account_lockout_base_seconds=1800)
    _, _, decision, recorder = _components(policy)
    _fail(recorder, 5)

    result = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    assert result.retry_after_seconds == 1800
    assert result.reason == "account_locked"


def test_ip_failures_count_over_the_ip_window() -> None:
    policy = replace(EXAMPLE_POLICY, ip_window_seconds=900)
    _, clock, decision, recorder = _components(policy)
    for index in range(9):
        _fail(recorder, 1, email=f"other{index}@example.com")
    clock.advance(seconds=700)
    _fail(recorder, 1, email="last@example.com")

    result = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    assert result.allowed is False
    assert result.reason == "ip_blocked"


def test_first_check_is_allowed_without_delay() -> None:
    _, _, decision, _ = _components()
    result = asyncio.run(decision.check_rate_limit(IP, EMAIL))
    assert result == RateDecisionResult(allowed=True, delay_ms=0, remaining_attempts=5)


def test_reaching_account_threshold_blocks_next_check() -> None:
    _, _, decision, recorder = _components()
    _fail(recorder, 5)

    result = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    assert result.allowed is False
    assert result.retry_after_seconds == 900
    assert result.reason == "account_locked"
    assert result.delay_ms == 0


def test_threshold_without_recorded_lockout_is_locked_by_the_check() -> None:
    store, clock, decision, _ = _components()
    key = AttemptKey.account(EMAIL)

    async def run():
        for _ in range(5):
            await store.append(key, clock(), AttemptOutcome.FAILURE)
        return await decision.check_rate_limit(IP, EMAIL)

    first = asyncio.run(run())
    assert first.allowed is False
    assert first.retry_after_seconds == 900
    window = asyncio.run(store.get(key, clock()))
    assert window.lockout_level == 1
    assert window.locked_until == clock.now + timedelta(seconds=900)

    # The failures have left the window, the stored lockout has not.
    clock.advance(seconds=601)
    second = asyncio.run(decision.check_rate_limit(IP, EMAIL))
    assert second.allowed is False
    assert second.retry_after_seconds == 299


def test_racing_failures_at_the_threshold_lock_exactly_once() -> None:
    store = _RacingStore(window=EXAMPLE_POLICY.window)
    _, clock, decision, recorder = _components(store=store)
    _fail(recorder, 3)

    async def race():
        store.expect_racers(2)
        await asyncio.gather(
            recorder.record_login_attempt(IP, EMAIL, False),
            recorder.record_login_attempt(IP, EMAIL, False),
        )
        store.racers = 0
        raced = await store.get(AttemptKey.account(EMAIL), clock())
        checks = await asyncio.gather(
            *(decision.check_rate_limit(IP, EMAIL) for _ in range(3))
        )
        return raced, checks

    raced, checks = asyncio.run(race())

    # Neither racer saw the threshold, so neither recorded the lockout.
    assert raced.consecutive_failures == 5
    assert raced.lockout_level == 0
    assert store.applied_lockouts == 1
    assert [check.retry_after_seconds for check in checks] == [900, 900, 900]
    assert all(check.allowed is False for check in checks)

    clock.advance(seconds=601)
    later = asyncio.run(decision.check_rate_limit(IP, EMAIL))
    assert later.allowed is False
    assert later.retry_after_seconds == 299
    assert asyncio.run(store.get(AttemptKey.account(EMAIL), clock())).lockout_level == 1


def test_delay_takes_the_larger_of_ip_and_account() -> None:
    _, _, decision, recorder = _components()
    for index in range(3):
        _fail(recorder, 1, email=f"other{index}@example.com")
    _fail(recorder, 1)

    result = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    assert result.allowed is True
    assert result.delay_ms == EXAMPLE_POLICY.delay_ms(4)
    assert result.remaining_attempts == 4


def test_retry_after_uses_the_later_lockout() -> None:
    policy = replace(EXAMPLE_POLICY, ip_max_failures=5, lockout_base_seconds=60)
    store, clock, decision, recorder = _components(policy)

    async def run():
        await store.set_lockout(
            AttemptKey.ip(IP),
            locked_at=clock(),
            until=clock.now + timedelta(seconds=30),
            expected_level=0,
            level=1,
        )
        await store.set_lockout(
            AttemptKey.account(EMAIL),
            locked_at=clock(),
            until=clock.now + timedelta(seconds=300),
            expected_level=0,
            level=1,
        )
        return await decision.check_rate_limit(IP, EMAIL)

    result = asyncio.run(run())
    assert result.retry_after_seconds == 300
    assert result.reason == "account_locked"


def test_account_success_does_not_reset_ip_failures() -> None:
    store, clock, _, recorder = _components()
    _fail(recorder, 3)

    async def run():
        await recorder.record_login_attempt(IP, EMAIL, True)
        return (
            await store.get(AttemptKey.account(EMAIL), clock()),
            await store.get(AttemptKey.ip(IP), clock()),
        )

    account_window, ip_window = asyncio.run(run())
    assert account_window.consecutive_failures == 0
    assert ip_window.consecutive_failures == 3


def test_repeat_offenders_get_longer_lockouts() -> None:
    policy = replace(EXAMPLE_POLICY, window_seconds=3600, lockout_base_seconds=60)
    store, clock, decision, recorder = _components(policy)
    _fail(recorder, 5)
    first = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    clock.advance(seconds=61)
    assert asyncio.run(decision.check_rate_limit(IP, EMAIL)).allowed is True
    _fail(recorder, 1)
    second = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    clock.advance(seconds=121)
    _fail(recorder, 1)
    third = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    assert (first.retry_after_seconds, second.retry_after_seconds, third.retry_after_seconds) == (
        60,
        120,
        240,
    )
    window = asyncio.run(store.get(AttemptKey.account(EMAIL), clock()))
    assert window.lockout_level == 3


def test_one_failure_after_a_short_lockout_relocks_at_the_next_level() -> None:
    policy = replace(EXAMPLE_POLICY, window_seconds=600, lockout_base_seconds=60)
    store, clock, decision, recorder = _components(policy)
    _fail(recorder, 5)

    clock.advance(seconds=61)
    reopened = asyncio.run(decision.check_rate_limit(IP, EMAIL))
    window = asyncio.run(store.get(AttemptKey.account(EMAIL), clock()))
    # The earlier failures are still inside the window but already paid for.
    assert window.consecutive_failures == 5
    assert window.unlocked_failures == 0
    assert reopened.allowed is True

    _fail(recorder, 1)
    relocked = asyncio.run(decision.check_rate_limit(IP, EMAIL))

    assert relocked.allowed is False
    assert relocked.retry_after_seconds == 120
    assert asyncio.run(store.get(AttemptKey.account(EMAIL), clock())).lockout_level == 2


def test_escalation_restarts_after_a_quiet_window() -> None:
    policy = replace(EXAMPLE_POLICY, window_seconds=600, lockout_base_seconds=60)
    _, clock, decision, recorder = _components(policy)
    _fail(recorder, 5)
    clock.advance(seconds=60 + 601)
    _fail(recorder, 5)

    result = asyncio.run(decision.check_rate_limit(IP, EMAIL))
    assert result.retry_after_seconds == 60


def test_lockout_write_losing_the_race_adopts_the_winner() -> None:
    store, clock, _, _ = _components()
    key = AttemptKey.account(EMAIL)

    async def run():
        for _ in range(5):
            await store.append(key, clock(), AttemptOutcome.FAILURE)
        stale = await store.get(key, clock())
        await store.set_lockout(
            key,
            locked_at=clock(),
            until=clock.now + timedelta(seconds=450),
            expected_level=0,
            level=1,
        )
        return stale

    stale = asyncio.run(run())
    assert stale == AttemptWindow(events=stale.events)

    # A writer working from the stale window loses the compare-and-set.
    until = asyncio.run(apply_lockout(store, EXAMPLE_POLICY, key, stale, clock()))
    assert until == clock.now + timedelta(seconds=450)


def test_apply_delay_skips_non_positive_values() -> None:
    asyncio.run(apply_delay(0))
    asyncio.run(apply_delay(-5))
    asyncio.run(apply_delay(1))
