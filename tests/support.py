from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.services.attempt_store import MemoryAttemptStore
from app.services.identity import SessionTokens, VerifyResult
from app.services.login import LoginOrchestrator
from app.services.rate_limit import LoginPolicy

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

EXAMPLE_POLICY = LoginPolicy(
    window_seconds=600,
    account_max_failures=5,
    ip_max_failures=10,
    lockout_base_seconds=900,
    lockout_factor=2.0,
    lockout_max_seconds=86400,
    base_delay_ms=250,
    max_delay_ms=5000,
)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeIdentityProvider:
    def __init__(self, accounts: dict[str, str] | None = None) -> None:
        self.accounts = accounts or {}
        self.calls: list[str] = []

    async def verify(self, email: str, password: str) -> VerifyResult:
        self.calls.append(email)
        if self.accounts.get(email.strip().lower()) == password:
            return VerifyResult(
                success=True,
                session=SessionTokens(access_token=f"access-{email}", refresh_token=f"refresh-{email}"),
            )
        return VerifyResult(success=False)


class RecordingDelay:
    def __init__(self) -> None:
        self.calls: list[int] = []

    async def __call__(self, delay_ms: int) -> None:
        self.calls.append(delay_ms)


def build_orchestrator(
    *,
    policy: LoginPolicy = EXAMPLE_POLICY,
    store=None,
    accounts: dict[str, str] | None = None,
    clock: FakeClock | None = None,
) -> tuple[LoginOrchestrator, FakeClock, FakeIdentityProvider, RecordingDelay]:
    clock = clock or FakeClock()
    identity = FakeIdentityProvider(accounts)
    delay = RecordingDelay()
    if store is None:
        store = MemoryAttemptStore(window=policy.window, scope_windows=policy.scope_windows)
    orchestrator = LoginOrchestrator(
        store=store,
        identity_provider=identity,
        policy=policy,
        clock=clock,
        delay=delay,
    )
    return orchestrator, clock, identity, delay
