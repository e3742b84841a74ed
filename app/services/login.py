"""Password login lifecycle with abuse prevention.

Steps, in order: reject malformed input (no accounting), edge IP check,
fail closed when the attempt store is unusable, IP + account rate decision,
progressive delay, identity provider call, outcome recording.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from app.services.attempt_store import AttemptStore, StoreUnavailableError, build_attempt_store
from app.services.edge_gate import EdgeGate
from app.services.identity import (
    IdentityProvider,
    IdentityProviderError,
    build_identity_provider,
)
from app.services.rate_limit import (
    AttemptRecorder,
    Clock,
    LoginPolicy,
    RateDecision,
    apply_delay,
)
from app.utils.time import utc_now

logger = structlog.get_logger(__name__)

MISSING_CREDENTIALS_MESSAGE = "E-Mail und Passwort sind erforderlich."
TOO_MANY_ATTEMPTS_MESSAGE = "Zu viele Anmeldeversuche. Bitte warten Sie."
INVALID_CREDENTIALS_MESSAGE = "E-Mail oder Passwort ist falsch."
UNAVAILABLE_MESSAGE = "Die Anmeldung ist vorübergehend nicht verfügbar."
GENERIC_ERROR_MESSAGE = "Ein Fehler ist aufgetreten."


class LoginStep(str, Enum):
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LoginResult:
    status_code: int
    body: dict
    headers: dict[str, str] = field(default_factory=dict)
    step: LoginStep = LoginStep.REJECTED

    @property
    def authenticated(self) -> bool:
        return self.step is LoginStep.AUTHENTICATED


def missing_credentials() -> LoginResult:
    return LoginResult(status_code=400, body={"error": MISSING_CREDENTIALS_MESSAGE})


def too_many_attempts(retry_after_seconds: int) -> LoginResult:
    return LoginResult(
        status_code=429,
        body={"error": TOO_MANY_ATTEMPTS_MESSAGE, "retryAfterSeconds": retry_after_seconds},
        headers={"Retry-After": str(retry_after_seconds)},
    )


def unavailable() -> LoginResult:
    return LoginResult(status_code=503, body={"error": UNAVAILABLE_MESSAGE})


def invalid_credentials() -> LoginResult:
    return LoginResult(status_code=401, body={"error": INVALID_CREDENTIALS_MESSAGE})


class LoginOrchestrator:
    def __init__(
        self,
        *,
        store: AttemptStore,
        identity_provider: IdentityProvider,
        policy: LoginPolicy,
        clock: Clock = utc_now,
        delay: Callable[[int], Awaitable[None]] = apply_delay,
    ) -> None:
        self.store = store
        self.identity_provider = identity_provider
        self.policy = policy
        self.edge_gate = EdgeGate(store, policy, clock)
        self.decision = RateDecision(store, policy, clock)
        self.recorder = AttemptRecorder(store, policy, clock)
        self.delay = delay

    @classmethod
    def from_settings(cls) -> LoginOrchestrator:
        policy = LoginPolicy.from_settings()
        return cls(
            store=build_attempt_store(policy.scope_windows),
            identity_provider=build_identity_provider(),
            policy=policy,
        )

    async def login(
        self,
        ip: str | None,
        email: str | None,
        password: str | None,
        *,
        edge_checked: bool = False,
    ) -> LoginResult:
        email = email.strip() if isinstance(email, str) else ""
        if not email or not isinstance(password, str) or not password:
            return missing_credentials()

        try:
            if not edge_checked:
                status = await self.edge_gate.is_ip_blocked(ip)
                if status.blocked:
                    logger.info("login_rate_limited", reason="ip_blocked", stage="edge")
                    return too_many_attempts(status.retry_after_seconds)
            if not await self.store.configured():
                logger.error("attempt_store_unavailable", stage="configured")
                return unavailable()
            decision = await self.decision.check_rate_limit(ip, email)
        except StoreUnavailableError as exc:
            logger.error("attempt_store_unavailable", stage="rate_check", error=str(exc))
            return unavailable()

        if not decision.allowed:
            logger.info("login_rate_limited", reason=decision.reason, stage="rate_check")
            return too_many_attempts(decision.retry_after_seconds or 1)

        await self.delay(decision.delay_ms)

        try:
            verification = await self.identity_provider.verify(email, password)
        except IdentityProviderError as exc:
            logger.error("identity_provider_error", error=str(exc))
            return unavailable()

        if not verification.success or verification.session is None:
            await self._record(ip, email, success=False)
            return invalid_credentials()

        await self._record(ip, email, success=True)
        return LoginResult(
            status_code=200,
            body={
                "success": True,
                "session": {
                    "access_token": verification.session.access_token,
                    "refresh_token": verification.session.refresh_token,
                },
            },
            step=LoginStep.AUTHENTICATED,
        )

    async def _record(self, ip: str | None, email: str, *, success: bool) -> None:
        try:
            await self.recorder.record_login_attempt(ip, email, success)
        except StoreUnavailableError as exc:
            event = "login_success_not_recorded" if success else "login_failure_not_recorded"
            logger.error(event, error=str(exc))
