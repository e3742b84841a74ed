from __future__ import annotations

from dataclasses import dataclass

from app.services.attempt_store import AttemptKey, AttemptScope, AttemptStore
from app.services.rate_limit import Clock, LoginPolicy
from app.utils.time import seconds_until, utc_now


@dataclass(frozen=True)
class IpBlockStatus:
    blocked: bool
    retry_after_seconds: int = 0


class EdgeGate:
    """Cheap IP lockout check run before a login body is parsed. Never writes."""

    def __init__(
        self, store: AttemptStore, policy: LoginPolicy, clock: Clock = utc_now
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock

    async def is_ip_blocked(self, ip: str | None) -> IpBlockStatus:
        now = self.clock()
        window = await self.store.get(AttemptKey.ip(ip), now)
        until = self.policy.blocked_until(AttemptScope.IP, window, now)
        if until is None:
            return IpBlockStatus(blocked=False)
        return IpBlockStatus(blocked=True, retry_after_seconds=max(1, seconds_until(until, now)))
