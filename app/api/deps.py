from __future__ import annotations

import ipaddress

from fastapi import Request

from app.core.config import settings
from app.services.login import LoginOrchestrator


def get_login_orchestrator(request: Request) -> LoginOrchestrator:
    orchestrator = getattr(request.app.state, "login_orchestrator", None)
    if orchestrator is None:
        orchestrator = LoginOrchestrator.from_settings()
        request.app.state.login_orchestrator = orchestrator
    return orchestrator


async def get_request_ip(request: Request) -> str | None:
    def _valid_ip(raw: str | None) -> str | None:
        if not raw:
            return None
        try:
            return str(ipaddress.ip_address(raw.strip()))
        except ValueError:
            return None

    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            for candidate in forwarded.split(","):
                parsed = _valid_ip(candidate)
                if parsed:
                    return parsed
        real_ip = _valid_ip(request.headers.get("x-real-ip"))
        if real_ip:
            return real_ip

    if request.client:
        return _valid_ip(request.client.host)
    return None
