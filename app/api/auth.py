from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.api.deps import get_login_orchestrator, get_request_ip
from app.schemas.auth import (
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    RateLimitedResponse,
)
from app.services.login import LoginOrchestrator, missing_credentials

router = APIRouter(prefix="/api/auth", tags=["auth"])

LOGIN_PATH = f"{router.prefix}/login"


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        429: {"model": RateLimitedResponse},
        503: {"model": ErrorResponse},
    },
)
async def login(
    request: Request,
    orchestrator: LoginOrchestrator = Depends(get_login_orchestrator),
) -> JSONResponse:
    # Parsed only once the edge gate middleware has let the request through.
    try:
        payload = LoginRequest.model_validate(json.loads(await request.body() or b"null"))
    except (ValueError, ValidationError):
        result = missing_credentials()
    else:
        result = await orchestrator.login(
            await get_request_ip(request),
            payload.email,
            payload.password,
            edge_checked=getattr(request.state, "edge_checked", False),
        )
    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers=result.headers or None,
    )
