from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.api.auth import LOGIN_PATH, router as auth_router
from app.api.deps import get_login_orchestrator, get_request_ip
from app.core.config import settings
from app.core.database import dispose_engine, init_db
from app.core.logging import setup_logging
from app.schemas.auth import HealthResponse
from app.services.attempt_store import StoreUnavailableError
from app.services.login import GENERIC_ERROR_MESSAGE, LoginOrchestrator, too_many_attempts

logger = structlog.get_logger(__name__)

app = FastAPI(title="Login Guard")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content={"error": GENERIC_ERROR_MESSAGE})


@app.middleware("http")
async def edge_gate_middleware(request: Request, call_next):
    if request.method != "POST" or request.url.path != LOGIN_PATH:
        return await call_next(request)

    orchestrator = get_login_orchestrator(request)
    try:
        status = await orchestrator.edge_gate.is_ip_blocked(await get_request_ip(request))
    except StoreUnavailableError as exc:
        # Left to the full login flow, which answers 503 for an unusable store.
        logger.error("attempt_store_unavailable", stage="edge", error=str(exc))
    else:
        if status.blocked:
            logger.info("login_rate_limited", reason="ip_blocked", stage="edge")
            result = too_many_attempts(status.retry_after_seconds)
            return JSONResponse(
                status_code=result.status_code,
                content=result.body,
                headers=result.headers,
            )
        request.state.edge_checked = True
    return await call_next(request)


origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )


@app.on_event("startup")
async def on_startup() -> None:
    setup_logging()
    if settings.APP_ENV.lower() != "development" and settings.JWT_SECRET_KEY == "change-me":
        if settings.IDENTITY_PROVIDER.strip().lower() == "local":
            raise RuntimeError("JWT_SECRET_KEY must be set in non-development environments")
    if getattr(app.state, "login_orchestrator", None) is None:
        app.state.login_orchestrator = LoginOrchestrator.from_settings()
    try:
        await init_db()
    except (SQLAlchemyError, OSError) as exc:
        # Logins answer 503 until the store is reachable.
        logger.error("attempt_store_unavailable", stage="startup", error=str(exc))


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await dispose_engine()


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    orchestrator = get_login_orchestrator(request)
    return HealthResponse(status="ok", attempt_store=await orchestrator.store.configured())


app.include_router(auth_router)
