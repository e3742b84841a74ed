from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None
    password: str | None = None


class SessionOut(BaseModel):
    access_token: str
    refresh_token: str


class LoginResponse(BaseModel):
    success: bool = True
    session: SessionOut


class ErrorResponse(BaseModel):
    error: str


class RateLimitedResponse(ErrorResponse):
    retry_after_seconds: int = Field(alias="retryAfterSeconds")


class HealthResponse(BaseModel):
    status: str
    attempt_store: bool
