from app.models.account import Account
from app.models.base import Base, TimestampMixin
from app.models.login_attempt import LoginAttempt
from app.models.login_lockout import LoginLockout
from app.models.refresh_token import RefreshToken

__all__ = [
    "Account",
    "Base",
    "TimestampMixin",
    "LoginAttempt",
    "LoginLockout",
    "RefreshToken",
]
