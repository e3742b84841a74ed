from __future__ import annotations

import hashlib
import secrets
from datetime import timedelta

from jose import jwt
from passlib.context import CryptContext

from app.core.config import settings
from app.utils.time import utc_now

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def burn_password_check() -> None:
    """Spend the time of a real hash check for accounts that do not exist."""
    pwd_context.dummy_verify()


def create_access_token(subject: str, email: str) -> str:
    issued = utc_now()
    payload = {
        "sub": subject,
        "email": email,
        "iat": issued,
        "exp": issued + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
