from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from averon.core.config import Settings, settings
from averon.core.errors import UnauthenticatedError
from averon.db.session import get_db
from averon.models import Profile

DEFAULT_JWT_SECRET = "supersecret"

# Token issuance lives with the identity provider; this service only verifies.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


def _unauthenticated(message: str = "Could not validate credentials") -> UnauthenticatedError:
    return UnauthenticatedError("UNAUTHENTICATED", message)


def assert_secure_settings(cfg: Settings) -> None:
    """
    Refuse to run a production deployment with the development JWT secret.
    """
    if cfg.is_prod and (not cfg.jwt_secret or cfg.jwt_secret == DEFAULT_JWT_SECRET):
        raise RuntimeError("JWT_SECRET must be set to a non-default value in production")


def create_access_token(profile_id: int, expires_minutes: Optional[int] = None) -> str:
    minutes = settings.access_token_expire_minutes if expires_minutes is None else expires_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {"sub": str(profile_id), "type": "access", "exp": expire}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """
    Decode JWT using settings.jwt_secret/jwt_algorithm.
    Raises UnauthenticatedError on any error.
    """
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise _unauthenticated("Invalid or expired token")


def get_current_profile(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> Profile:
    if not token:
        raise _unauthenticated("Not authenticated")

    payload = decode_jwt(token)

    token_type = payload.get("type", "access")
    if token_type != "access":
        raise _unauthenticated("Invalid token type")

    sub = payload.get("sub")
    try:
        profile_id = int(sub)
    except (TypeError, ValueError):
        raise _unauthenticated("Invalid token payload")

    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if profile is None:
        raise _unauthenticated("Profile not found")

    return profile
