# carequeue/security.py
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import schemas
from .access import Operation, authorize
from .config import Settings
from .dependencies import get_settings_from_app, get_storage
from .storage import Entity, Storage

security_logger = structlog.get_logger("carequeue.security")

pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__rounds=4,
    argon2__memory_cost=65536,
    argon2__parallelism=1,
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token")


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except Exception:
        # Unknown hash formats should not crash login; treat as non-match
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# JWT utilities
def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({
        "exp": expire,
        "type": "access",
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, settings: Settings, token_type: str = "access") -> Optional[Dict[str, Any]]:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload


def user_from_token(token: Optional[str], settings: Settings, storage: Storage) -> Optional[schemas.User]:
    """Resolve a bearer token to its user, or None if it is missing, invalid or stale."""
    if not token:
        return None
    payload = verify_token(token, settings)
    if not payload or not payload.get("user_id"):
        return None
    user = storage.get(Entity.users, payload["user_id"])
    if user is None or user.username != payload.get("sub"):
        return None
    return user


# Dependencies for FastAPI
async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    settings: Settings = Depends(get_settings_from_app),
    storage: Storage = Depends(get_storage),
) -> schemas.User:
    user = user_from_token(token, settings, storage)
    if user is None:
        security_logger.info("invalid_credentials", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


def require_operation(operation: Operation):
    """Dependency factory: caller must hold one of the operation's unconditional roles."""
    def operation_dependency(current_user: schemas.User = Depends(get_current_user)) -> schemas.User:
        return authorize(current_user, operation)

    return operation_dependency


__all__ = [
    "pwd_context",
    "verify_password",
    "get_password_hash",
    "create_access_token",
    "verify_token",
    "user_from_token",
    "get_current_user",
    "require_operation",
]
