import time
from dataclasses import dataclass

import jwt
from passlib.context import CryptContext
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .db import get_db
from .errors import Unauthenticated
from .models import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

ELEVATED_ROLES = frozenset({"admin", "moderator"})


@dataclass(frozen=True)
class Principal:
    id: int
    role: str = "user"
    name: str = ""

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(sub: str, expires_minutes: int | None = None) -> str:
    payload = {
        "sub": sub,
        "iat": int(time.time()),
        "exp": int(time.time()) + 60 * (expires_minutes or settings.access_token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Your token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token. Please log in again.")


async def resolve_principal(db: AsyncSession, token: str | None) -> Principal:
    """Turn a bearer token into the acting principal or raise ``Unauthenticated``."""
    if not token:
        raise Unauthenticated()
    data = decode_token(token)
    try:
        user_id = int(data["sub"])
    except (KeyError, TypeError, ValueError):
        raise Unauthenticated("Invalid token. Please log in again.")
    user = await db.get(User, user_id)
    if user is None:
        raise Unauthenticated("User not found")
    if not user.is_active:
        raise Unauthenticated("User account is deactivated")
    return Principal(id=user.id, role=user.role, name=user.name)


async def get_current_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    return await resolve_principal(db, creds.credentials if creds else None)
