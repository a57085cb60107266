import logging
from datetime import timedelta
from typing import Optional

import jwt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel

import config
from database import get_db, utcnow
from errors import AuthError, PermissionDenied
from schemas import Role

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


class Identity(BaseModel):
    """The caller, passed explicitly into every store operation."""
    id: str
    name: str
    email: str
    role: Role

    @property
    def is_owner(self) -> bool:
        return self.role == "owner"


def identity_from_user(user: dict) -> Identity:
    return Identity(id=str(user["_id"]), name=user.get("name", ""), email=user.get("email", ""),
                    role=user.get("role", "customer"))


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "customer"),
        "exp": now + timedelta(minutes=config.JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def authenticate(db, email: str, password: str) -> dict:
    user = db["user"].find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("hashed_password", "")):
        logger.warning("Failed login for %s", email)
        raise AuthError("Invalid credentials")
    if not user.get("is_active", True):
        raise AuthError("Account is disabled")
    return user


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                           db=Depends(get_db)) -> Identity:
    if credentials is None:
        raise AuthError("Not authorized to access this route")
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise AuthError("Invalid token")
    user = db["user"].find_one({"_id": ObjectId(uid), "is_active": True})
    if not user:
        raise AuthError("User not found")
    return identity_from_user(user)


async def require_owner(user: Identity = Depends(get_current_user)) -> Identity:
    if not user.is_owner:
        raise PermissionDenied(f"User role {user.role} is not authorized to access this route")
    return user
