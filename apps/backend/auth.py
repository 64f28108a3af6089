"""Аутентификация владельца портала: Bearer JWT от внешнего auth-слоя (sub = user_id)."""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from apps.backend.config import get_settings

security = HTTPBearer(auto_error=False)

OWNER_TOKEN_TYPE = "owner"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    s = get_settings()
    to_encode = data.copy()
    exp = expires_delta or timedelta(minutes=s.jwt_expire_minutes)
    to_encode.update({"exp": datetime.utcnow() + exp})
    return jwt.encode(to_encode, s.jwt_secret, algorithm=s.jwt_algorithm)


def create_owner_token(user_id: str, expires_minutes: int | None = None) -> str:
    delta = timedelta(minutes=expires_minutes) if expires_minutes else None
    return create_access_token({"sub": str(user_id), "type": OWNER_TOKEN_TYPE}, delta)


def decode_token(token: str) -> Optional[dict]:
    s = get_settings()
    try:
        return jwt.decode(token, s.jwt_secret, algorithms=[s.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    if not credentials:
        raise HTTPException(status_code=401, detail="Authorization required")
    payload = decode_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != OWNER_TOKEN_TYPE:
        raise HTTPException(status_code=403, detail="Owner token required")
    return str(payload["sub"])
