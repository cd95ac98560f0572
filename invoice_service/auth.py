from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt

from .config import settings
from .policy import Principal
from .schemas import UserRole


def get_bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
        )
    return authorization.split(" ", 1)[1]


def decode_principal(token: str) -> Principal:
    """Decode a bearer JWT into the caller's identity and role."""
    try:
        payload = jwt.decode(token, settings.AUTH_SECRET_KEY, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        ) from exc

    user_id = payload.get("sub")
    role = payload.get("role", UserRole.USER.value)
    if not user_id or role not in {r.value for r in UserRole}:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )
    return Principal(user_id=user_id, role=role)


def get_current_principal(token: str = Depends(get_bearer_token)) -> Principal:
    return decode_principal(token)


def create_access_token(user_id: str, role: str = UserRole.USER.value) -> str:
    return jwt.encode({"sub": user_id, "role": role}, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)
