"""Caller identity from the bearer token.

Authorization decisions belong to the access-control service; the only rule
applied here is that instructor-only routes need the INSTRUCTOR role.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from livequiz.services.auth_service import decode_access_token

# Bearer token extractor
security = HTTPBearer(auto_error=False)

INSTRUCTOR = "INSTRUCTOR"
STUDENT = "STUDENT"


@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: str

    @property
    def is_instructor(self) -> bool:
        return self.role == INSTRUCTOR


def resolve_token(token: str) -> CurrentUser:
    """Decode a raw token into a CurrentUser. Raises HTTPException(401)."""
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
        )
    return CurrentUser(id=user_id, role=str(payload.get("role") or STUDENT).upper())


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentUser:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return resolve_token(credentials.credentials)


async def require_instructor(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not current_user.is_instructor:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access denied. Required role(s): {INSTRUCTOR}",
        )
    return current_user
