"""Authentication helpers and FastAPI security dependency.

This module provides utilities to decode JWT tokens and a FastAPI
dependency `get_current_user` that validates the bearer token and
returns the corresponding `User` model instance from the database.

Token verification raises `AuthError`, which the exception handlers in
`main.py` turn into a 401 response. The small `require_roles` and
`ensure_self_or_admin` helpers cover the authorization rules shared by
several routes.
"""

from typing import Optional

import jwt
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session
from .errors import AuthError, PermissionDeniedError
from .models import Role

# auto_error=False so a missing header surfaces as our own 401 payload
bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT access token.

    Returns the decoded payload on success or raises `AuthError` on
    failure. Password-reset tokens are rejected here.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("token expired")
    except jwt.InvalidTokenError:
        raise AuthError("invalid token")
    if payload.get("type"):
        raise AuthError("invalid token type")
    return payload


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated user.

    The function extracts the bearer token from the request, decodes it
    and performs a database lookup to return the `User` object.
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("authentication required")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("user_id")
    if not user_id:
        raise AuthError("invalid token payload")
    user = repositories.UserRepository(db).get(user_id)
    if not user:
        raise AuthError("user not found")
    if user.status != models.AccountStatus.ACTIVE.value:
        raise AuthError("account is not active")
    return user


def require_roles(user: models.User, *roles: Role) -> None:
    if user.role not in {r.value for r in roles}:
        raise PermissionDeniedError(f"requires role: {', '.join(r.value for r in roles)}")


def ensure_self_or_admin(user: models.User, target_user_id: Optional[int]) -> int:
    """Return the user id to act on; only admins may act for someone else."""
    if target_user_id is None or target_user_id == user.id:
        return user.id
    if user.role != Role.ADMIN.value:
        raise PermissionDeniedError("cannot act on another user's data")
    return target_user_id
