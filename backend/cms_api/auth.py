"""Authentication helpers and FastAPI security dependencies.

This module decodes bearer tokens, resolves them to a `User` identity and
checks roles. A token that cannot be verified (missing, malformed, badly
signed or expired) is an `AuthError` (401); a valid token whose identity
no longer exists is a `ForbiddenError` (403).

With `AUTH_ENABLED=false` every request acts as an anonymous administrator.
"""

from typing import Optional

import jwt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import models, repositories
from .config import Settings
from .database import Database
from .errors import AuthError, ForbiddenError

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and verify a JWT token, raising `AuthError` on failure."""
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError('token expired')
    except jwt.InvalidTokenError:
        raise AuthError('invalid token')


def authenticate(token: str, db: Database, settings: Settings) -> models.User:
    """Map a bearer token to the identity it was issued for."""
    payload = decode_token(token, settings)
    user_id = payload.get('user_id')
    if not isinstance(user_id, int):
        raise AuthError('invalid token payload')
    with db.session() as session:
        user = repositories.UserRepository(session).get(user_id)
    if user is None:
        raise ForbiddenError('user not found')
    return user


def require_role(user: models.User, role: str) -> None:
    if user.role != role:
        raise ForbiddenError(f'{role} access required')


def _anonymous_admin() -> models.User:
    return models.User(id=0, name='anonymous', email='', password_hash='', role=models.ROLE_ADMIN)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> models.User:
    """FastAPI dependency that returns the authenticated user."""
    settings: Settings = request.app.state.settings
    if not settings.AUTH_ENABLED:
        return _anonymous_admin()
    if credentials is None:
        raise AuthError('access token required')
    return authenticate(credentials.credentials, request.app.state.db, settings)


def get_admin_user(user: models.User = Depends(get_current_user)) -> models.User:
    require_role(user, models.ROLE_ADMIN)
    return user
