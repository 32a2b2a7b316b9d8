"""Authentication helpers and FastAPI security dependencies.

A bearer token is a signed JWT that also has a row in the session table;
logging out deletes the row, so a token stops working before its `exp`
claim does. `get_current_user` resolves the caller, and `require_path_user`
additionally checks that the `{user_id}` in the URL is the caller.

Token verification raises HTTPExceptions on failure so the helpers can be
used directly inside route dependencies.
"""

from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session
from .models import as_utc, utcnow

# auto_error=False so a missing header is a 401 rather than FastAPI's 403
bearer_scheme = HTTPBearer(auto_error=False)

_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired', headers=_CHALLENGE)
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token', headers=_CHALLENGE)


def resolve_session(db: Session, token: str) -> models.SessionToken:
    """Return the live session row for `token` or raise 401."""
    decode_token(token)
    row = repositories.SessionTokenRepository(db).get_by_token(token)
    if not row:
        raise HTTPException(status_code=401, detail='session not found', headers=_CHALLENGE)
    if as_utc(row.expires_at) <= utcnow():
        raise HTTPException(status_code=401, detail='token expired', headers=_CHALLENGE)
    return row


def bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail='missing bearer token', headers=_CHALLENGE)
    return credentials.credentials


def get_current_user(token: str = Depends(bearer_token), db: Session = Depends(get_session)) -> models.User:
    """FastAPI dependency that returns the authenticated user."""
    row = resolve_session(db, token)
    user = repositories.UserRepository(db).get(row.user_id)
    if not user:
        raise HTTPException(status_code=401, detail='user not found', headers=_CHALLENGE)
    return user


def require_path_user(user_id: int, user: models.User = Depends(get_current_user)) -> models.User:
    """Gate for `/users/{user_id}/...` routes: callers only reach their own data."""
    if user.id != user_id:
        raise HTTPException(status_code=403, detail="access to another user's data is forbidden")
    return user
