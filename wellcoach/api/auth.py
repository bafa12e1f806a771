from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from wellcoach.core.security import (
    SCHEDULER_KEY_HEADER,
    decode_access_token,
    get_scheduler_api_key,
    scheduler_key_matches,
)
from wellcoach.db.models import User
from wellcoach.db.session import get_db

# Tokens are issued by the identity provider; this service only verifies them.
bearer_scheme = HTTPBearer(auto_error=False)


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise _bad_credentials()
    try:
        user_id = decode_access_token(credentials.credentials)
    except JWTError:
        raise _bad_credentials()

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise _bad_credentials()
    return user


def require_scheduler_key(
    scheduler_key: Optional[str] = Header(default=None, alias=SCHEDULER_KEY_HEADER),
) -> None:
    expected = get_scheduler_api_key()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler key not configured",
        )
    if not scheduler_key_matches(scheduler_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid scheduler key")
