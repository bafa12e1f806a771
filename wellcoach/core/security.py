import hmac
import os
from typing import Optional

from jose import JWTError, jwt

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = "HS256"
SCHEDULER_KEY_HEADER = "X-Scheduler-Key"


def decode_access_token(token: str) -> str:
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    subject = payload.get("sub")
    if not subject:
        raise JWTError("Missing subject")
    return subject


def get_scheduler_api_key() -> Optional[str]:
    # Read per call so rotated keys apply without a restart.
    key = os.getenv("SCHEDULER_API_KEY", "").strip()
    return key or None


def scheduler_key_matches(presented: Optional[str], expected: str) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(presented.strip().encode("utf-8"), expected.encode("utf-8"))
