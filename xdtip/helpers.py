import time
import re
import uuid
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def new_overlay_key() -> str:
    # 16 random bytes, hex encoded
    return secrets.token_hex(16)


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_username(username: Optional[str]) -> bool:
    if not username:
        return False
    return re.match(r"^[A-Za-z0-9_.-]{3,32}$", username) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
