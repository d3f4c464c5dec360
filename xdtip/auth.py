"""
Credential hashing and bearer tokens.

Passwords are bcrypt hashes; session tokens are HS256 JWTs carrying the
account id (`sub`) and username.
"""
import os
import time
from typing import Dict, Optional

import bcrypt
import jwt
from fastapi import Header

from .errors import AuthError

JWT_SECRET = os.environ.get("JWT_SECRET", "dev-secret-change-me")
JWT_TTL_SECONDS = int(os.environ.get("JWT_TTL_SECONDS", str(24 * 3600)))
JWT_ISSUER = "xdtip"
ALGO = "HS256"


def hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    pw = password.encode()[:72]
    return bcrypt.hashpw(pw, bcrypt.gensalt()).decode()


def check_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode()[:72], password_hash.encode())


def mint_token(account_id: str, username: str) -> str:
    now = int(time.time())
    payload = {
        "iss": JWT_ISSUER,
        "sub": account_id,
        "username": username,
        "iat": now,
        "exp": now + JWT_TTL_SECONDS,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGO)


def verify_token(token: str) -> Dict:
    try:
        return jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[ALGO],
            issuer=JWT_ISSUER,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
    except jwt.PyJWTError:
        raise AuthError("Invalid token")


async def current_claims(authorization: Optional[str] = Header(None)) -> Dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError("Access denied")
    return verify_token(authorization.split(" ", 1)[1].strip())
