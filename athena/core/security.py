from __future__ import annotations

import json
from time import time
from typing import Optional

from cryptography.fernet import InvalidToken
from fastapi import Header, HTTPException, Request, status

from athena.core.logging import get_logger
from athena.core.redis import get_redis_manager
from athena.settings import get_settings

log = get_logger("athena.security")


# ------------------- Session principal -------------------

def encode_session(identity_id: str, **user_fields) -> str:
    """Session cookie value for a Kratos identity (Fernet token over the session JSON)."""
    s = get_settings()
    body = {"user": {"kratosIdentityId": identity_id, **user_fields}}
    return s.CIPHER_SUITE.encrypt(json.dumps(body).encode()).decode()


def decode_session(cookie: Optional[str]) -> Optional[str]:
    """Kratos identity id carried by a session cookie, or None."""
    if not cookie:
        return None
    s = get_settings()
    try:
        session = json.loads(s.CIPHER_SUITE.decrypt(cookie.encode()).decode())
    except (InvalidToken, ValueError):
        return None
    user = session.get("user") if isinstance(session, dict) else None
    if not isinstance(user, dict):
        return None
    identity_id = user.get("kratosIdentityId")
    return str(identity_id) if identity_id else None


async def get_session_principal(request: Request) -> str:
    """
    Resolves the authenticated principal from the session cookie.
    Raises 401 when the cookie is missing or cannot be read.
    """
    s = get_settings()
    principal = decode_session(request.cookies.get(s.ATHENA_SESSION_COOKIE))
    if not principal:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error_code": "NOT_AUTHENTICATED", "message": "Not authenticated"},
        )
    return principal


# ------------------- API Key helpers -------------------

async def validate_athena_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """
    Validates that the provided header is one of the *admin* keys.
    """
    if not x_api_key:
        raise HTTPException(
            status_code=401,
            detail={"error_code": "NO_API_KEY", "message": "x-api-key header missing"},
        )
    s = get_settings()
    if x_api_key not in s.ATHENA_API_KEYS:
        raise HTTPException(
            status_code=401,
            detail={
                "error_code": "ATHENA_API_KEYS",
                "message": "Invalid admin API key",
            },
        )
    return x_api_key


# ------------------- Rate limiting -------------------

async def check_rate_limit(bucket: str, key: str, limit: int, window_sec: int) -> None:
    rm = get_redis_manager()
    if not await rm.is_available():
        return

    window = int(time() // window_sec)
    rkey = rm.ns_key(f"rl:{bucket}:{key}:{window}")
    count = await rm.redis.incr(rkey)
    if count == 1:
        await rm.redis.expire(rkey, window_sec)
    if count > limit:
        ttl = await rm.redis.ttl(rkey)
        log.info("Rate limit hit: bucket=%s key=%s", bucket, key)
        raise HTTPException(
            status_code=429,
            detail={
                "error_code": "RATE_LIMITED",
                "message": f"Too many requests (limit {limit}/{window_sec}s)",
                "retry_after_sec": max(ttl, 1),
            },
        )
