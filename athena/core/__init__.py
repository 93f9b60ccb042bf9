"""
Core utilities for Athena.

This subpackage groups logging, Redis access and security helpers
(session principal, admin keys, rate limiting).
"""

from __future__ import annotations

from .logging import get_logger, setup_logging
from .redis import RedisManager, get_redis_manager
from .security import (
    check_rate_limit,
    decode_session,
    encode_session,
    get_session_principal,
    validate_athena_api_key,
)

__all__ = [
    # logging
    "get_logger",
    "setup_logging",
    # redis
    "RedisManager",
    "get_redis_manager",
    # security
    "check_rate_limit",
    "decode_session",
    "encode_session",
    "get_session_principal",
    "validate_athena_api_key",
]
