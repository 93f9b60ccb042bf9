from __future__ import annotations

import base64
import hashlib
import json
import os
from functools import lru_cache
from typing import List, Optional, Tuple

from cryptography.fernet import Fernet
from dotenv import load_dotenv
from pydantic import PrivateAttr
from pydantic_settings import BaseSettings

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_sentinels(raw: Optional[str]) -> List[Tuple[str, int]]:
    if not raw:
        return []
    sentinels: List[Tuple[str, int]] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if ":" in part:
            host, port = part.rsplit(":", 1)
            try:
                sentinels.append((host.strip(), int(port.strip())))
            except ValueError:
                # ignore malformed entries
                continue
        else:
            # default sentinel port
            sentinels.append((part, 26379))
    return sentinels


class Settings(BaseSettings):
    ATHENA_BUILD_VERSION: str = os.getenv("ATHENA_BUILD_VERSION", "1.0.0")
    ATHENA_ENVIRONMENT: str = os.getenv("ATHENA_ENVIRONMENT", "dev")
    ATHENA_LOG_LEVEL: str = os.getenv("ATHENA_LOG_LEVEL", "INFO")

    # Admin API keys as list (diagnostics)
    ATHENA_API_KEYS: List[str] = []
    ATHENA_CRYPT_KEY: str = os.getenv(
        "ATHENA_CRYPT_KEY", "change-me-please-change-me-32bytes-min"
    )
    ATHENA_SESSION_COOKIE: str = os.getenv("ATHENA_SESSION_COOKIE", "athena-session")

    # Upstream services
    KRATOS_ADMIN_URL: str = os.getenv(
        "IAM_KRATOS_ADMIN_URL", os.getenv("KRATOS_ADMIN_URL", "http://localhost:4101")
    )
    KRATOS_API_KEY: Optional[str] = os.getenv("KRATOS_API_KEY")
    HYDRA_ADMIN_URL: str = os.getenv(
        "IAM_HYDRA_ADMIN_URL", os.getenv("HYDRA_ADMIN_URL", "http://localhost:4103")
    )
    HYDRA_API_KEY: Optional[str] = os.getenv("HYDRA_API_KEY")
    HYDRA_ENABLED: bool = _env_bool("HYDRA_ENABLED", True)
    # Ory Network (managed cloud) exposes no health endpoints
    ORY_NETWORK: bool = _env_bool("ORY_NETWORK", False)
    UPSTREAM_TIMEOUT_SEC: float = float(os.getenv("UPSTREAM_TIMEOUT_SEC", "10"))

    # Redis (ATHENA_* preferred; REDIS_* kept for backward compatibility)
    ATHENA_REDIS_NAMESPACE: str = os.getenv("ATHENA_REDIS_NAMESPACE", "athena")

    ATHENA_REDIS_SENTINEL: bool = _env_bool("ATHENA_REDIS_SENTINEL", False)
    ATHENA_REDIS_SENTINELS: str = os.getenv("ATHENA_REDIS_SENTINELS", "")
    ATHENA_REDIS_SENTINEL_MASTER: str = os.getenv(
        "ATHENA_REDIS_SENTINEL_MASTER", "mymaster"
    )

    # Standard Redis
    REDIS_HOST: str = os.getenv("ATHENA_REDIS_HOST", os.getenv("REDIS_HOST", "localhost"))
    REDIS_PORT: int = int(os.getenv("ATHENA_REDIS_PORT", os.getenv("REDIS_PORT", "6379")))
    REDIS_DB: int = int(os.getenv("ATHENA_REDIS_DB", os.getenv("REDIS_DB", "0")))
    REDIS_PASSWORD: Optional[str] = os.getenv(
        "ATHENA_REDIS_PASSWORD", os.getenv("REDIS_PASSWORD")
    )

    # Sentry
    ATHENA_SENTRY_DSN: Optional[str] = os.getenv("ATHENA_SENTRY_DSN")

    # Streams / pubsub
    AUDIT_STREAM_NAME: str = os.getenv("AUDIT_STREAM_NAME") or f"{os.getenv('ATHENA_REDIS_NAMESPACE', 'athena')}:audit"
    PUBSUB_CHANNEL: str = os.getenv("PUBSUB_CHANNEL") or f"{os.getenv('ATHENA_REDIS_NAMESPACE', 'athena')}:layouts"

    # Dashboard layout persistence
    LAYOUT_BACKEND: str = os.getenv("LAYOUT_BACKEND", "redis")  # redis | kratos
    LAYOUT_DEBOUNCE_MS: int = int(os.getenv("LAYOUT_DEBOUNCE_MS", "300"))
    LAYOUT_IDLE_SEC: int = int(os.getenv("LAYOUT_IDLE_SEC", "1800"))
    RL_LAYOUT_WRITE_LIMIT_PER_MIN: int = int(os.getenv("RL_LAYOUT_WRITE_LIMIT_PER_MIN", "240"))

    # IP geolocation (ip-api.com batch endpoint, free tier: 100 IPs per batch)
    GEO_BATCH_URL: str = os.getenv(
        "GEO_BATCH_URL",
        "http://ip-api.com/batch?fields=query,lat,lon,city,country,countryCode,status",
    )
    GEO_BATCH_SIZE: int = int(os.getenv("GEO_BATCH_SIZE", "100"))
    GEO_TIMEOUT_SEC: float = float(os.getenv("GEO_TIMEOUT_SEC", "5"))

    # Analytics fetch ceilings
    ANALYTICS_IDENTITY_PAGE_SIZE: int = int(os.getenv("ANALYTICS_IDENTITY_PAGE_SIZE", "250"))
    ANALYTICS_IDENTITY_MAX_PAGES: int = int(os.getenv("ANALYTICS_IDENTITY_MAX_PAGES", "20"))
    ANALYTICS_SESSION_PAGE_SIZE: int = int(os.getenv("ANALYTICS_SESSION_PAGE_SIZE", "250"))
    ANALYTICS_SESSION_MAX_PAGES: int = int(os.getenv("ANALYTICS_SESSION_MAX_PAGES", "10"))
    ANALYTICS_SESSION_LOOKBACK_DAYS: int = int(os.getenv("ANALYTICS_SESSION_LOOKBACK_DAYS", "365"))
    ANALYTICS_CLIENT_PAGE_SIZE: int = int(os.getenv("ANALYTICS_CLIENT_PAGE_SIZE", "500"))
    ANALYTICS_TIMEZONE: str = os.getenv("ANALYTICS_TIMEZONE", "UTC")

    # Cache lifetimes (seconds): stale window / background refresh interval
    IDENTITY_STALE_SEC: int = int(os.getenv("IDENTITY_STALE_SEC", "300"))
    IDENTITY_REFRESH_SEC: int = int(os.getenv("IDENTITY_REFRESH_SEC", "600"))
    SESSION_STALE_SEC: int = int(os.getenv("SESSION_STALE_SEC", "120"))
    SESSION_REFRESH_SEC: int = int(os.getenv("SESSION_REFRESH_SEC", "300"))
    SYSTEM_STALE_SEC: int = int(os.getenv("SYSTEM_STALE_SEC", "600"))
    SYSTEM_REFRESH_SEC: int = int(os.getenv("SYSTEM_REFRESH_SEC", "900"))
    HYDRA_STALE_SEC: int = int(os.getenv("HYDRA_STALE_SEC", "300"))
    HYDRA_REFRESH_SEC: int = int(os.getenv("HYDRA_REFRESH_SEC", "600"))
    HEALTH_CACHE_SEC: int = int(os.getenv("HEALTH_CACHE_SEC", "120"))
    HEALTH_RETRIES: int = int(os.getenv("HEALTH_RETRIES", "1"))
    HEALTH_BACKOFF_SEC: float = float(os.getenv("HEALTH_BACKOFF_SEC", "0.5"))

    # Derived sentinel endpoints (computed in model_post_init)
    ATHENA_REDIS_SENTINELS_PARSED: List[Tuple[str, int]] = []

    # Private attribute: not part of pydantic validation
    _cipher_suite: Fernet = PrivateAttr()

    # --- Compute derived values & parse env after validation ---
    def model_post_init(self, __context) -> None:  # pydantic v2 hook
        # Parse admin keys JSON or CSV if provided in env
        env_keys = os.getenv("ATHENA_API_KEYS")
        if env_keys:
            parsed: List[str] = []
            try:
                maybe_json = json.loads(env_keys)
                if isinstance(maybe_json, list):
                    parsed = [str(x) for x in maybe_json]
                elif isinstance(maybe_json, str) and maybe_json.strip():
                    parsed = [maybe_json.strip()]
            except ValueError:
                parsed = [k.strip() for k in env_keys.split(",") if k.strip()]
            if parsed:
                self.ATHENA_API_KEYS = parsed

        # Parse sentinel list
        self.ATHENA_REDIS_SENTINELS_PARSED = _parse_sentinels(self.ATHENA_REDIS_SENTINELS)

        # Derive Fernet key from ATHENA_CRYPT_KEY (sha256 → base64)
        key = hashlib.sha256(self.ATHENA_CRYPT_KEY.encode()).digest()
        fkey = base64.urlsafe_b64encode(key)
        self._cipher_suite = Fernet(fkey)

    @property
    def CIPHER_SUITE(self) -> Fernet:
        """Read-only accessor for the derived cipher suite."""
        return self._cipher_suite

    @property
    def LAYOUT_DEBOUNCE_SEC(self) -> float:
        return self.LAYOUT_DEBOUNCE_MS / 1000.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
