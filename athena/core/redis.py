from __future__ import annotations

import json
import uuid
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as redis
from cryptography.fernet import Fernet, InvalidToken
from redis.asyncio.sentinel import Sentinel
from redis.exceptions import ConnectionError, ResponseError, TimeoutError, WatchError

from athena.core.logging import get_logger
from athena.settings import get_settings

log = get_logger("athena.redis")

LAYOUT_PREFIX = "layout"

# Identifies this process in pub/sub events so it can skip its own.
INSTANCE_ID = uuid.uuid4().hex


class RedisManager:
    """
    Async Redis manager: connection pool or Sentinel, key namespacing,
    Fernet-encrypted JSON blobs, transactional writes, audit stream and
    pub/sub change events.
    """

    @staticmethod
    def _to_str(val: Union[bytes, str, None]) -> str:
        if val is None:
            return ""
        if isinstance(val, bytes):
            return val.decode()
        return str(val)

    @classmethod
    def _build_redis_client(
        cls, s
    ) -> Tuple[redis.Redis, Optional[redis.ConnectionPool], Optional[Sentinel]]:
        """
        Builds a Redis client using either:
        - Sentinel (ATHENA_REDIS_SENTINEL=true)
        - A direct ConnectionPool (default)
        """
        # Encrypted binary blobs: decode_responses stays False.
        socket_kwargs = {
            "socket_keepalive": True,
            "socket_timeout": 2.0,
            "socket_connect_timeout": 2.0,
        }

        sentinels = list(s.ATHENA_REDIS_SENTINELS_PARSED)
        if s.ATHENA_REDIS_SENTINEL:
            if not sentinels:
                log.warning(
                    "ATHENA_REDIS_SENTINEL=true but ATHENA_REDIS_SENTINELS is empty; falling back to direct Redis."
                )
            else:
                sentinel = Sentinel(
                    sentinels,
                    password=s.REDIS_PASSWORD,
                    db=s.REDIS_DB,
                    decode_responses=False,
                    **socket_kwargs,
                )
                client = sentinel.master_for(
                    s.ATHENA_REDIS_SENTINEL_MASTER,
                    password=s.REDIS_PASSWORD,
                    db=s.REDIS_DB,
                    decode_responses=False,
                    **socket_kwargs,
                )
                return client, None, sentinel

        pool = redis.ConnectionPool(
            host=s.REDIS_HOST,
            port=s.REDIS_PORT,
            db=s.REDIS_DB,
            password=s.REDIS_PASSWORD,
            max_connections=128,
            decode_responses=False,
            **socket_kwargs,
        )
        return redis.Redis(connection_pool=pool), pool, None

    def __init__(self, client: Optional[redis.Redis] = None, cipher: Optional[Fernet] = None) -> None:
        s = get_settings()
        if client is None:
            self.redis, self._pool, self._sentinel = self._build_redis_client(s)
        else:
            self.redis, self._pool, self._sentinel = client, None, None
        self.cipher: Fernet = cipher or s.CIPHER_SUITE
        self.namespace = s.ATHENA_REDIS_NAMESPACE
        self.audit_stream_name = self.ns_key(s.AUDIT_STREAM_NAME)
        self.pubsub_channel = self.ns_key(s.PUBSUB_CHANNEL)

    # ------------------- key helpers -------------------
    @staticmethod
    def item_key(item_id: str, prefix: str) -> str:
        return f"{prefix}:{item_id}:data"

    @staticmethod
    def version_key(item_id: str, prefix: str) -> str:
        return f"{prefix}:{item_id}:version"

    def ns_key(self, key: str) -> str:
        """Prefix Redis keys with ATHENA_REDIS_NAMESPACE (idempotent)."""
        ns = str(self.namespace or "").strip(":")
        if not ns:
            return key
        prefix = f"{ns}:"
        return key if key.startswith(prefix) else f"{prefix}{key}"

    # ------------------- connectivity -------------------
    async def is_available(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except Exception as exc:
            log.debug("Redis close failed: %s", exc)

    # ------------------- encrypted blobs -------------------
    def encrypt(self, payload: Dict[str, Any]) -> bytes:
        return self.cipher.encrypt(json.dumps(payload).encode())

    def decrypt(self, blob: bytes) -> Dict[str, Any]:
        return json.loads(self.cipher.decrypt(blob).decode())

    async def get_item(self, item_id: str, item_type: str) -> Optional[Dict[str, Any]]:
        """
        Decrypted JSON document or None.

        Redis outages propagate so callers can tell "missing" from "unreachable";
        undecryptable blobs are logged and treated as missing.
        """
        blob = await self.redis.get(self.ns_key(self.item_key(item_id, item_type)))
        if not blob:
            return None
        try:
            return self.decrypt(blob)
        except (InvalidToken, ValueError):
            log.exception("Failed to decrypt/parse item %s:%s", item_type, item_id)
            return None

    async def save_item(self, item_id: str, item_type: str, payload: Dict[str, Any], version: str) -> str:
        """
        Save a document transactionally:
        - encrypts content
        - updates the per-item version key
        - publishes change & writes audit entry
        """
        enc = self.encrypt(payload)
        key_data = self.ns_key(self.item_key(item_id, item_type))
        key_ver = self.ns_key(self.version_key(item_id, item_type))

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(key_data, enc)
                pipe.set(key_ver, version)
                await pipe.execute()
        except (ConnectionError, TimeoutError, ResponseError, WatchError) as exc:
            log.error("Redis transaction error during save_item: %s", exc)
            raise

        # publish & audit (best effort)
        await self.publish_event("updated", item_type, item_id, version)
        await self.audit(
            action="save_item",
            subject_type=item_type,
            subject_id=item_id,
            payload={"version": version},
        )
        return version

    # ------------------- Audit & Pub/Sub -------------------
    async def audit(self, action: str, subject_type: str, subject_id: str, payload: dict) -> None:
        """
        Append an audit event to a Redis Stream (best effort).
        """
        try:
            data = {
                "action": action,
                "subject_type": subject_type,
                "subject_id": subject_id,
                "payload": json.dumps(payload),
            }
            await self.redis.xadd(self.audit_stream_name.encode(), {k: v.encode() for k, v in data.items()}, maxlen=10000)
        except Exception as exc:
            log.debug("Audit write failed: %s", exc)

    async def publish_event(self, op: str, subject_type: str, subject_id: str, version: str) -> None:
        try:
            msg = json.dumps(
                {"op": op, "type": subject_type, "id": subject_id, "version": version, "origin": INSTANCE_ID}
            )
            await self.redis.publish(self.pubsub_channel, msg.encode())
        except Exception as exc:
            log.debug("Publish failed: %s", exc)


@lru_cache()
def get_redis_manager() -> RedisManager:
    """Process-wide manager sharing one connection pool."""
    return RedisManager()
