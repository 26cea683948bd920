"""
State Store

Holds pending authorization requests between the authorize leg and the
provider callback, behind opaque single-use tokens.

The backing store is shared by every gateway instance and must offer an
atomic take (get-and-delete). Redis is the production backend; the in-memory
backend serves tests and single-process deployments.
"""

import json
import logging
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Protocol

import redis

from gateway_errors import StateNotFoundError


@dataclass(frozen=True)
class AuthorizationRequest:
    """Inbound authorization request, opaque to the gateway except for client_id."""
    client_id: str
    redirect_uri: str = ""
    scope: str = ""
    response_type: str = "code"
    state: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizationRequest":
        return cls(
            client_id=data["client_id"],
            redirect_uri=data.get("redirect_uri", ""),
            scope=data.get("scope", ""),
            response_type=data.get("response_type", "code"),
            state=data.get("state", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class StateEntry:
    """Pending authorization request stored under a state token."""
    token: str
    payload: AuthorizationRequest
    created_at: int
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "payload": self.payload.to_dict(),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateEntry":
        return cls(
            token=data["token"],
            payload=AuthorizationRequest.from_dict(data["payload"]),
            created_at=int(data["created_at"]),
            expires_at=int(data["expires_at"]),
        )

    def is_expired(self, now: Optional[int] = None) -> bool:
        return self.expires_at <= (now if now is not None else int(time.time()))


class StateBackend(Protocol):
    """Key-value store with TTL writes and an atomic get-and-delete."""

    def put(self, key: str, value: str, ttl: int) -> None:
        ...

    def take(self, key: str) -> Optional[str]:
        ...

    def ping(self) -> bool:
        ...


class RedisStateBackend:
    """
    Redis-backed state storage.

    SECURITY: `take` runs as a server-side Lua script, so two callbacks racing
    on the same token cannot both read it before either deletes it.
    """

    def __init__(self, redis_client=None, redis_url: Optional[str] = None):
        """
        Args:
            redis_client: Existing Redis client (takes precedence)
            redis_url: Redis connection URL (default: from REDIS_URL env var)
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379")
        self.redis_client = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True
        )

        self.atomic_get_and_delete = self.redis_client.register_script("""
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
        """)
        logging.info(f"Redis state backend initialized at {self.redis_url}")

    def put(self, key: str, value: str, ttl: int) -> None:
        self.redis_client.setex(key, ttl, value)

    def take(self, key: str) -> Optional[str]:
        data = self.atomic_get_and_delete(keys=[key])
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return data or None

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logging.error(f"Redis ping failed: {e}")
            return False


class InMemoryStateBackend:
    """
    Process-local state storage with lazy TTL expiration. Expired entries
    are swept on every put, so abandoned flows do not accumulate.

    Only safe for a single gateway process; multi-instance deployments
    must use RedisStateBackend.
    """

    def __init__(self):
        self._store: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str, ttl: int) -> None:
        now = time.monotonic()
        with self._lock:
            self._purge_expired(now)
            self._store[key] = (value, now + ttl)

    def take(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._store.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            return None
        return value

    def ping(self) -> bool:
        return True

    def _purge_expired(self, now: float) -> int:
        """Drop expired entries. Caller must hold the lock."""
        expired_keys = [k for k, (_, expires_at) in self._store.items() if now >= expires_at]
        for key in expired_keys:
            del self._store[key]
        return len(expired_keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class StateStore:
    """Mints, stores and consumes single-use state tokens."""

    STATE_PREFIX = "gateway:state:"
    DEFAULT_TTL = 600  # 10 minutes

    def __init__(self, backend: StateBackend, ttl: Optional[int] = None):
        self.backend = backend
        self.ttl = ttl or int(os.getenv("STATE_TTL", str(self.DEFAULT_TTL)))

    def create(self, request: AuthorizationRequest) -> str:
        """
        Store a pending authorization request.

        Returns:
            Opaque state token (32 random bytes, url-safe base64)

        Raises:
            ValueError: If the request has no client_id
        """
        if not request.client_id:
            raise ValueError("Authorization request requires a client_id")

        token = secrets.token_urlsafe(32)
        now = int(time.time())
        entry = StateEntry(token=token, payload=request, created_at=now, expires_at=now + self.ttl)
        self.backend.put(f"{self.STATE_PREFIX}{token}", json.dumps(entry.to_dict()), self.ttl)
        logging.debug(f"Stored state {token[:10]}... for client {request.client_id}")
        return token

    def consume(self, token: Optional[str]) -> AuthorizationRequest:
        """
        Atomically retrieve and delete a pending request.

        Raises:
            StateNotFoundError: If the token is unknown, consumed or expired
        """
        if not token:
            raise StateNotFoundError()

        data = self.backend.take(f"{self.STATE_PREFIX}{token}")
        if not data:
            logging.warning(f"State not found or already consumed: {token[:10]}...")
            raise StateNotFoundError()

        try:
            entry = StateEntry.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            logging.error(f"Failed to deserialize state entry: {e}")
            raise StateNotFoundError()

        if entry.token != token or entry.is_expired():
            logging.warning(f"State expired: {token[:10]}...")
            raise StateNotFoundError()

        logging.debug(f"Consumed state {token[:10]}...")
        return entry.payload
