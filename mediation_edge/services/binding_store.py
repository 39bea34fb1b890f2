"""
Runtime binding store.

Read-through / write-through store for ``RuntimeBinding`` snapshots:

  read : cache → control plane (2.5s budget) → local in-memory copy
  write: local copy + cache first, then best-effort push to the control plane

The local copy keeps routing correct while the control plane is slow or down.
The cache backend is injected (``InMemoryBindingCache`` or
``RedisBindingCache``) and guards itself; the local copy has its own lock.
"""

import asyncio
import hashlib
import json
import logging
import re
from typing import Dict, Optional, Protocol

from cachetools import TTLCache
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from mediation_edge.models.runtime_binding import RuntimeBinding
from mediation_edge.services.control_plane_client import ControlPlaneClient, ControlPlaneUnavailable

logger = logging.getLogger("mediation.binding_store")

_BEARER_RE = re.compile(r"^bearer(?:\s+|$)", re.I)


def normalize_authorization(value: Optional[str]) -> str:
    """``"  bearer  sk_x "`` → ``"Bearer sk_x"``; empty when no token is present."""
    token = extract_api_key(value)
    return f"Bearer {token}" if token else ""


def extract_api_key(value: Optional[str]) -> str:
    return _BEARER_RE.sub("", str(value or "").strip()).strip()


def hash_api_key(authorization: str) -> str:
    """SHA-256 hex of the bearer token (``Bearer `` prefix stripped)."""
    return hashlib.sha256(extract_api_key(authorization).encode("utf-8")).hexdigest()


def derive_tenant_id(key_hash: str, epoch: str = "v1") -> str:
    return f"tenant_{key_hash[:16]}_{epoch}"


# ═══════════════════════════════════════════
#  Cache backends
# ═══════════════════════════════════════════

class BindingCache(Protocol):
    async def get(self, key: str) -> Optional[RuntimeBinding]: ...

    async def set(self, key: str, binding: RuntimeBinding) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryBindingCache:
    """Process-local TTL cache."""

    def __init__(self, ttl: float = 30, maxsize: int = 10_000):
        self.ttl = ttl
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[RuntimeBinding]:
        async with self._lock:
            return self._cache.get(key)

    async def set(self, key: str, binding: RuntimeBinding) -> None:
        async with self._lock:
            self._cache[key] = binding

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._cache.pop(key, None)


class RedisBindingCache:
    """Shared cache for multi-instance deployments; snapshots stored as JSON with SETEX."""

    def __init__(self, redis_url: str = "", ttl: int = 30, client=None, prefix: str = "mediation:binding:"):
        self.ttl = ttl
        self.prefix = prefix
        self._redis = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )

    async def get(self, key: str) -> Optional[RuntimeBinding]:
        try:
            data = await self._redis.get(self.prefix + key)
        except RedisError as e:
            logger.debug("Binding cache get error: %s", e)
            return None
        if not data:
            return None
        try:
            return RuntimeBinding.from_dict(json.loads(data))
        except (ValueError, TypeError) as e:
            logger.debug("Binding cache entry for %s unreadable: %s", key, e)
            return None

    async def set(self, key: str, binding: RuntimeBinding) -> None:
        try:
            await self._redis.setex(self.prefix + key, self.ttl, json.dumps(binding.to_dict(), default=str))
        except RedisError as e:
            logger.debug("Binding cache set error: %s", e)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self.prefix + key)
        except RedisError as e:
            logger.debug("Binding cache delete error: %s", e)


# ═══════════════════════════════════════════
#  Store
# ═══════════════════════════════════════════

class BindingStore:
    def __init__(
        self,
        control_plane: ControlPlaneClient,
        cache: Optional[BindingCache] = None,
        remote_timeout: float = 2.5,
    ):
        self.control_plane = control_plane
        self.cache = cache if cache is not None else InMemoryBindingCache()
        self.remote_timeout = remote_timeout
        self._local: Dict[str, RuntimeBinding] = {}
        self._lock = asyncio.Lock()

    async def _remember(self, key_hash: str, binding: RuntimeBinding) -> None:
        async with self._lock:
            self._local[key_hash] = binding
        # Cache I/O stays outside the store lock.
        await self.cache.set(key_hash, binding)

    async def _local_copy(self, key_hash: str) -> Optional[RuntimeBinding]:
        async with self._lock:
            return self._local.get(key_hash)

    @staticmethod
    def _fold(key_hash: str, tenant_id: str, local: Optional[RuntimeBinding], remote: dict) -> RuntimeBinding:
        """Remote fields over the local copy; key hash and tenant id stay ours."""
        merged = local.to_dict() if local else {}
        merged.update({k: v for k, v in remote.items() if v is not None})
        merged["keyHash"] = key_hash
        merged["tenantId"] = (local.tenant_id if local else "") or merged.get("tenantId") or tenant_id
        return RuntimeBinding.from_dict(merged)

    async def get(self, authorization: str, tenant_id: str = "") -> Optional[RuntimeBinding]:
        """Binding for this API key, or None when the key has never been bound."""
        key_hash = hash_api_key(authorization)

        cached = await self.cache.get(key_hash)
        if cached is not None:
            return cached

        local = await self._local_copy(key_hash)
        try:
            remote = await asyncio.wait_for(
                self.control_plane.fetch_binding(normalize_authorization(authorization)),
                self.remote_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Binding read timed out after %.1fs; using local copy", self.remote_timeout)
            return local
        except ControlPlaneUnavailable as e:
            logger.info("Binding read degraded to local copy: %s", e)
            return local

        if remote is None:
            return local

        try:
            binding = self._fold(key_hash, tenant_id, local, remote)
        except (ValueError, TypeError) as e:
            logger.warning("Control plane returned an unusable binding: %s", e)
            return local

        await self._remember(key_hash, binding)
        return binding

    async def save(self, authorization: str, binding: RuntimeBinding) -> RuntimeBinding:
        """
        Store a complete snapshot.

        The local copy and cache are updated before the remote write, so the
        returned binding is authoritative for routing even if the control
        plane never acknowledges it.
        """
        key_hash = hash_api_key(authorization)
        if binding.key_hash != key_hash:
            raise ValueError("binding key_hash does not match the API key")

        await self._remember(key_hash, binding)

        try:
            echoed = await asyncio.wait_for(
                self.control_plane.save_binding(normalize_authorization(authorization), binding.to_dict()),
                self.remote_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Binding write timed out after %.1fs; kept local snapshot", self.remote_timeout)
            return binding
        except ControlPlaneUnavailable as e:
            logger.warning("Binding write failed, kept local snapshot: %s", e)
            return binding

        if not echoed:
            return binding
        try:
            reconciled = self._fold(key_hash, binding.tenant_id, binding, echoed)
        except (ValueError, TypeError) as e:
            logger.warning("Control plane echoed an unusable binding: %s", e)
            return binding

        await self._remember(key_hash, reconciled)
        return reconciled
