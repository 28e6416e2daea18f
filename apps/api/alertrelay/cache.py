from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass
from threading import Lock
from time import monotonic
from typing import Any, Awaitable, Callable, Protocol

import structlog
from redis.exceptions import RedisError

from alertrelay.metrics import RuntimeMetrics

logger = structlog.get_logger()

INSTALLATIONS = "installations"
CHANNELS = "channels"
DEFAULT_CHANNEL = "default"


class CorruptCacheEntry(ValueError):
  pass


class CacheTier(Protocol):
  async def get(self, key: str) -> Any | None: ...

  async def set(self, key: str, value: Any, ttl: int) -> None: ...

  async def delete(self, key: str) -> None: ...

  async def delete_prefix(self, prefix: str) -> int: ...


@dataclass
class _Entry:
  value: Any
  expires_at: float


class MemoryTier:
  """
  Per-process dict with absolute expiry.

  Empty after every restart and never shared between replicas, so its TTL is
  capped to keep cross-replica staleness short.
  """

  def __init__(self, *, max_entries: int = 10_000, max_ttl: int | None = None, clock: Callable[[], float] = monotonic) -> None:
    self._entries: dict[str, _Entry] = {}
    self._lock = Lock()
    self._max_entries = max_entries
    self._max_ttl = max_ttl
    self._clock = clock

  async def get(self, key: str) -> Any | None:
    now = self._clock()
    with self._lock:
      e = self._entries.get(key)
      if e is None:
        return None
      if now >= e.expires_at:
        del self._entries[key]
        return None
      return e.value

  async def set(self, key: str, value: Any, ttl: int) -> None:
    if self._max_ttl is not None:
      ttl = min(ttl, self._max_ttl)
    now = self._clock()
    with self._lock:
      if len(self._entries) >= self._max_entries and key not in self._entries:
        self._evict_locked(now)
      self._entries[key] = _Entry(value=value, expires_at=now + max(1, int(ttl)))

  async def delete(self, key: str) -> None:
    with self._lock:
      self._entries.pop(key, None)

  async def delete_prefix(self, prefix: str) -> int:
    with self._lock:
      doomed = [k for k in self._entries if k.startswith(prefix)]
      for k in doomed:
        del self._entries[k]
      return len(doomed)

  def __len__(self) -> int:
    return len(self._entries)

  def _evict_locked(self, now: float) -> None:
    for k in [k for k, e in self._entries.items() if now >= e.expires_at]:
      del self._entries[k]
    if len(self._entries) >= self._max_entries:
      oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
      del self._entries[oldest]


class RedisTier:
  def __init__(self, client: Any) -> None:
    self._redis = client

  async def get(self, key: str) -> Any | None:
    raw = await self._redis.get(key)
    if raw is None:
      return None
    try:
      return json.loads(raw)
    except ValueError:
      await self._redis.delete(key)
      raise CorruptCacheEntry(key) from None

  async def set(self, key: str, value: Any, ttl: int) -> None:
    await self._redis.set(key, json.dumps(value), ex=max(1, int(ttl)))

  async def delete(self, key: str) -> None:
    await self._redis.delete(key)

  async def delete_prefix(self, prefix: str) -> int:
    n = 0
    async for k in self._redis.scan_iter(match=f"{prefix}*"):
      await self._redis.delete(k)
      n += 1
    return n


class NullTier:
  async def get(self, key: str) -> Any | None:
    return None

  async def set(self, key: str, value: Any, ttl: int) -> None:
    return None

  async def delete(self, key: str) -> None:
    return None

  async def delete_prefix(self, prefix: str) -> int:
    return 0


class TieredCache:
  """
  Near (in-process) tier in front of a far (shared) tier, read-through to a loader.

  Far-tier failures never fail the caller: they are logged, counted, and the
  read falls through to the loader.
  """

  def __init__(
    self,
    *,
    near: CacheTier,
    far: CacheTier,
    metrics: RuntimeMetrics,
    key_prefix: str = "",
    far_timeout: float | None = None,
  ) -> None:
    self.near = near
    self.far = far
    self._metrics = metrics
    self._prefix = key_prefix
    self._far_timeout = far_timeout

  def build_key(self, namespace: str, key: str) -> str:
    return f"{self._prefix}{namespace}:{key}"

  async def _far(self, op: str, namespace: str, awaitable: Awaitable[Any]) -> tuple[bool, Any]:
    try:
      return True, await self._metrics.measured(f"cache.far.{op}", awaitable, timeout=self._far_timeout)
    except CorruptCacheEntry:
      self._metrics.incr("cache.corrupt_entries", namespace=namespace)
      logger.warning("cache_entry_corrupt", op=op, namespace=namespace)
      return False, None
    except (RedisError, OSError, asyncio.TimeoutError) as exc:
      self._metrics.incr("cache.far_errors", op=op, namespace=namespace)
      logger.warning("cache_far_tier_error", op=op, namespace=namespace, error=exc.__class__.__name__)
      return False, None

  async def get(self, namespace: str, key: str, *, ttl: int = 300) -> Any | None:
    full = self.build_key(namespace, key)
    value = await self.near.get(full)
    if value is not None:
      self._metrics.incr("cache.hits", source="memory", namespace=namespace)
      return value
    ok, value = await self._far("get", namespace, self.far.get(full))
    if ok and value is not None:
      self._metrics.incr("cache.hits", source="shared", namespace=namespace)
      await self.near.set(full, value, ttl)
      return value
    self._metrics.incr("cache.misses", namespace=namespace)
    return None

  async def set(self, namespace: str, key: str, value: Any, ttl: int) -> None:
    full = self.build_key(namespace, key)
    await self.near.set(full, value, ttl)
    await self._far("set", namespace, self.far.set(full, value, ttl))

  async def delete(self, namespace: str, key: str) -> None:
    full = self.build_key(namespace, key)
    await self.near.delete(full)
    await self._far("delete", namespace, self.far.delete(full))
    self._metrics.incr("cache.invalidations", namespace=namespace)

  async def discard(self, namespace: str, key: str) -> None:
    """Drop an entry that no longer decodes into the caller's type."""
    self._metrics.incr("cache.corrupt_entries", namespace=namespace)
    logger.warning("cache_entry_corrupt", op="decode", namespace=namespace)
    await self.delete(namespace, key)

  async def clear_namespace(self, namespace: str) -> None:
    prefix = self.build_key(namespace, "")
    await self.near.delete_prefix(prefix)
    await self._far("clear", namespace, self.far.delete_prefix(prefix))

  async def get_or_load(
    self,
    namespace: str,
    key: str,
    loader: Callable[[], Awaitable[Any | None]],
    ttl: int,
  ) -> Any | None:
    cached = await self.get(namespace, key, ttl=ttl)
    if cached is not None:
      return cached
    value = await loader()
    if value is not None:
      await self.set(namespace, key, value, ttl)
    return value


@dataclass(frozen=True)
class TenantRecord:
  """Cacheable view of an installation; secrets stay Fernet-encrypted."""

  tenant_id: str
  team_name: str | None
  bot_token_encrypted: str
  webhook_secret_encrypted: str | None
  stockalert_webhook_id: str | None
  has_api_key: bool

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> "TenantRecord":
    return cls(
      tenant_id=str(data["tenant_id"]),
      team_name=data.get("team_name"),
      bot_token_encrypted=str(data["bot_token_encrypted"]),
      webhook_secret_encrypted=data.get("webhook_secret_encrypted"),
      stockalert_webhook_id=data.get("stockalert_webhook_id"),
      has_api_key=bool(data.get("has_api_key")),
    )


class TenantCache:
  def __init__(self, cache: TieredCache, *, installation_ttl: int, channel_ttl: int) -> None:
    self.cache = cache
    self.installation_ttl = installation_ttl
    self.channel_ttl = channel_ttl

  async def get_installation(
    self, tenant_id: str, loader: Callable[[], Awaitable[TenantRecord | None]]
  ) -> TenantRecord | None:
    async def _load() -> dict[str, Any] | None:
      rec = await loader()
      return rec.to_dict() if rec is not None else None

    return await self._read(INSTALLATIONS, tenant_id, _load, self.installation_ttl, TenantRecord.from_dict)

  async def get_default_channel(self, tenant_id: str, loader: Callable[[], Awaitable[str | None]]) -> str | None:
    async def _load() -> dict[str, Any] | None:
      channel_id = await loader()
      return {"channelId": channel_id} if channel_id else None

    return await self._read(
      CHANNELS, f"{tenant_id}:{DEFAULT_CHANNEL}", _load, self.channel_ttl, lambda data: str(data["channelId"])
    )

  async def _read(
    self,
    namespace: str,
    key: str,
    load: Callable[[], Awaitable[dict[str, Any] | None]],
    ttl: int,
    decode: Callable[[dict[str, Any]], Any],
  ) -> Any | None:
    data = await self.cache.get_or_load(namespace, key, load, ttl)
    if not data:
      return None
    try:
      return decode(data)
    except (KeyError, TypeError, ValueError, AttributeError):
      # Written by an older shape of the record; reload from the store once.
      await self.cache.discard(namespace, key)
    data = await self.cache.get_or_load(namespace, key, load, ttl)
    return decode(data) if data else None

  async def invalidate_installation(self, tenant_id: str) -> None:
    await self.cache.delete(INSTALLATIONS, tenant_id)

  async def invalidate_channels(self, tenant_id: str) -> None:
    await self.cache.delete(CHANNELS, f"{tenant_id}:{DEFAULT_CHANNEL}")
