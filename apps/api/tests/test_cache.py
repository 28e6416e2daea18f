from __future__ import annotations

import json

import pytest

from alertrelay.cache import CHANNELS, INSTALLATIONS, MemoryTier, NullTier, RedisTier, TenantCache, TieredCache
from alertrelay.metrics import RuntimeMetrics

from conftest import TENANT_ID, BrokenRedis, FakeClock, FakeRedis, alert_payload, post_signed, seed_installation


def _tiered(near: MemoryTier, far, metrics: RuntimeMetrics) -> TieredCache:
  return TieredCache(near=near, far=far, metrics=metrics, key_prefix="t:")


@pytest.mark.anyio
async def test_memory_tier_expires_entries_and_caps_ttl() -> None:
  clock = FakeClock(100.0)
  tier = MemoryTier(max_ttl=60, clock=clock)
  await tier.set("k", {"a": 1}, ttl=3600)
  assert await tier.get("k") == {"a": 1}
  clock.advance(59)
  assert await tier.get("k") == {"a": 1}
  clock.advance(2)
  assert await tier.get("k") is None


@pytest.mark.anyio
async def test_memory_tier_evicts_when_full() -> None:
  clock = FakeClock(0.0)
  tier = MemoryTier(max_entries=2, clock=clock)
  await tier.set("a", 1, ttl=10)
  await tier.set("b", 2, ttl=20)
  await tier.set("c", 3, ttl=30)
  assert len(tier) == 2
  assert await tier.get("a") is None
  assert await tier.get("c") == 3


@pytest.mark.anyio
async def test_read_path_is_near_then_far_then_loader() -> None:
  metrics = RuntimeMetrics()
  redis = FakeRedis()
  cache = _tiered(MemoryTier(), RedisTier(redis), metrics)
  loads = 0

  async def loader():
    nonlocal loads
    loads += 1
    return {"v": loads}

  assert await cache.get_or_load(INSTALLATIONS, "T1", loader, ttl=300) == {"v": 1}
  assert json.loads(redis.kv["t:installations:T1"]) == {"v": 1}
  assert redis.ttls["t:installations:T1"] == 300

  assert await cache.get_or_load(INSTALLATIONS, "T1", loader, ttl=300) == {"v": 1}
  assert loads == 1
  assert metrics.counter("cache.hits", source="memory", namespace=INSTALLATIONS) == 1

  # a fresh process sees the shared tier and back-fills its own
  other = _tiered(MemoryTier(), RedisTier(redis), metrics)
  assert await other.get_or_load(INSTALLATIONS, "T1", loader, ttl=300) == {"v": 1}
  assert loads == 1
  assert metrics.counter("cache.hits", source="shared", namespace=INSTALLATIONS) == 1
  assert await other.near.get("t:installations:T1") == {"v": 1}


@pytest.mark.anyio
async def test_none_is_not_cached() -> None:
  cache = _tiered(MemoryTier(), NullTier(), RuntimeMetrics())
  calls = 0

  async def loader():
    nonlocal calls
    calls += 1
    return None

  assert await cache.get_or_load(INSTALLATIONS, "T404", loader, ttl=60) is None
  assert await cache.get_or_load(INSTALLATIONS, "T404", loader, ttl=60) is None
  assert calls == 2


@pytest.mark.anyio
async def test_delete_forces_reload_from_loader() -> None:
  redis = FakeRedis()
  cache = _tiered(MemoryTier(), RedisTier(redis), RuntimeMetrics())
  value = {"v": "old"}

  async def loader():
    return dict(value)

  assert await cache.get_or_load(CHANNELS, "T1:default", loader, ttl=60) == {"v": "old"}
  value["v"] = "new"
  assert await cache.get_or_load(CHANNELS, "T1:default", loader, ttl=60) == {"v": "old"}
  await cache.delete(CHANNELS, "T1:default")
  assert "t:channels:T1:default" not in redis.kv
  assert await cache.get_or_load(CHANNELS, "T1:default", loader, ttl=60) == {"v": "new"}


@pytest.mark.anyio
async def test_clear_namespace_leaves_other_namespaces() -> None:
  redis = FakeRedis()
  cache = _tiered(MemoryTier(), RedisTier(redis), RuntimeMetrics())
  await cache.set(INSTALLATIONS, "T1", {"a": 1}, ttl=60)
  await cache.set(CHANNELS, "T1:default", {"b": 2}, ttl=60)
  await cache.clear_namespace(INSTALLATIONS)
  assert await cache.get(INSTALLATIONS, "T1") is None
  assert await cache.get(CHANNELS, "T1:default") == {"b": 2}
  assert "t:channels:T1:default" in redis.kv


@pytest.mark.anyio
async def test_shared_tier_failure_degrades_to_loader_and_is_counted() -> None:
  metrics = RuntimeMetrics()
  cache = _tiered(MemoryTier(), RedisTier(BrokenRedis()), metrics)

  async def loader():
    return {"ok": True}

  assert await cache.get_or_load(INSTALLATIONS, "T1", loader, ttl=60) == {"ok": True}
  # near tier still works
  assert await cache.get(INSTALLATIONS, "T1") == {"ok": True}
  await cache.delete(INSTALLATIONS, "T1")
  assert metrics.counter("cache.far_errors", op="get", namespace=INSTALLATIONS) == 1
  assert metrics.counter("cache.far_errors", op="set", namespace=INSTALLATIONS) == 1
  assert metrics.counter("cache.far_errors", op="delete", namespace=INSTALLATIONS) == 1


@pytest.mark.anyio
async def test_tenant_cache_invalidation_reloads_installation(services) -> None:
  await seed_installation(services)
  tenants: TenantCache = services.tenants
  first = await services.pipeline.resolve_tenant(TENANT_ID)
  assert first is not None and first.stockalert_webhook_id is None

  await services.installations.update(TENANT_ID, stockalert_webhook_id="wh_1")
  stale = await services.pipeline.resolve_tenant(TENANT_ID)
  assert stale.stockalert_webhook_id is None

  await tenants.invalidate_installation(TENANT_ID)
  fresh = await services.pipeline.resolve_tenant(TENANT_ID)
  assert fresh.stockalert_webhook_id == "wh_1"


@pytest.mark.anyio
async def test_cached_installation_keeps_secrets_encrypted(services, fake_redis: FakeRedis) -> None:
  secret = await seed_installation(services)
  await services.pipeline.resolve_tenant(TENANT_ID)
  raw = fake_redis.kv[f"{services.settings.cache_key_prefix}installations:{TENANT_ID}"]
  assert secret not in raw
  assert "xoxb-" not in raw


@pytest.mark.anyio
async def test_undecodable_shared_entry_is_a_counted_miss_and_is_dropped() -> None:
  metrics = RuntimeMetrics()
  redis = FakeRedis()
  redis.kv["t:installations:T1"] = "{not json"
  cache = _tiered(MemoryTier(), RedisTier(redis), metrics)

  async def loader():
    return {"v": 1}

  assert await cache.get_or_load(INSTALLATIONS, "T1", loader, ttl=60) == {"v": 1}
  assert metrics.counter("cache.corrupt_entries", namespace=INSTALLATIONS) == 1
  assert json.loads(redis.kv["t:installations:T1"]) == {"v": 1}


@pytest.mark.anyio
async def test_stale_installation_shape_is_reloaded_from_the_store(
  client, services, fake_redis: FakeRedis, chat
) -> None:
  secret = await seed_installation(services)
  key = f"{services.settings.cache_key_prefix}installations:{TENANT_ID}"
  fake_redis.kv[key] = json.dumps({"tenant_id": TENANT_ID})

  r = await post_signed(client, alert_payload(), secret)
  assert r.status_code == 200, r.text
  assert len(chat.messages) == 1
  assert services.metrics.counter("cache.corrupt_entries", namespace=INSTALLATIONS) == 1
  assert "bot_token_encrypted" in json.loads(fake_redis.kv[key])


@pytest.mark.anyio
async def test_stale_channel_shape_is_reloaded_from_the_store(services, fake_redis: FakeRedis) -> None:
  await seed_installation(services)
  fake_redis.kv[f"{services.settings.cache_key_prefix}channels:{TENANT_ID}:default"] = json.dumps({"id": "C0OLD"})
  assert await services.pipeline.resolve_channel(TENANT_ID) == "C0ALERTS"
