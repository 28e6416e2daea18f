from __future__ import annotations

import pytest
from httpx import AsyncClient

from alertrelay.metrics import RuntimeMetrics
from alertrelay.rate_limit import SCOPE_COMMAND, SCOPE_OAUTH, SCOPE_WEBHOOK, RateLimiter, RateLimitRule

from conftest import T0, BrokenRedis, FakeClock, FakeRedis, alert_payload, post_signed, seed_installation, slash


def _limiter(redis, clock: FakeClock, *, limit: int = 3, window: int = 60) -> RateLimiter:
  return RateLimiter(
    redis,
    {SCOPE_COMMAND: RateLimitRule(limit, window)},
    metrics=RuntimeMetrics(),
    clock=clock,
  )


@pytest.mark.anyio
async def test_request_reaching_the_limit_is_admitted_and_next_is_rejected() -> None:
  clock = FakeClock()
  limiter = _limiter(FakeRedis(), clock, limit=3)
  results = []
  for _ in range(3):
    results.append(await limiter.check(SCOPE_COMMAND, "T1:U1"))
    clock.advance(1)
  assert [r.allowed for r in results] == [True, True, True]
  assert [r.remaining for r in results] == [2, 1, 0]

  rejected = await limiter.check(SCOPE_COMMAND, "T1:U1")
  assert not rejected.allowed
  assert rejected.remaining == 0
  # oldest surviving request was at T0
  assert rejected.reset_at == int(T0) + 60


@pytest.mark.anyio
async def test_rejected_requests_do_not_extend_the_window() -> None:
  clock = FakeClock()
  redis = FakeRedis()
  limiter = _limiter(redis, clock, limit=2)
  await limiter.check(SCOPE_COMMAND, "id")
  await limiter.check(SCOPE_COMMAND, "id")
  for _ in range(5):
    assert not (await limiter.check(SCOPE_COMMAND, "id")).allowed
  assert len(redis.zsets[limiter.key_for(SCOPE_COMMAND, "id")]) == 2


@pytest.mark.anyio
async def test_window_slides_and_admits_again_after_expiry() -> None:
  clock = FakeClock()
  limiter = _limiter(FakeRedis(), clock, limit=2, window=60)
  assert (await limiter.check(SCOPE_COMMAND, "id")).allowed
  clock.advance(30)
  assert (await limiter.check(SCOPE_COMMAND, "id")).allowed
  assert not (await limiter.check(SCOPE_COMMAND, "id")).allowed

  clock.advance(31)  # first request is now older than the window
  again = await limiter.check(SCOPE_COMMAND, "id")
  assert again.allowed
  assert again.remaining == 0
  assert not (await limiter.check(SCOPE_COMMAND, "id")).allowed


@pytest.mark.anyio
async def test_identifiers_and_scopes_are_independent() -> None:
  clock = FakeClock()
  limiter = RateLimiter(
    FakeRedis(),
    {SCOPE_COMMAND: RateLimitRule(1, 60), SCOPE_OAUTH: RateLimitRule(1, 900)},
    metrics=RuntimeMetrics(),
    clock=clock,
  )
  assert (await limiter.check(SCOPE_COMMAND, "a")).allowed
  assert (await limiter.check(SCOPE_COMMAND, "b")).allowed
  assert (await limiter.check(SCOPE_OAUTH, "a")).allowed
  assert not (await limiter.check(SCOPE_COMMAND, "a")).allowed
  assert (await limiter.check(SCOPE_OAUTH, "a")).reset_at == int(T0) + 900


@pytest.mark.anyio
async def test_key_expiry_is_refreshed_to_window_length() -> None:
  redis = FakeRedis()
  limiter = _limiter(redis, FakeClock(), window=60)
  await limiter.check(SCOPE_COMMAND, "id")
  assert redis.ttls[limiter.key_for(SCOPE_COMMAND, "id")] == 60


@pytest.mark.anyio
async def test_fails_open_when_redis_is_down_or_missing() -> None:
  metrics = RuntimeMetrics()
  down = RateLimiter(BrokenRedis(), {SCOPE_COMMAND: RateLimitRule(1, 60)}, metrics=metrics, clock=FakeClock())
  for _ in range(3):
    r = await down.check(SCOPE_COMMAND, "id")
    assert r.allowed and r.remaining == 1
  assert metrics.counter("ratelimit.errors", scope=SCOPE_COMMAND) == 3

  missing = RateLimiter(None, {SCOPE_COMMAND: RateLimitRule(1, 60)}, metrics=metrics)
  for _ in range(2):
    assert (await missing.check(SCOPE_COMMAND, "id")).allowed
  assert metrics.counter("ratelimit.disabled", scope=SCOPE_COMMAND) == 2
  assert metrics.counter("ratelimit.errors", scope=SCOPE_COMMAND) == 3


@pytest.mark.anyio
async def test_unknown_scope_is_a_programming_error() -> None:
  with pytest.raises(ValueError):
    await _limiter(FakeRedis(), FakeClock()).check("nope", "id")


@pytest.mark.anyio
async def test_thirty_first_command_in_a_minute_gets_429_with_reset(client: AsyncClient, services, clock: FakeClock) -> None:
  await seed_installation(services)
  for i in range(30):
    r = await slash(client, "test")
    assert r.status_code == 200, r.text
    clock.advance(0.5)

  r = await slash(client, "test")
  assert r.status_code == 429, r.text
  assert r.json()["reset"] == int(T0) + 60
  assert r.headers.get("retry-after")
  assert r.headers.get("x-ratelimit-remaining") == "0"

  # a different user in the same workspace is unaffected
  other = await slash(client, "test", user_id="U0OTHER")
  assert other.status_code == 200


@pytest.mark.anyio
async def test_webhook_scope_limits_per_tenant(client: AsyncClient, services) -> None:
  services.limiter.rules[SCOPE_WEBHOOK] = RateLimitRule(2, 60)
  secret = await seed_installation(services)
  for i in range(2):
    r = await post_signed(client, alert_payload(alert_id=f"a{i}"), secret)
    assert r.status_code == 200, r.text
  r = await post_signed(client, alert_payload(alert_id="a9"), secret)
  assert r.status_code == 429
  assert r.headers.get("retry-after")
  assert await services.ledger.find_by_event_id("a9-2026-10-19T12:00:00Z") is None
