from __future__ import annotations

import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from redis.exceptions import RedisError

from alertrelay.config import Settings
from alertrelay.metrics import RuntimeMetrics

logger = structlog.get_logger()

SCOPE_COMMAND = "command"
SCOPE_OAUTH = "oauth"
SCOPE_WEBHOOK = "webhook"


@dataclass(frozen=True)
class RateLimitRule:
  limit: int
  window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
  allowed: bool
  limit: int
  remaining: int
  reset_at: int

  def retry_after(self, now: float | None = None) -> int:
    now = time.time() if now is None else now
    return max(1, int(math.ceil(self.reset_at - now)))

  def headers(self) -> dict[str, str]:
    h = {
      "X-RateLimit-Limit": str(self.limit),
      "X-RateLimit-Remaining": str(self.remaining),
      "X-RateLimit-Reset": str(self.reset_at),
    }
    if not self.allowed:
      h["Retry-After"] = str(self.retry_after())
    return h


def rules_from_settings(cfg: Settings) -> dict[str, RateLimitRule]:
  return {
    SCOPE_COMMAND: RateLimitRule(cfg.rate_limit_command_per_minute, cfg.rate_limit_command_window_seconds),
    SCOPE_OAUTH: RateLimitRule(cfg.rate_limit_oauth_per_window, cfg.rate_limit_oauth_window_seconds),
    SCOPE_WEBHOOK: RateLimitRule(cfg.rate_limit_webhook_per_minute, cfg.rate_limit_webhook_window_seconds),
  }


class RateLimiter:
  """
  Sliding-window limiter over a Redis sorted set per (scope, identifier).

  Members are request timestamps in milliseconds. The prune, insert, count and
  expiry refresh run in one MULTI so concurrent replicas see a consistent
  window. Without Redis every check is admitted.
  """

  def __init__(
    self,
    redis_client: Any | None,
    rules: dict[str, RateLimitRule],
    *,
    metrics: RuntimeMetrics,
    key_prefix: str = "",
    timeout: float | None = None,
    clock: Callable[[], float] = time.time,
  ) -> None:
    self._redis = redis_client
    self.rules = dict(rules)
    self._metrics = metrics
    self._prefix = key_prefix
    self._timeout = timeout
    self._clock = clock
    if redis_client is None:
      logger.warning("rate_limiter_disabled", scopes=sorted(self.rules))

  def key_for(self, scope: str, identifier: str) -> str:
    return f"{self._prefix}ratelimit:{scope}:{identifier}"

  def rule(self, scope: str) -> RateLimitRule:
    try:
      return self.rules[scope]
    except KeyError:
      raise ValueError(f"Unknown rate limit scope: {scope}") from None

  async def check(self, scope: str, identifier: str) -> RateLimitResult:
    rule = self.rule(scope)
    now = self._clock()
    if self._redis is None:
      self._metrics.incr("ratelimit.disabled", scope=scope)
      return self._fail_open(rule, now)
    try:
      result = await self._metrics.measured(
        "ratelimit.check", self._window(scope, identifier, rule, now), timeout=self._timeout
      )
    except (RedisError, OSError, asyncio.TimeoutError) as exc:
      self._metrics.incr("ratelimit.errors", scope=scope)
      logger.warning("rate_limit_store_error", scope=scope, error=exc.__class__.__name__)
      return self._fail_open(rule, now)
    if not result.allowed:
      self._metrics.incr("ratelimit.rejected", scope=scope)
      logger.info("rate_limited", scope=scope, identifier=identifier, reset_at=result.reset_at)
    return result

  async def _window(self, scope: str, identifier: str, rule: RateLimitRule, now: float) -> RateLimitResult:
    key = self.key_for(scope, identifier)
    now_ms = int(now * 1000)
    window_ms = rule.window_seconds * 1000
    member = f"{now_ms}-{uuid.uuid4().hex}"
    async with self._redis.pipeline(transaction=True) as pipe:
      pipe.zremrangebyscore(key, "-inf", now_ms - window_ms)
      pipe.zadd(key, {member: now_ms})
      pipe.zcard(key)
      pipe.zrange(key, 0, 0, withscores=True)
      pipe.expire(key, rule.window_seconds)
      _, _, count, oldest, _ = await pipe.execute()

    count = int(count)
    if count > rule.limit:
      # The rejected request must not occupy a slot in the window.
      await self._redis.zrem(key, member)
      oldest_ms = float(oldest[0][1]) if oldest else float(now_ms)
      reset_at = int(math.ceil((oldest_ms + window_ms) / 1000.0))
      return RateLimitResult(allowed=False, limit=rule.limit, remaining=0, reset_at=reset_at)
    return RateLimitResult(
      allowed=True,
      limit=rule.limit,
      remaining=max(0, rule.limit - count),
      reset_at=int(math.ceil(now + rule.window_seconds)),
    )

  def _fail_open(self, rule: RateLimitRule, now: float) -> RateLimitResult:
    return RateLimitResult(
      allowed=True,
      limit=rule.limit,
      remaining=rule.limit,
      reset_at=int(math.ceil(now + rule.window_seconds)),
    )

  async def reset(self, scope: str, identifier: str) -> None:
    if self._redis is None:
      return
    await self._redis.delete(self.key_for(scope, identifier))
