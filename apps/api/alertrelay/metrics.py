from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from time import monotonic
from typing import Any, Awaitable, TypeVar

T = TypeVar("T")


@dataclass
class RequestSample:
  ts: datetime
  status_code: int
  latency_ms: float


@dataclass
class _Timing:
  count: int = 0
  errors: int = 0
  total_ms: float = 0.0
  max_ms: float = 0.0


def _metric_key(name: str, tags: dict[str, str]) -> str:
  if not tags:
    return name
  parts = ",".join(f"{k}={tags[k]}" for k in sorted(tags))
  return f"{name}[{parts}]"


class RuntimeMetrics:
  def __init__(self) -> None:
    self._started_monotonic = monotonic()
    self._started_at = datetime.now(timezone.utc)
    self._samples: deque[RequestSample] = deque()
    self._counters: dict[str, int] = {}
    self._timings: dict[str, _Timing] = {}
    self._lock = Lock()

  @property
  def started_at(self) -> datetime:
    return self._started_at

  def uptime_seconds(self) -> int:
    return max(0, int(monotonic() - self._started_monotonic))

  def observe_request(self, status_code: int, latency_ms: float) -> None:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._samples.append(RequestSample(ts=now, status_code=status_code, latency_ms=latency_ms))
      self._prune_locked(now)

  def incr(self, name: str, value: int = 1, **tags: str) -> None:
    key = _metric_key(name, tags)
    with self._lock:
      self._counters[key] = self._counters.get(key, 0) + value

  def counter(self, name: str, **tags: str) -> int:
    with self._lock:
      return self._counters.get(_metric_key(name, tags), 0)

  def observe_timing(self, name: str, elapsed_ms: float, *, ok: bool = True) -> None:
    with self._lock:
      t = self._timings.setdefault(name, _Timing())
      t.count += 1
      t.total_ms += elapsed_ms
      t.max_ms = max(t.max_ms, elapsed_ms)
      if not ok:
        t.errors += 1

  async def measured(self, name: str, awaitable: Awaitable[T], *, timeout: float | None = None) -> T:
    """
    Await `awaitable` under a timer, optionally bounded by `timeout` seconds.

    Timeouts surface as asyncio.TimeoutError; callers decide whether that
    degrades or fails the request.
    """
    start = monotonic()
    ok = False
    try:
      if timeout is not None:
        result = await asyncio.wait_for(awaitable, timeout=timeout)
      else:
        result = await awaitable
      ok = True
      return result
    finally:
      self.observe_timing(name, (monotonic() - start) * 1000.0, ok=ok)

  def _prune_locked(self, now: datetime) -> None:
    cutoff = now - timedelta(hours=24)
    while self._samples and self._samples[0].ts < cutoff:
      self._samples.popleft()

  def snapshot(self) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._prune_locked(now)
      samples = list(self._samples)
      counters = dict(self._counters)
      timings = {
        k: {
          "count": t.count,
          "errors": t.errors,
          "avgMs": round(t.total_ms / t.count, 2) if t.count else 0.0,
          "maxMs": round(t.max_ms, 2),
        }
        for k, t in self._timings.items()
      }

    def window_stats(minutes: int) -> tuple[int, int]:
      cutoff = now - timedelta(minutes=minutes)
      total = 0
      errors = 0
      for sample in samples:
        if sample.ts < cutoff:
          continue
        total += 1
        if sample.status_code >= 500:
          errors += 1
      return total, errors

    total_15, errors_15 = window_stats(15)
    total_24h = len(samples)
    errors_24h = sum(1 for s in samples if s.status_code >= 500)

    p95_ms = 0.0
    if samples:
      sorted_latencies = sorted(s.latency_ms for s in samples)
      idx = max(0, int(len(sorted_latencies) * 0.95) - 1)
      p95_ms = sorted_latencies[idx]

    return {
      "uptimeSeconds": self.uptime_seconds(),
      "p95LatencyMs24h": round(p95_ms, 2),
      "requestCount15m": total_15,
      "requestCount24h": total_24h,
      "errorCount15m": errors_15,
      "errorCount24h": errors_24h,
      "errorRate15m": round((errors_15 / total_15) * 100, 2) if total_15 else 0.0,
      "errorRate24h": round((errors_24h / total_24h) * 100, 2) if total_24h else 0.0,
      "counters": counters,
      "timings": timings,
    }
