from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import structlog

from alertrelay.db import DependencyUnavailable
from alertrelay.ledger import EventLedger
from alertrelay.repositories import OAuthStateRepository

logger = structlog.get_logger()


@dataclass
class SweepResult:
  cutoff: datetime
  purged_events: int
  purged_oauth_states: int


async def sweep_once(
  ledger: EventLedger,
  oauth_states: OAuthStateRepository,
  *,
  retention_days: int,
  now: datetime | None = None,
) -> SweepResult:
  now = now or datetime.now(timezone.utc)
  cutoff = now - timedelta(days=max(0, retention_days))
  events = await ledger.purge_processed_older_than(cutoff)
  states = await oauth_states.cleanup_expired()
  return SweepResult(cutoff=cutoff, purged_events=events, purged_oauth_states=states)


async def retention_loop(
  ledger: EventLedger,
  oauth_states: OAuthStateRepository,
  *,
  retention_days: int,
  interval_seconds: int,
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
  while True:
    try:
      res = await sweep_once(ledger, oauth_states, retention_days=retention_days)
      logger.info("retention_sweep", events=res.purged_events, oauth_states=res.purged_oauth_states)
    except DependencyUnavailable as exc:
      logger.warning("retention_sweep_failed", dependency=exc.dependency, error=exc.message)
    except Exception:
      logger.exception("retention_sweep_failed")
    await sleep(max(60, int(interval_seconds)))
