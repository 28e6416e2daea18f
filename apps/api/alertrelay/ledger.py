from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alertrelay.db import store_call
from alertrelay.metrics import RuntimeMetrics
from alertrelay.models import InboundEvent, utcnow

logger = structlog.get_logger()


class EventLedger:
  """
  Exactly-once intake for inbound events, keyed by `event_id`.

  The unique constraint on `webhook_events.event_id` is the arbiter: two
  concurrent inserts of the same id yield one row and one `None`.
  """

  def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, metrics: RuntimeMetrics, timeout: float) -> None:
    self._sessions = session_factory
    self._metrics = metrics
    self._timeout = timeout

  async def record_if_new(
    self, event_id: str, tenant_id: str, event_type: str, payload: dict[str, Any]
  ) -> InboundEvent | None:
    async def _op() -> InboundEvent | None:
      async with self._sessions() as db:
        ev = InboundEvent(event_id=event_id, tenant_id=tenant_id, event_type=event_type, payload=payload)
        db.add(ev)
        try:
          await db.commit()
        except IntegrityError:
          await db.rollback()
          return None
        return ev

    ev = await store_call(self._metrics, "ledger.record", _op(), timeout=self._timeout)
    if ev is None:
      self._metrics.incr("ledger.duplicates")
      logger.info("event_duplicate", event_id=event_id, tenant_id=tenant_id)
    return ev

  async def mark_processed(self, event_id: str) -> bool:
    async def _op() -> bool:
      async with self._sessions() as db:
        res = await db.execute(
          update(InboundEvent)
          .where(InboundEvent.event_id == event_id, InboundEvent.processed_at.is_(None))
          .values(processed_at=utcnow(), last_error=None)
        )
        await db.commit()
        return bool(res.rowcount)

    return await store_call(self._metrics, "ledger.mark_processed", _op(), timeout=self._timeout)

  async def record_failure(self, event_id: str, error: str) -> None:
    async def _op() -> None:
      async with self._sessions() as db:
        await db.execute(
          update(InboundEvent)
          .where(InboundEvent.event_id == event_id)
          .values(delivery_attempts=InboundEvent.delivery_attempts + 1, last_error=error[:2000])
        )
        await db.commit()

    await store_call(self._metrics, "ledger.record_failure", _op(), timeout=self._timeout)

  async def find_by_event_id(self, event_id: str) -> InboundEvent | None:
    async def _op() -> InboundEvent | None:
      async with self._sessions() as db:
        res = await db.execute(select(InboundEvent).where(InboundEvent.event_id == event_id))
        return res.scalar_one_or_none()

    return await store_call(self._metrics, "ledger.find", _op(), timeout=self._timeout)

  async def list_events(
    self, *, tenant_id: str | None = None, unprocessed_only: bool = False, limit: int = 100
  ) -> list[InboundEvent]:
    async def _op() -> list[InboundEvent]:
      async with self._sessions() as db:
        q = select(InboundEvent)
        if tenant_id:
          q = q.where(InboundEvent.tenant_id == tenant_id)
        if unprocessed_only:
          q = q.where(InboundEvent.processed_at.is_(None))
        res = await db.execute(q.order_by(InboundEvent.created_at.desc()).limit(limit))
        return list(res.scalars().all())

    return await store_call(self._metrics, "ledger.list", _op(), timeout=self._timeout)

  async def purge_processed_older_than(self, cutoff: datetime) -> int:
    async def _op() -> int:
      async with self._sessions() as db:
        res = await db.execute(
          delete(InboundEvent).where(InboundEvent.processed_at.is_not(None), InboundEvent.created_at < cutoff)
        )
        await db.commit()
        return int(res.rowcount or 0)

    n = await store_call(self._metrics, "ledger.purge", _op(), timeout=self._timeout)
    if n:
      logger.info("events_purged", count=n, cutoff=cutoff.isoformat())
    return n
