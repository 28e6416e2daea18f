from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from alertrelay.db import DependencyUnavailable
from alertrelay.models import InboundEvent


@pytest.mark.anyio
async def test_record_if_new_returns_none_for_a_second_insert(services) -> None:
  ledger = services.ledger
  first = await ledger.record_if_new("a1-ts", "T1", "alert.triggered", {"n": 1})
  assert first is not None
  assert first.processed_at is None

  second = await ledger.record_if_new("a1-ts", "T1", "alert.triggered", {"n": 2})
  assert second is None
  row = await ledger.find_by_event_id("a1-ts")
  assert row.payload == {"n": 1}
  assert services.metrics.counter("ledger.duplicates") == 1


@pytest.mark.anyio
async def test_concurrent_record_if_new_yields_exactly_one_record(services) -> None:
  results = await asyncio.gather(
    *[services.ledger.record_if_new("race-1", "T1", "alert.triggered", {"i": i}) for i in range(5)]
  )
  assert sum(1 for r in results if r is not None) == 1
  assert len(await services.ledger.list_events(tenant_id="T1")) == 1


@pytest.mark.anyio
async def test_mark_processed_is_idempotent(services) -> None:
  ledger = services.ledger
  await ledger.record_if_new("e1", "T1", "alert.triggered", {})
  assert await ledger.mark_processed("e1") is True
  first = (await ledger.find_by_event_id("e1")).processed_at
  assert first is not None

  assert await ledger.mark_processed("e1") is False
  assert (await ledger.find_by_event_id("e1")).processed_at == first
  assert await ledger.mark_processed("missing") is False


@pytest.mark.anyio
async def test_record_failure_counts_attempts(services) -> None:
  ledger = services.ledger
  await ledger.record_if_new("e2", "T1", "alert.triggered", {})
  await ledger.record_failure("e2", "No destination configured")
  await ledger.record_failure("e2", "slack down")
  row = await ledger.find_by_event_id("e2")
  assert row.delivery_attempts == 2
  assert row.last_error == "slack down"
  assert row.processed_at is None


@pytest.mark.anyio
async def test_purge_deletes_only_old_processed_rows(services) -> None:
  ledger = services.ledger
  now = datetime.now(timezone.utc)
  old = now - timedelta(days=40)
  for event_id in ("old-done", "old-pending", "new-done"):
    await ledger.record_if_new(event_id, "T1", "alert.triggered", {})
  await ledger.mark_processed("old-done")
  await ledger.mark_processed("new-done")
  async with services.sessions() as db:
    await db.execute(
      update(InboundEvent).where(InboundEvent.event_id.in_(["old-done", "old-pending"])).values(created_at=old)
    )
    await db.commit()

  purged = await ledger.purge_processed_older_than(now - timedelta(days=30))
  assert purged == 1
  assert await ledger.find_by_event_id("old-done") is None
  assert await ledger.find_by_event_id("old-pending") is not None
  assert await ledger.find_by_event_id("new-done") is not None


@pytest.mark.anyio
async def test_list_events_filters_unprocessed(services) -> None:
  ledger = services.ledger
  await ledger.record_if_new("x1", "T1", "alert.triggered", {})
  await ledger.record_if_new("x2", "T1", "alert.triggered", {})
  await ledger.record_if_new("y1", "T2", "alert.triggered", {})
  await ledger.mark_processed("x1")
  pending = await ledger.list_events(tenant_id="T1", unprocessed_only=True)
  assert [e.event_id for e in pending] == ["x2"]


@pytest.mark.anyio
async def test_store_timeout_surfaces_as_dependency_unavailable(services) -> None:
  ledger = services.ledger
  ledger._timeout = 0.01

  class _SlowSession:
    async def __aenter__(self):
      await asyncio.sleep(1)

    async def __aexit__(self, *exc):
      return None

  ledger._sessions = lambda: _SlowSession()
  with pytest.raises(DependencyUnavailable):
    await ledger.record_if_new("slow", "T1", "alert.triggered", {})
  assert services.metrics.counter("store.errors", op="ledger.record", reason="timeout") == 1
