from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from alertrelay.deps import Services, get_services, require_admin
from alertrelay.models import InboundEvent
from alertrelay.pipeline import EventNotFound
from alertrelay.retention import sweep_once
from alertrelay.schemas import InboundEventOut, PurgeIn, PurgeOut, ReplayOut
from alertrelay.slack_client import DeliveryFailed

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _event_out(ev: InboundEvent, *, include_payload: bool = False) -> InboundEventOut:
  return InboundEventOut(
    id=ev.id,
    eventId=ev.event_id,
    tenantId=ev.tenant_id,
    eventType=ev.event_type,
    createdAt=ev.created_at,
    processedAt=ev.processed_at,
    deliveryAttempts=ev.delivery_attempts,
    lastError=ev.last_error,
    payload=ev.payload if include_payload else None,
  )


@router.get("/events", response_model=list[InboundEventOut])
async def list_events(
  tenantId: str | None = None,
  unprocessed: bool = False,
  limit: int = Query(default=100, ge=1, le=500),
  services: Services = Depends(get_services),
) -> list[InboundEventOut]:
  rows = await services.ledger.list_events(tenant_id=tenantId, unprocessed_only=unprocessed, limit=limit)
  return [_event_out(r) for r in rows]


@router.get("/events/{event_id}", response_model=InboundEventOut)
async def get_event(event_id: str, services: Services = Depends(get_services)) -> InboundEventOut:
  ev = await services.ledger.find_by_event_id(event_id)
  if ev is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
  return _event_out(ev, include_payload=True)


@router.post("/events/{event_id}/replay", response_model=ReplayOut)
async def replay_event(event_id: str, services: Services = Depends(get_services)) -> ReplayOut:
  try:
    delivered = await services.pipeline.redeliver(event_id)
  except EventNotFound:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
  except DeliveryFailed as exc:
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Delivery failed: {exc}")
  return ReplayOut(eventId=event_id, status="delivered" if delivered else "already_processed")


@router.post("/events/purge", response_model=PurgeOut)
async def purge_events(payload: PurgeIn | None = None, services: Services = Depends(get_services)) -> PurgeOut:
  days = services.settings.event_retention_days
  if payload is not None and payload.olderThanDays is not None:
    days = payload.olderThanDays
  res = await sweep_once(services.ledger, services.oauth_states, retention_days=days)
  return PurgeOut(purgedEvents=res.purged_events, purgedOAuthStates=res.purged_oauth_states, cutoff=res.cutoff)


@router.get("/status")
async def admin_status(services: Services = Depends(get_services)) -> dict:
  cfg = services.settings
  return {
    "version": cfg.app_version,
    "buildSha": cfg.build_sha,
    "redis": "enabled" if services.redis is not None else "disabled",
    "installations": await services.installations.count(),
    "unprocessedEvents": len(await services.ledger.list_events(unprocessed_only=True, limit=500)),
    "metrics": services.metrics.snapshot(),
  }
