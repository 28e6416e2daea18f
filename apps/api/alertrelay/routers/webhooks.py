from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from alertrelay.deps import Services, get_services

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("/{tenant_id}/stockalert")
async def endpoint_info(tenant_id: str) -> dict:
  return {"message": "StockAlert webhook endpoint", "method": "POST required", "team": tenant_id}


@router.post("/{tenant_id}/stockalert")
async def receive_stockalert(
  tenant_id: str,
  request: Request,
  channel: str | None = None,
  services: Services = Depends(get_services),
) -> JSONResponse:
  # Signatures cover the exact bytes on the wire; never re-serialize before verifying.
  raw = await request.body()
  outcome = await services.pipeline.ingest(tenant_id, raw, request.headers, channel=channel)
  return JSONResponse(status_code=outcome.status_code, content=outcome.body, headers=outcome.headers or None)
