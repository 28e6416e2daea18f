from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

ALERT_EVENTS = ["alert.triggered"]


class StockAlertApiError(RuntimeError):
  def __init__(self, *, status_code: int, message: str, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.message = message
    self.details = details or {}


def _extract_error(payload: Any) -> str:
  if isinstance(payload, dict):
    for k in ("message", "error", "detail"):
      v = payload.get(k)
      if isinstance(v, str) and v.strip():
        return v.strip()[:500]
    return "StockAlert request failed"
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:500]
  return "StockAlert request failed"


async def _request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
  try:
    r = await client.request(method, path, **kwargs)
  except httpx.TimeoutException as exc:
    raise StockAlertApiError(status_code=504, message="StockAlert API timed out") from exc
  except httpx.HTTPError as exc:
    raise StockAlertApiError(status_code=502, message=f"StockAlert API unreachable: {exc.__class__.__name__}") from exc
  if r.status_code >= 400:
    try:
      payload = r.json()
    except ValueError:
      payload = (r.text or "")[:800]
    raise StockAlertApiError(
      status_code=r.status_code,
      message=_extract_error(payload),
      details=payload if isinstance(payload, dict) else {},
    )
  if r.status_code == 204 or not r.content:
    return None
  return r.json()


def _webhook_list(payload: Any) -> list[dict[str, Any]]:
  if isinstance(payload, list):
    items = payload
  elif isinstance(payload, dict) and isinstance(payload.get("webhooks"), list):
    items = payload["webhooks"]
  elif isinstance(payload, dict) and isinstance(payload.get("data"), list):
    items = payload["data"]
  else:
    return []
  return [w for w in items if isinstance(w, dict)]


@dataclass
class StockAlertClient:
  api_key: str
  base_url: str = "https://stockalert.pro/api/public/v1"
  timeout: float = 15.0
  transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

  def httpx_client(self) -> httpx.AsyncClient:
    headers = {"X-API-Key": self.api_key, "Accept": "application/json"}
    return httpx.AsyncClient(
      base_url=self.base_url.rstrip("/"),
      headers=headers,
      timeout=self.timeout,
      transport=self.transport,
    )

  async def create_webhook(self, *, name: str, url: str, events: list[str] | None = None) -> dict[str, Any]:
    body = {"name": name, "url": url, "events": events or ALERT_EVENTS, "is_active": True}
    async with self.httpx_client() as client:
      data = await _request_json(client, "POST", "/webhooks", json=body)
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
      data = data["data"]
    if not isinstance(data, dict) or not data.get("id"):
      raise StockAlertApiError(status_code=502, message="StockAlert API returned no webhook id")
    return data

  async def list_webhooks(self) -> list[dict[str, Any]]:
    async with self.httpx_client() as client:
      return _webhook_list(await _request_json(client, "GET", "/webhooks"))

  async def delete_webhook(self, webhook_id: str) -> None:
    async with self.httpx_client() as client:
      await _request_json(client, "DELETE", f"/webhooks/{webhook_id}")

  async def find_webhook_by_url(self, url: str) -> dict[str, Any] | None:
    for w in await self.list_webhooks():
      if w.get("url") == url:
        return w
    return None
