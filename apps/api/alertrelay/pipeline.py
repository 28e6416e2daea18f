"""
Ingestion of one StockAlert webhook delivery.

Stages run in a fixed order and the first failing stage decides the response:
rate limit, tenant resolution, signature, schema, dedup, delivery, mark
processed. Nothing is written to the ledger before the signature and schema
checks pass, and an event is only marked processed after Slack accepted it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import structlog
from pydantic import ValidationError

from alertrelay.cache import TenantCache, TenantRecord
from alertrelay.config import Settings
from alertrelay.db import DependencyUnavailable
from alertrelay.formatter import render_alert
from alertrelay.ledger import EventLedger
from alertrelay.metrics import RuntimeMetrics
from alertrelay.rate_limit import SCOPE_WEBHOOK, RateLimiter
from alertrelay.repositories import ChannelRepository, InstallationRepository
from alertrelay.schemas import EVENT_ALERT_TRIGGERED, AlertEvent
from alertrelay.security import IntegrationSecretDecryptError, decrypt_integration_secret
from alertrelay.signing import verify_signature
from alertrelay.slack_client import ChatClient, DeliveryFailed

logger = structlog.get_logger()

SIGNATURE_HEADERS = ("x-stockalert-signature", "x-signature", "x-webhook-signature")

Renderer = Callable[[AlertEvent], tuple[str, list[dict[str, Any]]]]


@dataclass
class IngestOutcome:
  status_code: int
  body: dict[str, Any]
  headers: dict[str, str] = field(default_factory=dict)


class EventNotFound(LookupError):
  pass


def signature_from(headers: Mapping[str, str]) -> str | None:
  lowered = {k.lower(): v for k, v in headers.items()}
  for name in SIGNATURE_HEADERS:
    v = lowered.get(name)
    if v:
      return v
  return None


class IngestPipeline:
  def __init__(
    self,
    *,
    settings: Settings,
    metrics: RuntimeMetrics,
    limiter: RateLimiter,
    tenants: TenantCache,
    installations: InstallationRepository,
    channels: ChannelRepository,
    ledger: EventLedger,
    chat: ChatClient,
    renderer: Renderer = render_alert,
  ) -> None:
    self.settings = settings
    self.metrics = metrics
    self.limiter = limiter
    self.tenants = tenants
    self.installations = installations
    self.channels = channels
    self.ledger = ledger
    self.chat = chat
    self.renderer = renderer

  async def resolve_tenant(self, tenant_id: str) -> TenantRecord | None:
    return await self.tenants.get_installation(tenant_id, lambda: self.installations.load_record(tenant_id))

  async def resolve_channel(self, tenant_id: str) -> str | None:
    return await self.tenants.get_default_channel(tenant_id, lambda: self.channels.default_channel_id(tenant_id))

  def _secret_for(self, record: TenantRecord) -> str | None:
    if record.webhook_secret_encrypted:
      return decrypt_integration_secret(record.webhook_secret_encrypted)
    return self.settings.stockalert_webhook_secret or None

  def _reject(self, reason: str, status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> IngestOutcome:
    self.metrics.incr("webhook.rejected", reason=reason)
    return IngestOutcome(status_code=status_code, body=body, headers=headers or {})

  async def ingest(
    self,
    tenant_id: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    *,
    channel: str | None = None,
  ) -> IngestOutcome:
    log = logger.bind(tenant_id=tenant_id)
    self.metrics.incr("webhook.requests")
    try:
      return await self._ingest(log, tenant_id, raw_body, headers, channel)
    except DependencyUnavailable as exc:
      log.error("webhook_dependency_unavailable", dependency=exc.dependency, error=exc.message)
      return self._reject("dependency_unavailable", 500, {"error": "Internal server error"})

  async def _ingest(
    self,
    log: Any,
    tenant_id: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    channel: str | None,
  ) -> IngestOutcome:
    limit = await self.limiter.check(SCOPE_WEBHOOK, tenant_id)
    if not limit.allowed:
      return self._reject(
        "rate_limited", 429, {"error": "Too many requests", "reset": limit.reset_at}, limit.headers()
      )

    record = await self.resolve_tenant(tenant_id)
    if record is None:
      log.info("webhook_rejected", reason="unknown_tenant")
      return self._reject("unknown_tenant", 404, {"error": "Installation not found"})

    try:
      secret = self._secret_for(record)
    except IntegrationSecretDecryptError:
      log.error("webhook_secret_undecryptable")
      secret = None
    if not secret:
      log.warning("webhook_rejected", reason="not_configured")
      return self._reject(
        "not_configured", 503, {"error": "Webhook not configured. Please run /stockalert apikey <your-api-key>"}
      )

    if not verify_signature(raw_body, signature_from(headers), secret):
      log.warning("webhook_rejected", reason="invalid_signature")
      return self._reject("invalid_signature", 401, {"error": "Invalid signature"})

    try:
      body = json.loads(raw_body)
    except ValueError:
      return self._reject("invalid_json", 400, {"error": "Invalid JSON payload"})
    try:
      event = AlertEvent.model_validate(body)
    except ValidationError as exc:
      return self._reject(
        "validation_error", 400, {"error": "Invalid webhook payload", "details": json.loads(exc.json(include_url=False))}
      )

    event_id = event.event_id
    log = log.bind(event_id=event_id, event_type=event.event)
    row = await self.ledger.record_if_new(event_id, tenant_id, event.event, event.model_dump(mode="json"))
    if row is None:
      return IngestOutcome(status_code=200, body={"success": True, "duplicate": True})

    if event.event == EVENT_ALERT_TRIGGERED:
      try:
        await self.deliver(record, event, channel=channel)
      except DeliveryFailed as exc:
        log.error("webhook_delivery_failed", error=str(exc))
        self.metrics.incr("webhook.delivery_failed")
        await self.ledger.record_failure(event_id, str(exc))
        return IngestOutcome(status_code=500, body={"error": "Delivery failed"})
      self.metrics.incr("webhook.delivered")

    await self.ledger.mark_processed(event_id)
    log.info("webhook_processed", symbol=event.data.symbol)
    return IngestOutcome(status_code=200, body={"success": True})

  async def deliver(self, record: TenantRecord, event: AlertEvent, *, channel: str | None = None) -> None:
    destination = channel or await self.resolve_channel(record.tenant_id)
    if not destination:
      raise DeliveryFailed("No destination configured")
    try:
      token = decrypt_integration_secret(record.bot_token_encrypted)
    except IntegrationSecretDecryptError as exc:
      raise DeliveryFailed(str(exc)) from exc
    text, blocks = self.renderer(event)
    await self.metrics.measured(
      "slack.post_message",
      self.chat.post_message(token=token, channel=destination, text=text, blocks=blocks),
    )

  async def redeliver(self, event_id: str) -> bool:
    """
    Deliver a recorded event that never reached Slack.

    Returns False when the event was already processed. Raises EventNotFound
    for unknown ids and DeliveryFailed when Slack still refuses it.
    """
    row = await self.ledger.find_by_event_id(event_id)
    if row is None:
      raise EventNotFound(event_id)
    if row.processed_at is not None:
      return False
    if row.event_type == EVENT_ALERT_TRIGGERED:
      record = await self.resolve_tenant(row.tenant_id)
      if record is None:
        raise DeliveryFailed("Installation not found")
      event = AlertEvent.model_validate(row.payload)
      try:
        await self.deliver(record, event)
      except DeliveryFailed as exc:
        await self.ledger.record_failure(event_id, str(exc))
        raise
    await self.ledger.mark_processed(event_id)
    logger.info("event_redelivered", event_id=event_id, tenant_id=row.tenant_id)
    return True
