from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EVENT_ALERT_TRIGGERED = "alert.triggered"


class AlertData(BaseModel):
  model_config = ConfigDict(extra="allow")

  alert_id: str = Field(min_length=1)
  symbol: str = Field(min_length=1)
  condition: str
  threshold: float | None
  current_value: float
  triggered_at: str
  parameters: dict[str, Any] | None
  reason: str | None = None
  test: bool | None = None
  company_name: str | None = None


class AlertEvent(BaseModel):
  event: Literal["alert.triggered", "alert.created", "alert.updated", "alert.deleted"]
  timestamp: str = Field(min_length=1)
  data: AlertData

  @property
  def event_id(self) -> str:
    return f"{self.data.alert_id}-{self.timestamp}"


class InboundEventOut(BaseModel):
  id: str
  eventId: str
  tenantId: str
  eventType: str
  createdAt: datetime
  processedAt: datetime | None
  deliveryAttempts: int
  lastError: str | None
  payload: dict[str, Any] | None = None


class ReplayOut(BaseModel):
  eventId: str
  status: Literal["delivered", "already_processed"]


class PurgeIn(BaseModel):
  olderThanDays: int | None = Field(default=None, ge=0, le=3650)


class PurgeOut(BaseModel):
  purgedEvents: int
  purgedOAuthStates: int
  cutoff: datetime


class HealthOut(BaseModel):
  ok: bool = True


class VersionOut(BaseModel):
  version: str
  buildSha: str
