from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonDoc = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
  return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _uuid() -> str:
  return str(uuid.uuid4())


class Base(DeclarativeBase):
  pass


class Installation(Base):
  __tablename__ = "slack_installations"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  tenant_id: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  team_name: Mapped[str | None] = mapped_column(String, nullable=True)
  bot_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
  bot_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
  app_id: Mapped[str | None] = mapped_column(String, nullable=True)
  enterprise_id: Mapped[str | None] = mapped_column(String, nullable=True)
  enterprise_name: Mapped[str | None] = mapped_column(String, nullable=True)
  installer_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
  scope: Mapped[str | None] = mapped_column(Text, nullable=True)
  token_type: Mapped[str] = mapped_column(String, nullable=False, default="bot")
  stockalert_api_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  stockalert_webhook_id: Mapped[str | None] = mapped_column(String, nullable=True)
  webhook_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ChannelBinding(Base):
  __tablename__ = "slack_channels"
  __table_args__ = (
    UniqueConstraint("tenant_id", "channel_id", name="ux_slack_channels_tenant_channel"),
    Index(
      "ux_slack_channels_one_default",
      "tenant_id",
      unique=True,
      postgresql_where=text("is_default"),
      sqlite_where=text("is_default = 1"),
    ),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  channel_id: Mapped[str] = mapped_column(String, nullable=False)
  channel_name: Mapped[str | None] = mapped_column(String, nullable=True)
  is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class InboundEvent(Base):
  __tablename__ = "webhook_events"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  event_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  payload: Mapped[dict[str, Any]] = mapped_column(JsonDoc, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
  processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
  delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class OAuthState(Base):
  __tablename__ = "oauth_states"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  state: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JsonDoc, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
