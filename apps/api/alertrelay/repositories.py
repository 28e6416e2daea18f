from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alertrelay.cache import TenantRecord
from alertrelay.db import store_call
from alertrelay.metrics import RuntimeMetrics
from alertrelay.models import ChannelBinding, Installation, OAuthState, as_utc, utcnow

logger = structlog.get_logger()

SET_DEFAULT_ATTEMPTS = 3

_INSTALLATION_FIELDS = {
  "team_name",
  "bot_token_encrypted",
  "bot_user_id",
  "app_id",
  "enterprise_id",
  "enterprise_name",
  "installer_user_id",
  "scope",
  "token_type",
  "stockalert_api_key_encrypted",
  "stockalert_webhook_id",
  "webhook_secret_encrypted",
}


def tenant_record(inst: Installation) -> TenantRecord:
  return TenantRecord(
    tenant_id=inst.tenant_id,
    team_name=inst.team_name,
    bot_token_encrypted=inst.bot_token_encrypted,
    webhook_secret_encrypted=inst.webhook_secret_encrypted,
    stockalert_webhook_id=inst.stockalert_webhook_id,
    has_api_key=bool(inst.stockalert_api_key_encrypted),
  )


class _Repository:
  def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, metrics: RuntimeMetrics, timeout: float) -> None:
    self._sessions = session_factory
    self._metrics = metrics
    self._timeout = timeout

  async def _call(self, name: str, awaitable):
    return await store_call(self._metrics, name, awaitable, timeout=self._timeout)


class InstallationRepository(_Repository):
  async def find_by_tenant_id(self, tenant_id: str) -> Installation | None:
    async def _op() -> Installation | None:
      async with self._sessions() as db:
        res = await db.execute(select(Installation).where(Installation.tenant_id == tenant_id))
        return res.scalar_one_or_none()

    return await self._call("installations.find", _op())

  async def load_record(self, tenant_id: str) -> TenantRecord | None:
    inst = await self.find_by_tenant_id(tenant_id)
    return tenant_record(inst) if inst else None

  async def upsert(self, tenant_id: str, **fields: Any) -> Installation:
    unknown = set(fields) - _INSTALLATION_FIELDS
    if unknown:
      raise ValueError(f"Unknown installation fields: {sorted(unknown)}")

    async def _op() -> Installation:
      async with self._sessions() as db:
        res = await db.execute(select(Installation).where(Installation.tenant_id == tenant_id))
        inst = res.scalar_one_or_none()
        if inst is None:
          inst = Installation(tenant_id=tenant_id, **fields)
          db.add(inst)
        else:
          for k, v in fields.items():
            setattr(inst, k, v)
          inst.updated_at = utcnow()
        await db.commit()
        await db.refresh(inst)
        return inst

    return await self._call("installations.upsert", _op())

  async def update(self, tenant_id: str, **fields: Any) -> bool:
    unknown = set(fields) - _INSTALLATION_FIELDS
    if unknown:
      raise ValueError(f"Unknown installation fields: {sorted(unknown)}")

    async def _op() -> bool:
      async with self._sessions() as db:
        res = await db.execute(
          update(Installation).where(Installation.tenant_id == tenant_id).values(**fields, updated_at=utcnow())
        )
        await db.commit()
        return bool(res.rowcount)

    return await self._call("installations.update", _op())

  async def clear_integration(self, tenant_id: str) -> bool:
    """Drop the StockAlert API key, webhook id and secret; the Slack installation stays."""
    return await self.update(
      tenant_id,
      stockalert_api_key_encrypted=None,
      stockalert_webhook_id=None,
      webhook_secret_encrypted=None,
    )

  async def count(self) -> int:
    async def _op() -> int:
      async with self._sessions() as db:
        res = await db.execute(select(func.count()).select_from(Installation))
        return int(res.scalar_one())

    return await self._call("installations.count", _op())


class ChannelRepository(_Repository):
  async def upsert(self, tenant_id: str, channel_id: str, channel_name: str | None = None) -> ChannelBinding:
    async def _op() -> ChannelBinding:
      async with self._sessions() as db:
        row = await self._upsert_in(db, tenant_id, channel_id, channel_name)
        await db.commit()
        await db.refresh(row)
        return row

    return await self._call("channels.upsert", _op())

  async def find_default(self, tenant_id: str) -> ChannelBinding | None:
    async def _op() -> ChannelBinding | None:
      async with self._sessions() as db:
        return await self.find_default_in(db, tenant_id)

    return await self._call("channels.find_default", _op())

  async def default_channel_id(self, tenant_id: str) -> str | None:
    row = await self.find_default(tenant_id)
    return row.channel_id if row else None

  async def set_default(self, tenant_id: str, channel_id: str, channel_name: str | None = None) -> ChannelBinding:
    """
    Make `channel_id` the tenant's only default, creating the binding if needed.

    Clear-then-set runs in one transaction. Inside it there is a moment with
    no default at all; outside it readers see either the old or the new one.
    Concurrent writers for one tenant can both clear and then collide on the
    one-default index; the loser retries so the last writer wins.
    """

    async def _op() -> ChannelBinding:
      async with self._sessions() as db:
        await self.clear_defaults_in(db, tenant_id)
        row = await self._upsert_in(db, tenant_id, channel_id, channel_name)
        row.is_default = True
        await db.commit()
        await db.refresh(row)
        return row

    attempt = 1
    while True:
      try:
        return await self._call("channels.set_default", _op())
      except IntegrityError:
        if attempt >= SET_DEFAULT_ATTEMPTS:
          raise
        self._metrics.incr("channels.default_conflicts")
        logger.info("default_channel_conflict", tenant_id=tenant_id, channel_id=channel_id, attempt=attempt)
        attempt += 1

  async def list_for_tenant(self, tenant_id: str) -> list[ChannelBinding]:
    async def _op() -> list[ChannelBinding]:
      async with self._sessions() as db:
        res = await db.execute(
          select(ChannelBinding).where(ChannelBinding.tenant_id == tenant_id).order_by(ChannelBinding.created_at.asc())
        )
        return list(res.scalars().all())

    return await self._call("channels.list", _op())

  @staticmethod
  async def find_default_in(db: AsyncSession, tenant_id: str) -> ChannelBinding | None:
    res = await db.execute(
      select(ChannelBinding).where(ChannelBinding.tenant_id == tenant_id, ChannelBinding.is_default.is_(True))
    )
    return res.scalars().first()

  @staticmethod
  async def clear_defaults_in(db: AsyncSession, tenant_id: str) -> None:
    await db.execute(
      update(ChannelBinding)
      .where(ChannelBinding.tenant_id == tenant_id, ChannelBinding.is_default.is_(True))
      .values(is_default=False, updated_at=utcnow())
    )

  @staticmethod
  async def _upsert_in(db: AsyncSession, tenant_id: str, channel_id: str, channel_name: str | None) -> ChannelBinding:
    res = await db.execute(
      select(ChannelBinding).where(ChannelBinding.tenant_id == tenant_id, ChannelBinding.channel_id == channel_id)
    )
    row = res.scalar_one_or_none()
    if row is None:
      row = ChannelBinding(tenant_id=tenant_id, channel_id=channel_id, channel_name=channel_name, is_default=False)
      db.add(row)
    elif channel_name:
      row.channel_name = channel_name
    await db.flush()
    return row


class OAuthStateRepository(_Repository):
  async def create(self, *, ttl_minutes: int, meta: dict[str, Any] | None = None) -> str:
    state = secrets.token_urlsafe(32)

    async def _op() -> None:
      async with self._sessions() as db:
        db.add(OAuthState(state=state, meta=meta, expires_at=utcnow() + timedelta(minutes=ttl_minutes)))
        await db.commit()

    await self._call("oauth_states.create", _op())
    return state

  async def consume(self, state: str) -> OAuthState | None:
    """Delete and return the state if it exists and has not expired."""

    async def _op() -> OAuthState | None:
      async with self._sessions() as db:
        res = await db.execute(select(OAuthState).where(OAuthState.state == state))
        row = res.scalar_one_or_none()
        if row is None:
          return None
        await db.delete(row)
        await db.commit()
        if as_utc(row.expires_at) <= utcnow():
          return None
        return row

    return await self._call("oauth_states.consume", _op())

  async def cleanup_expired(self) -> int:
    async def _op() -> int:
      async with self._sessions() as db:
        res = await db.execute(delete(OAuthState).where(OAuthState.expires_at <= utcnow()))
        await db.commit()
        return int(res.rowcount or 0)

    return await self._call("oauth_states.cleanup", _op())
