from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

import redis.asyncio as aioredis
from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from alertrelay.cache import MemoryTier, NullTier, RedisTier, TenantCache, TieredCache
from alertrelay.commands import CommandHandler
from alertrelay.config import Settings
from alertrelay.db import make_engine, make_sessionmaker
from alertrelay.formatter import render_alert
from alertrelay.ledger import EventLedger
from alertrelay.metrics import RuntimeMetrics
from alertrelay.pipeline import IngestPipeline
from alertrelay.rate_limit import RateLimiter, rules_from_settings
from alertrelay.repositories import ChannelRepository, InstallationRepository, OAuthStateRepository
from alertrelay.security import admin_token_matches
from alertrelay.slack_client import ChatClient, SlackChatClient
from alertrelay.stockalert.client import StockAlertClient


@dataclass
class Services:
  settings: Settings
  metrics: RuntimeMetrics
  engine: AsyncEngine | None
  sessions: async_sessionmaker[AsyncSession]
  redis: Any | None
  cache: TieredCache
  tenants: TenantCache
  limiter: RateLimiter
  installations: InstallationRepository
  channels: ChannelRepository
  oauth_states: OAuthStateRepository
  ledger: EventLedger
  chat: ChatClient
  stockalert_factory: Callable[[str], StockAlertClient]
  pipeline: IngestPipeline = field(init=False)
  commands: CommandHandler = field(init=False)

  def __post_init__(self) -> None:
    self.pipeline = IngestPipeline(
      settings=self.settings,
      metrics=self.metrics,
      limiter=self.limiter,
      tenants=self.tenants,
      installations=self.installations,
      channels=self.channels,
      ledger=self.ledger,
      chat=self.chat,
      renderer=partial(render_alert, dashboard_url=self.settings.stockalert_dashboard_url),
    )
    self.commands = CommandHandler(
      settings=self.settings,
      metrics=self.metrics,
      installations=self.installations,
      channels=self.channels,
      tenants=self.tenants,
      stockalert_factory=self.stockalert_factory,
    )

  async def aclose(self) -> None:
    if self.redis is not None:
      await self.redis.aclose()
    if self.engine is not None:
      await self.engine.dispose()


def build_services(
  cfg: Settings,
  *,
  sessions: async_sessionmaker[AsyncSession] | None = None,
  engine: AsyncEngine | None = None,
  redis_client: Any | None = None,
  chat: ChatClient | None = None,
  stockalert_factory: Callable[[str], StockAlertClient] | None = None,
  metrics: RuntimeMetrics | None = None,
  clock: Callable[[], float] | None = None,
) -> Services:
  """
  Wire every collaborator from `cfg`; any argument given explicitly wins.

  Redis is optional. Without it the shared cache tier becomes a no-op and the
  limiter admits everything.
  """
  metrics = metrics or RuntimeMetrics()
  if sessions is None:
    engine = engine or make_engine(cfg.database_url)
    sessions = make_sessionmaker(engine)
  if redis_client is None and cfg.redis_url:
    redis_client = aioredis.Redis.from_url(
      cfg.redis_url,
      decode_responses=True,
      socket_timeout=cfg.redis_timeout_seconds,
      socket_connect_timeout=cfg.redis_timeout_seconds,
    )

  cache = TieredCache(
    near=MemoryTier(max_entries=cfg.cache_memory_max_entries, max_ttl=cfg.cache_memory_max_ttl_seconds),
    far=RedisTier(redis_client) if redis_client is not None else NullTier(),
    metrics=metrics,
    key_prefix=cfg.cache_key_prefix,
    far_timeout=cfg.redis_timeout_seconds,
  )
  limiter_kwargs: dict[str, Any] = {}
  if clock is not None:
    limiter_kwargs["clock"] = clock
  limiter = RateLimiter(
    redis_client,
    rules_from_settings(cfg),
    metrics=metrics,
    key_prefix=cfg.cache_key_prefix,
    timeout=cfg.redis_timeout_seconds,
    **limiter_kwargs,
  )
  repo_kwargs = {"metrics": metrics, "timeout": cfg.store_timeout_seconds}
  return Services(
    settings=cfg,
    metrics=metrics,
    engine=engine,
    sessions=sessions,
    redis=redis_client,
    cache=cache,
    tenants=TenantCache(
      cache,
      installation_ttl=cfg.cache_installation_ttl_seconds,
      channel_ttl=cfg.cache_channel_ttl_seconds,
    ),
    limiter=limiter,
    installations=InstallationRepository(sessions, **repo_kwargs),
    channels=ChannelRepository(sessions, **repo_kwargs),
    oauth_states=OAuthStateRepository(sessions, **repo_kwargs),
    ledger=EventLedger(sessions, **repo_kwargs),
    chat=chat or SlackChatClient(timeout=cfg.slack_timeout_seconds),
    stockalert_factory=stockalert_factory
    or partial(StockAlertClient, base_url=cfg.stockalert_api_url, timeout=cfg.stockalert_timeout_seconds),
  )


def get_services(request: Request) -> Services:
  return request.app.state.services


def client_ip(request: Request) -> str:
  fwd = request.headers.get("x-forwarded-for")
  if fwd:
    return fwd.split(",", 1)[0].strip()
  return request.client.host if request.client else "unknown"


async def require_admin(request: Request) -> None:
  auth = request.headers.get("authorization")
  if not auth or not auth.lower().startswith("bearer "):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
  token = auth.split(" ", 1)[1].strip()
  if not admin_token_matches(token, get_services(request).settings.admin_token):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
