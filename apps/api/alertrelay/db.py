from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from alertrelay.metrics import RuntimeMetrics
from alertrelay.models import Base

T = TypeVar("T")


class DependencyUnavailable(RuntimeError):
  def __init__(self, dependency: str, message: str) -> None:
    super().__init__(message)
    self.dependency = dependency
    self.message = message


def make_engine(database_url: str) -> AsyncEngine:
  kwargs: dict = {"pool_pre_ping": True}
  if database_url.startswith("postgresql"):
    kwargs.update(pool_size=10, max_overflow=10, pool_timeout=5, pool_recycle=3600)
  return create_async_engine(database_url, **kwargs)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def create_all(engine: AsyncEngine) -> None:
  # Dev/test only; production schemas come from Alembic.
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)


async def store_call(metrics: RuntimeMetrics, name: str, awaitable: Awaitable[T], *, timeout: float) -> T:
  try:
    return await metrics.measured(name, awaitable, timeout=timeout)
  except asyncio.TimeoutError as exc:
    metrics.incr("store.errors", op=name, reason="timeout")
    raise DependencyUnavailable("postgres", f"{name} timed out after {timeout}s") from exc
  except (OperationalError, InterfaceError, OSError) as exc:
    metrics.incr("store.errors", op=name, reason="unavailable")
    raise DependencyUnavailable("postgres", f"{name} failed: {exc.__class__.__name__}") from exc
