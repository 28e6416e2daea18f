from __future__ import annotations

import asyncio
from time import monotonic

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from alertrelay.config import Settings, settings
from alertrelay.db import DependencyUnavailable
from alertrelay.deps import Services, build_services
from alertrelay.logs import configure_logging
from alertrelay.retention import retention_loop
from alertrelay.routers.admin import router as admin_router
from alertrelay.routers.slack import router as slack_router
from alertrelay.routers.webhooks import router as webhooks_router
from alertrelay.schemas import HealthOut, VersionOut
from alertrelay.security import IntegrationSecretDecryptError
from alertrelay.stockalert.client import StockAlertApiError

logger = structlog.get_logger()

_PLACEHOLDER_FERNET_KEYS = {"AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=", "REPLACE_WITH_FERNET_KEY"}


def _is_test_db(cfg: Settings) -> bool:
  db_name = cfg.database_url.rsplit("/", 1)[-1]
  return "test" in db_name


def validate_settings(cfg: Settings) -> None:
  if not cfg.fernet_key or cfg.fernet_key.strip() in _PLACEHOLDER_FERNET_KEYS:
    raise RuntimeError("FERNET_KEY is required and must not be a placeholder")
  if not cfg.slack_signing_secret:
    raise RuntimeError("SLACK_SIGNING_SECRET is required")


def create_app(services: Services | None = None, *, cfg: Settings | None = None) -> FastAPI:
  cfg = cfg or (services.settings if services is not None else settings)
  app = FastAPI(title="StockAlert Slack Relay", version=cfg.app_version)
  app.state.services = services
  app.state.owns_services = services is None
  app.state.retention_task = None

  @app.exception_handler(StockAlertApiError)
  async def _stockalert_api_error_handler(_, exc: StockAlertApiError) -> JSONResponse:
    return JSONResponse(
      status_code=400,
      content={"detail": {"message": exc.message, "statusCode": exc.status_code, "stockalert": exc.details}},
    )

  @app.exception_handler(IntegrationSecretDecryptError)
  async def _integration_secret_error_handler(_, exc: IntegrationSecretDecryptError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})

  @app.exception_handler(DependencyUnavailable)
  async def _dependency_unavailable_handler(_, exc: DependencyUnavailable) -> JSONResponse:
    logger.error("dependency_unavailable", dependency=exc.dependency, error=exc.message)
    return JSONResponse(status_code=503, content={"detail": f"{exc.dependency} unavailable"})

  app.include_router(webhooks_router)
  app.include_router(slack_router)
  app.include_router(admin_router)

  @app.middleware("http")
  async def _request_metrics_middleware(request: Request, call_next):
    start = monotonic()
    response = await call_next(request)
    elapsed_ms = (monotonic() - start) * 1000.0
    svc = request.app.state.services
    if svc is not None:
      svc.metrics.observe_request(response.status_code, elapsed_ms)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    return response

  @app.get("/health", response_model=HealthOut)
  async def health() -> HealthOut:
    return HealthOut()

  @app.get("/version", response_model=VersionOut)
  async def version() -> VersionOut:
    return VersionOut(version=cfg.app_version, buildSha=cfg.build_sha)

  @app.on_event("startup")
  async def _startup() -> None:
    configure_logging(cfg)
    if app.state.services is None:
      app.state.services = build_services(cfg)
    if _is_test_db(cfg):
      return
    validate_settings(cfg)
    svc: Services = app.state.services
    if app.state.retention_task is None:
      app.state.retention_task = asyncio.create_task(
        retention_loop(
          svc.ledger,
          svc.oauth_states,
          retention_days=cfg.event_retention_days,
          interval_seconds=cfg.retention_sweep_interval_seconds,
        )
      )
    logger.info("startup_complete", version=cfg.app_version, redis=svc.redis is not None)

  @app.on_event("shutdown")
  async def _shutdown() -> None:
    task = app.state.retention_task
    if task is not None:
      task.cancel()
      app.state.retention_task = None
    if app.state.owns_services and app.state.services is not None:
      await app.state.services.aclose()

  return app


app = create_app()
