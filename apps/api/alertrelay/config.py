from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  env: str = "development"
  database_url: str = "postgresql+asyncpg://alertrelay:alertrelay@db:5432/alertrelay"
  redis_url: str | None = "redis://redis:6379/0"
  fernet_key: str = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
  app_version: str = "v2026-10-19"
  build_sha: str = "dev"
  base_url: str = "https://stockalert-slack-app.vercel.app"
  admin_token: str | None = None

  slack_client_id: str = ""
  slack_client_secret: str = ""
  slack_signing_secret: str = ""
  slack_redirect_uri: str | None = None
  slack_scopes: str = "chat:write,chat:write.public,commands,channels:read,groups:read"
  slack_timestamp_tolerance_seconds: int = 300

  stockalert_api_url: str = "https://stockalert.pro/api/public/v1"
  stockalert_dashboard_url: str = "https://stockalert.pro/dashboard"
  # Used only when a tenant has no secret of its own.
  stockalert_webhook_secret: str | None = None

  rate_limit_command_per_minute: int = 30
  rate_limit_command_window_seconds: int = 60
  rate_limit_oauth_per_window: int = 5
  rate_limit_oauth_window_seconds: int = 15 * 60
  rate_limit_webhook_per_minute: int = 100
  rate_limit_webhook_window_seconds: int = 60

  cache_installation_ttl_seconds: int = 24 * 60 * 60
  cache_channel_ttl_seconds: int = 60 * 60
  cache_memory_max_ttl_seconds: int = 60
  cache_memory_max_entries: int = 10_000
  cache_key_prefix: str = "alertrelay:"

  store_timeout_seconds: float = 5.0
  redis_timeout_seconds: float = 1.0
  slack_timeout_seconds: float = 10.0
  stockalert_timeout_seconds: float = 15.0

  event_retention_days: int = 30
  retention_sweep_interval_seconds: int = 60 * 60
  oauth_state_ttl_minutes: int = 10

  log_level: str = "INFO"
  log_json: bool = False

  def webhook_url(self, tenant_id: str) -> str:
    return f"{self.base_url.rstrip('/')}/webhooks/{tenant_id}/stockalert"

  def oauth_redirect_url(self) -> str:
    return self.slack_redirect_uri or f"{self.base_url.rstrip('/')}/slack/oauth"

  def slack_scope_list(self) -> list[str]:
    return [s.strip() for s in self.slack_scopes.split(",") if s.strip()]


settings = Settings()
