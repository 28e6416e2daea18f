from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from alertrelay.cache import TenantCache
from alertrelay.config import Settings
from alertrelay.metrics import RuntimeMetrics
from alertrelay.repositories import ChannelRepository, InstallationRepository
from alertrelay.security import decrypt_integration_secret, encrypt_secret, generate_webhook_secret
from alertrelay.stockalert.client import ALERT_EVENTS, StockAlertApiError, StockAlertClient

logger = structlog.get_logger()

_CHANNEL_REF_RE = re.compile(r"<#([^|>]+)(?:\|([^>]*))?>")

COMMAND_LIST = (
  "• `/stockalert help` - Show this help\n"
  "• `/stockalert test` - Send a test notification\n"
  "• `/stockalert status` - Show integration status\n"
  "• `/stockalert channel #channel` - Set notification channel\n"
  "• `/stockalert apikey <key>` - Connect your StockAlert.pro account\n"
  "• `/stockalert disconnect` - Remove StockAlert.pro connection"
)

APIKEY_USAGE = (
  "❌ Please provide your StockAlert.pro API key\n\n"
  "Example: `/stockalert apikey sk_your_api_key_here`\n\n"
  "You can generate an API key at https://stockalert.pro/dashboard/settings"
)


@dataclass
class SlashCommand:
  tenant_id: str
  team_domain: str
  channel_id: str
  user_id: str
  text: str = ""

  @classmethod
  def from_form(cls, form: dict[str, str]) -> "SlashCommand":
    return cls(
      tenant_id=form.get("team_id", ""),
      team_domain=form.get("team_domain", ""),
      channel_id=form.get("channel_id", ""),
      user_id=form.get("user_id", ""),
      text=form.get("text", ""),
    )


@dataclass
class OnboardingStatus:
  has_api_key: bool
  has_default_channel: bool
  has_webhook: bool

  @property
  def complete(self) -> bool:
    return self.has_api_key and self.has_default_channel and self.has_webhook


def _ephemeral(text: str | None = None, blocks: list[dict[str, Any]] | None = None) -> dict[str, Any]:
  out: dict[str, Any] = {"response_type": "ephemeral"}
  if text is not None:
    out["text"] = text
  if blocks is not None:
    out["blocks"] = blocks
  return out


def _section(text: str) -> dict[str, Any]:
  return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _context(text: str) -> dict[str, Any]:
  return {"type": "context", "elements": [{"type": "mrkdwn", "text": text}]}


def parse_channel_arg(arg: str, fallback_channel_id: str) -> tuple[str, str | None]:
  """`<#C123|alerts>` -> ("C123", "alerts"); a bare `#alerts` keeps the invoking channel id."""
  m = _CHANNEL_REF_RE.search(arg)
  if m:
    return m.group(1), (m.group(2) or None)
  name = arg.strip().lstrip("#").strip() or None
  return fallback_channel_id, name


class CommandHandler:
  def __init__(
    self,
    *,
    settings: Settings,
    metrics: RuntimeMetrics,
    installations: InstallationRepository,
    channels: ChannelRepository,
    tenants: TenantCache,
    stockalert_factory: Callable[[str], StockAlertClient],
  ) -> None:
    self.settings = settings
    self.metrics = metrics
    self.installations = installations
    self.channels = channels
    self.tenants = tenants
    self.stockalert_factory = stockalert_factory

  async def handle(self, cmd: SlashCommand) -> dict[str, Any]:
    args = cmd.text.strip().split()
    sub = args[0].lower() if args else "help"
    self.metrics.incr("slack.commands", command=sub)
    handler = {
      "help": self._help,
      "test": self._test,
      "status": self._status,
      "channel": self._channel,
      "apikey": self._apikey,
      "disconnect": self._disconnect,
    }.get(sub)
    if handler is None:
      return _ephemeral(f"Unknown command: {sub}. Use `/stockalert help` for available commands.")
    try:
      return await self.metrics.measured(f"slack.command.{sub}", handler(cmd, args[1:]))
    except Exception:
      self.metrics.incr("slack.command_errors", command=sub)
      raise

  async def onboarding_status(self, tenant_id: str) -> OnboardingStatus:
    inst = await self.installations.find_by_tenant_id(tenant_id)
    default = await self.channels.find_default(tenant_id)
    return OnboardingStatus(
      has_api_key=bool(inst and inst.stockalert_api_key_encrypted),
      has_default_channel=default is not None,
      has_webhook=bool(inst and inst.stockalert_webhook_id),
    )

  async def _help(self, cmd: SlashCommand, args: list[str]) -> dict[str, Any]:
    status = await self.onboarding_status(cmd.tenant_id)
    if status.complete:
      return _ephemeral(
        blocks=[
          _section("*StockAlert.pro Slack Commands*"),
          _section(COMMAND_LIST),
          _context("Need help? Visit <https://stockalert.pro/docs|our documentation>"),
        ]
      )

    def mark(done: bool) -> str:
      return "✅" if done else "⏳"

    return _ephemeral(
      blocks=[
        {"type": "header", "text": {"type": "plain_text", "text": "StockAlert.pro Setup"}},
        _section(
          f"{mark(status.has_default_channel)} *Step 1:* choose a channel with `/stockalert channel #channel`\n"
          f"{mark(status.has_api_key)} *Step 2:* connect your account with `/stockalert apikey <key>`\n"
          f"{mark(status.has_webhook)} *Step 3:* webhook configured automatically"
        ),
        {"type": "divider"},
        _section("*Available Commands:*\n" + COMMAND_LIST),
      ]
    )

  async def _test(self, cmd: SlashCommand, args: list[str]) -> dict[str, Any]:
    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    return {
      "response_type": "in_channel",
      "blocks": [
        _section(
          "✅ *StockAlert.pro Test Message*\n\nYour Slack integration is working correctly! "
          "You will receive real-time alerts here when your stock alerts trigger."
        ),
        _context(f"Test requested by <@{cmd.user_id}> at {now}"),
      ],
    }

  async def _status(self, cmd: SlashCommand, args: list[str]) -> dict[str, Any]:
    inst = await self.installations.find_by_tenant_id(cmd.tenant_id)
    default = await self.channels.find_default(cmd.tenant_id)
    blocks = [
      _section("*StockAlert.pro Integration Status*"),
      {
        "type": "section",
        "fields": [
          {"type": "mrkdwn", "text": f"*Status:*\n{'✅ Connected' if inst else '❌ Not installed'}"},
          {"type": "mrkdwn", "text": f"*Workspace:*\n{cmd.team_domain}"},
          {"type": "mrkdwn", "text": f"*Default Channel:*\n{f'<#{default.channel_id}>' if default else 'Not set'}"},
          {"type": "mrkdwn", "text": f"*User:*\n<@{cmd.user_id}>"},
        ],
      },
      _section(f"*Webhook URL:*\n`{self.settings.webhook_url(cmd.tenant_id)}`"),
    ]
    if inst and inst.stockalert_api_key_encrypted:
      blocks.append(_section(f"*StockAlert.pro API:*\n✅ Connected (Webhook ID: {inst.stockalert_webhook_id})"))
      blocks.append(_context("Your webhook is automatically configured and active"))
    else:
      blocks.append(_section("*StockAlert.pro API:*\n❌ Not connected"))
      blocks.append(_context("Run `/stockalert apikey <your-api-key>` to enable automatic webhook configuration"))
    return _ephemeral(blocks=blocks)

  async def _channel(self, cmd: SlashCommand, args: list[str]) -> dict[str, Any]:
    if not args:
      return _ephemeral("Please specify a channel. Example: `/stockalert channel #alerts`")
    channel_id, channel_name = parse_channel_arg(args[0], cmd.channel_id)
    if not channel_id:
      return _ephemeral("Please specify a channel. Example: `/stockalert channel #alerts`")
    await self.channels.set_default(cmd.tenant_id, channel_id, channel_name)
    await self.tenants.invalidate_channels(cmd.tenant_id)
    logger.info("default_channel_set", tenant_id=cmd.tenant_id, channel_id=channel_id)
    return _ephemeral(f"✅ Default notification channel set to <#{channel_id}>")

  async def _apikey(self, cmd: SlashCommand, args: list[str]) -> dict[str, Any]:
    api_key = args[0].strip() if args else ""
    if not api_key:
      return _ephemeral(APIKEY_USAGE)
    if not api_key.startswith("sk_"):
      return _ephemeral("❌ Invalid API key format. StockAlert.pro API keys start with `sk_`")
    inst = await self.installations.find_by_tenant_id(cmd.tenant_id)
    if inst is None:
      return _ephemeral("❌ StockAlert.pro is not installed in this workspace. Install the app first.")

    client = self.stockalert_factory(api_key)
    url = self.settings.webhook_url(cmd.tenant_id)
    try:
      webhook = await client.find_webhook_by_url(url)
      if webhook is None:
        webhook = await client.create_webhook(name=f"Slack - {cmd.team_domain}", url=url, events=ALERT_EVENTS)
    except StockAlertApiError as exc:
      logger.warning("stockalert_webhook_setup_failed", tenant_id=cmd.tenant_id, status_code=exc.status_code)
      return _ephemeral(f"❌ Failed to configure webhook: {exc.message}\n\nPlease check your API key and try again.")

    secret = webhook.get("secret")
    if not secret and inst.webhook_secret_encrypted:
      secret = decrypt_integration_secret(inst.webhook_secret_encrypted)
    if not secret:
      secret = generate_webhook_secret()
    webhook_id = str(webhook.get("id"))
    await self.installations.update(
      cmd.tenant_id,
      stockalert_api_key_encrypted=encrypt_secret(api_key),
      stockalert_webhook_id=webhook_id,
      webhook_secret_encrypted=encrypt_secret(secret),
    )
    await self.tenants.invalidate_installation(cmd.tenant_id)
    logger.info("stockalert_connected", tenant_id=cmd.tenant_id, webhook_id=webhook_id)
    return _ephemeral(
      blocks=[
        _section("✅ *StockAlert.pro Integration Complete!*"),
        _section(
          f"Webhook has been automatically configured:\n• Webhook ID: `{webhook_id}`\n"
          "• Events: Alert notifications\n• Status: Active"
        ),
        _context("Your alerts will now appear in this Slack workspace automatically."),
      ]
    )

  async def _disconnect(self, cmd: SlashCommand, args: list[str]) -> dict[str, Any]:
    inst = await self.installations.find_by_tenant_id(cmd.tenant_id)
    if inst is None or not inst.stockalert_api_key_encrypted:
      return _ephemeral("❌ No StockAlert.pro connection found to disconnect.")

    if inst.stockalert_webhook_id:
      try:
        client = self.stockalert_factory(decrypt_integration_secret(inst.stockalert_api_key_encrypted))
        await client.delete_webhook(inst.stockalert_webhook_id)
      except StockAlertApiError as exc:
        # Upstream cleanup is best effort; the local disconnect still happens.
        logger.warning("stockalert_webhook_delete_failed", tenant_id=cmd.tenant_id, status_code=exc.status_code)

    await self.installations.clear_integration(cmd.tenant_id)
    await self.tenants.invalidate_installation(cmd.tenant_id)
    logger.info("stockalert_disconnected", tenant_id=cmd.tenant_id)
    return _ephemeral(
      blocks=[
        _section(
          "✅ *StockAlert.pro disconnected successfully*\n\nYour API key and webhook configuration have been removed."
        ),
        _context("Run `/stockalert apikey <your-api-key>` to reconnect."),
      ]
    )
