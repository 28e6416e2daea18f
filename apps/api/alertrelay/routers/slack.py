from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs, urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse

from alertrelay.commands import SlashCommand
from alertrelay.deps import Services, client_ip, get_services
from alertrelay.rate_limit import SCOPE_COMMAND, SCOPE_OAUTH
from alertrelay.security import encrypt_secret, generate_webhook_secret
from alertrelay.signing import verify_slack_request
from alertrelay.slack_client import DeliveryFailed, OAuthExchangeFailed

logger = structlog.get_logger()

router = APIRouter(prefix="/slack", tags=["slack"])

SLACK_AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"

WELCOME_TEXT = "👋 Welcome to StockAlert.pro for Slack! Let's get you set up."


def _welcome_blocks() -> list[dict[str, Any]]:
  return [
    {"type": "header", "text": {"type": "plain_text", "text": "👋 Welcome to StockAlert.pro for Slack!"}},
    {
      "type": "section",
      "text": {
        "type": "mrkdwn",
        "text": (
          "*Step 1:* pick a channel with `/stockalert channel #channel`\n"
          "*Step 2:* connect your account with `/stockalert apikey <key>`\n"
          "*Step 3:* run `/stockalert test` to check everything works"
        ),
      },
    },
  ]


@router.post("/commands")
async def slash_command(request: Request, services: Services = Depends(get_services)) -> Any:
  cfg = services.settings
  raw = await request.body()
  ok = verify_slack_request(
    cfg.slack_signing_secret,
    raw,
    request.headers.get("x-slack-request-timestamp"),
    request.headers.get("x-slack-signature"),
    tolerance_seconds=cfg.slack_timestamp_tolerance_seconds,
  )
  if not ok:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

  parsed = parse_qs(raw.decode("utf-8", errors="replace"), keep_blank_values=True)
  cmd = SlashCommand.from_form({k: v[0] for k, v in parsed.items() if v})
  if not cmd.tenant_id:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="team_id is required")

  limit = await services.limiter.check(SCOPE_COMMAND, f"{cmd.tenant_id}:{cmd.user_id}")
  if not limit.allowed:
    return JSONResponse(
      status_code=status.HTTP_429_TOO_MANY_REQUESTS,
      content={
        "error": "Too many requests",
        "reset": limit.reset_at,
        "response_type": "ephemeral",
        "text": "⏳ Too many commands. Please wait a moment and try again.",
      },
      headers=limit.headers(),
    )
  return await services.commands.handle(cmd)


@router.get("/install")
async def install(services: Services = Depends(get_services)) -> RedirectResponse:
  cfg = services.settings
  state = await services.oauth_states.create(ttl_minutes=cfg.oauth_state_ttl_minutes, meta={"source": "web"})
  params = urlencode(
    {
      "client_id": cfg.slack_client_id,
      "scope": ",".join(cfg.slack_scope_list()),
      "redirect_uri": cfg.oauth_redirect_url(),
      "state": state,
    }
  )
  return RedirectResponse(f"{SLACK_AUTHORIZE_URL}?{params}", status_code=status.HTTP_302_FOUND)


@router.get("/oauth")
async def oauth_callback(
  request: Request,
  code: str | None = None,
  state: str | None = None,
  error: str | None = None,
  services: Services = Depends(get_services),
) -> Any:
  cfg = services.settings
  limit = await services.limiter.check(SCOPE_OAUTH, client_ip(request))
  if not limit.allowed:
    return JSONResponse(
      status_code=status.HTTP_429_TOO_MANY_REQUESTS,
      content={"error": "Too many requests", "reset": limit.reset_at},
      headers=limit.headers(),
    )
  if error:
    return RedirectResponse(f"/slack/error?{urlencode({'error': error})}", status_code=status.HTTP_302_FOUND)
  if not code:
    return PlainTextResponse("Missing authorization code", status_code=status.HTTP_400_BAD_REQUEST)
  if not state:
    return PlainTextResponse("Missing state parameter", status_code=status.HTTP_400_BAD_REQUEST)

  if await services.oauth_states.consume(state) is None:
    return PlainTextResponse("Invalid or expired state parameter", status_code=status.HTTP_400_BAD_REQUEST)

  try:
    result = await services.chat.exchange_code(
      client_id=cfg.slack_client_id,
      client_secret=cfg.slack_client_secret,
      code=code,
      redirect_uri=cfg.oauth_redirect_url(),
    )
  except OAuthExchangeFailed as exc:
    logger.warning("oauth_exchange_failed", error=str(exc))
    return RedirectResponse("/slack/error", status_code=status.HTTP_302_FOUND)

  team = result.get("team") or {}
  team_id = team.get("id")
  if not team_id:
    logger.warning("oauth_exchange_failed", error="missing team id")
    return RedirectResponse("/slack/error", status_code=status.HTTP_302_FOUND)

  enterprise = result.get("enterprise") or {}
  installer = (result.get("authed_user") or {}).get("id")
  token = str(result["access_token"])
  fields: dict[str, Any] = {
    "team_name": team.get("name"),
    "bot_token_encrypted": encrypt_secret(token),
    "bot_user_id": result.get("bot_user_id"),
    "app_id": result.get("app_id"),
    "enterprise_id": enterprise.get("id"),
    "enterprise_name": enterprise.get("name"),
    "installer_user_id": installer,
    "scope": result.get("scope"),
    "token_type": result.get("token_type") or "bot",
  }
  existing = await services.installations.find_by_tenant_id(team_id)
  if existing is None or not existing.webhook_secret_encrypted:
    fields["webhook_secret_encrypted"] = encrypt_secret(generate_webhook_secret())
  await services.installations.upsert(team_id, **fields)
  await services.tenants.invalidate_installation(team_id)
  logger.info("slack_installed", tenant_id=team_id, reinstall=existing is not None)

  if installer:
    try:
      dm = await services.chat.open_dm(token=token, user_id=installer)
      await services.chat.post_message(token=token, channel=dm, text=WELCOME_TEXT, blocks=_welcome_blocks())
    except DeliveryFailed as exc:
      logger.warning("welcome_message_failed", tenant_id=team_id, error=str(exc))

  return RedirectResponse("/slack/success", status_code=status.HTTP_302_FOUND)


@router.get("/success", response_class=HTMLResponse)
async def install_success() -> str:
  return "<html><body><h1>StockAlert.pro is installed</h1><p>Run <code>/stockalert help</code> in Slack to finish setup.</p></body></html>"


@router.get("/error", response_class=HTMLResponse)
async def install_error(error: str | None = None) -> str:
  reason = "" if not error else " (" + "".join(c for c in error if c.isalnum() or c in "_-") + ")"
  return f"<html><body><h1>Installation failed{reason}</h1><p>Please try installing again.</p></body></html>"
