from __future__ import annotations

import asyncio
from typing import Any, Protocol

import aiohttp
import structlog
from slack_sdk.errors import SlackApiError, SlackClientError
from slack_sdk.web.async_client import AsyncWebClient

logger = structlog.get_logger()


class DeliveryFailed(RuntimeError):
  pass


class OAuthExchangeFailed(RuntimeError):
  pass


class ChatClient(Protocol):
  async def post_message(self, *, token: str, channel: str, text: str, blocks: list[dict[str, Any]] | None = None) -> dict[str, Any]: ...

  async def open_dm(self, *, token: str, user_id: str) -> str: ...

  async def exchange_code(self, *, client_id: str, client_secret: str, code: str, redirect_uri: str | None) -> dict[str, Any]: ...


def _slack_error(exc: SlackClientError) -> str:
  if isinstance(exc, SlackApiError):
    return str(exc.response.get("error") or "slack_api_error")
  return exc.__class__.__name__


class SlackChatClient:
  """Slack Web API calls the relay makes, each bounded by `timeout`."""

  def __init__(self, *, timeout: float = 10.0) -> None:
    self.timeout = timeout

  def _client(self, token: str | None = None) -> AsyncWebClient:
    return AsyncWebClient(token=token, timeout=max(1, int(self.timeout)))

  async def post_message(self, *, token: str, channel: str, text: str, blocks: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    try:
      resp = await asyncio.wait_for(
        self._client(token).chat_postMessage(
          channel=channel,
          text=text,
          blocks=blocks,
          unfurl_links=False,
          unfurl_media=False,
        ),
        timeout=self.timeout,
      )
    except SlackClientError as exc:
      raise DeliveryFailed(f"Slack rejected the message: {_slack_error(exc)}") from exc
    except asyncio.TimeoutError as exc:
      raise DeliveryFailed(f"Slack did not answer within {self.timeout}s") from exc
    except aiohttp.ClientError as exc:
      raise DeliveryFailed(f"Slack unreachable: {exc.__class__.__name__}") from exc
    return dict(resp.data) if isinstance(resp.data, dict) else {"ok": True}

  async def open_dm(self, *, token: str, user_id: str) -> str:
    try:
      resp = await asyncio.wait_for(self._client(token).conversations_open(users=user_id), timeout=self.timeout)
    except SlackClientError as exc:
      raise DeliveryFailed(f"Could not open DM: {_slack_error(exc)}") from exc
    except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
      raise DeliveryFailed(f"Could not open DM: {exc.__class__.__name__}") from exc
    channel = (resp.get("channel") or {}).get("id")
    if not channel:
      raise DeliveryFailed("Could not open DM: no channel id")
    return str(channel)

  async def exchange_code(self, *, client_id: str, client_secret: str, code: str, redirect_uri: str | None) -> dict[str, Any]:
    try:
      resp = await asyncio.wait_for(
        self._client().oauth_v2_access(
          client_id=client_id,
          client_secret=client_secret,
          code=code,
          redirect_uri=redirect_uri,
        ),
        timeout=self.timeout,
      )
    except SlackClientError as exc:
      raise OAuthExchangeFailed(_slack_error(exc)) from exc
    except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
      raise OAuthExchangeFailed(exc.__class__.__name__) from exc
    data = dict(resp.data) if isinstance(resp.data, dict) else {}
    if not data.get("ok") or not data.get("access_token"):
      raise OAuthExchangeFailed(str(data.get("error") or "missing access_token"))
    return data
