from __future__ import annotations

from datetime import timezone
from typing import Any

from dateutil import parser as dateparser

from alertrelay.schemas import AlertEvent

DASHBOARD_URL = "https://stockalert.pro/dashboard"

_FALLBACK_EMOJI = "📊"

ALERT_TYPE_CONFIG: dict[str, tuple[str, str]] = {
  "price_above": ("📈", "Price went above target"),
  "price_below": ("📉", "Price went below target"),
  "price_change_up": ("🚀", "Price increased by target percentage"),
  "price_change_down": ("💔", "Price decreased by target percentage"),
  "new_high": ("🎯", "New 52-week high"),
  "new_low": ("⚠️", "New 52-week low"),
  "ma_crossover_golden": ("✨", "Golden cross (bullish signal)"),
  "ma_crossover_death": ("☠️", "Death cross (bearish signal)"),
  "ma_touch_above": ("👆", "Price touched MA from above"),
  "ma_touch_below": ("👇", "Price touched MA from below"),
  "rsi_limit": ("📊", "RSI limit reached"),
  "volume_change": ("📢", "Volume spike detected"),
  "pe_ratio_below": ("💰", "P/E ratio below target"),
  "pe_ratio_above": ("💸", "P/E ratio above target"),
  "forward_pe_below": ("🔮", "Forward P/E ratio below target"),
  "forward_pe_above": ("⚡", "Forward P/E ratio above target"),
  "dividend_ex_date": ("📅", "Ex-dividend date approaching"),
  "dividend_payment": ("💳", "Dividend payment date"),
  "earnings_announcement": ("📊", "Earnings announcement"),
  "earnings_beat": ("🎉", "Earnings beat expectations"),
  "earnings_miss": ("😔", "Earnings missed expectations"),
  "reminder": ("⏰", "Alert reminder"),
  "daily_reminder": ("📆", "Daily reminder"),
}


def describe_condition(condition: str) -> tuple[str, str]:
  return ALERT_TYPE_CONFIG.get(condition, (_FALLBACK_EMOJI, condition))


def percent_change(current: float, threshold: float | None) -> str:
  if not threshold:
    return ""
  pct = (current - threshold) / threshold * 100
  return f"{pct:+.2f}%"


def _format_triggered_at(value: str) -> str:
  try:
    dt = dateparser.isoparse(value.strip())
  except (ValueError, OverflowError):
    return value
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def render_alert(event: AlertEvent, *, dashboard_url: str = DASHBOARD_URL) -> tuple[str, list[dict[str, Any]]]:
  """Fallback text plus Block Kit blocks for one triggered alert."""
  data = event.data
  emoji, description = describe_condition(data.condition)
  title = data.symbol if not data.company_name else f"{data.symbol} ({data.company_name})"
  text = f"{emoji} {title} Alert: {description}"

  change = percent_change(data.current_value, data.threshold)
  target = f"${data.threshold:.2f}" if data.threshold is not None else "N/A"
  current = f"${data.current_value:.2f} {change}".rstrip()

  blocks: list[dict[str, Any]] = [
    {
      "type": "header",
      "text": {"type": "plain_text", "text": f"{emoji} {data.symbol} Alert Triggered", "emoji": True},
    },
    {
      "type": "section",
      "text": {"type": "mrkdwn", "text": f"*{title}*\n{description}"},
      "fields": [
        {"type": "mrkdwn", "text": f"*Target:*\n{target}"},
        {"type": "mrkdwn", "text": f"*Current:*\n{current}"},
      ],
    },
  ]

  context: list[str] = []
  if data.triggered_at:
    suffix = " (Test Alert)" if data.test else ""
    context.append(f"Triggered at {_format_triggered_at(data.triggered_at)}{suffix}")
  if data.parameters:
    context.append(", ".join(f"{k}: {v}" for k, v in sorted(data.parameters.items())))
  if context:
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": t} for t in context]})

  base = dashboard_url.rstrip("/")
  blocks.append(
    {
      "type": "actions",
      "elements": [
        {
          "type": "button",
          "text": {"type": "plain_text", "text": "View Dashboard", "emoji": True},
          "url": base,
          "action_id": "view_dashboard",
        },
        {
          "type": "button",
          "text": {"type": "plain_text", "text": "Manage Alert", "emoji": True},
          "url": f"{base}/alerts/{data.alert_id}",
          "action_id": "manage_alert",
        },
      ],
    }
  )
  blocks.append({"type": "divider"})
  return text, blocks
