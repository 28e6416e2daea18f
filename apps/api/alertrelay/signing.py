"""
Request authentication for inbound StockAlert webhooks and Slack commands.

Every failure mode returns False. Callers map that to a 401 and never learn
which check failed.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Callable

from slack_sdk.signature import SignatureVerifier

SIGNATURE_PREFIX = "sha256="
DEFAULT_TOLERANCE_SECONDS = 300


class _Clock:
  def __init__(self, now: Callable[[], float]) -> None:
    self._now = now

  def now(self) -> float:
    return self._now()


def compute_signature(raw_body: bytes, secret: str) -> str:
  return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def sign(raw_body: bytes, secret: str) -> str:
  return SIGNATURE_PREFIX + compute_signature(raw_body, secret)


def _timestamp_fresh(timestamp: str | int | None, tolerance_seconds: int, now: float) -> bool:
  if timestamp is None:
    return False
  try:
    ts = int(str(timestamp).strip())
  except ValueError:
    return False
  return abs(int(now) - ts) <= tolerance_seconds


def verify_signature(
  raw_body: bytes,
  signature_header: str | None,
  secret: str | None,
  *,
  timestamp: str | int | None = None,
  tolerance_seconds: int | None = None,
  now: Callable[[], float] = time.time,
) -> bool:
  """
  HMAC-SHA256 over the exact raw body, presented as bare hex or `sha256=<hex>`.

  When `tolerance_seconds` is given the declared `timestamp` must be within
  that many seconds of `now()`; this runs before any hashing.
  """
  if tolerance_seconds is not None and not _timestamp_fresh(timestamp, tolerance_seconds, now()):
    return False
  if not signature_header or not secret:
    return False
  candidate = signature_header.strip()
  if candidate.startswith(SIGNATURE_PREFIX):
    candidate = candidate[len(SIGNATURE_PREFIX) :]
  try:
    presented = bytes.fromhex(candidate)
  except ValueError:
    return False
  expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
  if len(presented) != len(expected):
    return False
  return hmac.compare_digest(presented, expected)


def verify_slack_request(
  signing_secret: str,
  raw_body: bytes,
  timestamp: str | None,
  signature: str | None,
  *,
  tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
  now: Callable[[], float] = time.time,
) -> bool:
  if not signing_secret or not signature:
    return False
  # Stale replays are rejected before the HMAC is computed.
  if not _timestamp_fresh(timestamp, tolerance_seconds, now()):
    return False
  verifier = SignatureVerifier(signing_secret, clock=_Clock(now))
  try:
    return verifier.is_valid(body=raw_body, timestamp=str(timestamp), signature=signature)
  except (TypeError, ValueError):
    return False
