from __future__ import annotations

import base64
import re
import secrets

from cryptography.fernet import Fernet, InvalidToken

from alertrelay.config import settings

WEBHOOK_SECRET_PREFIX = "whsec_"
_WEBHOOK_SECRET_RE = re.compile(r"^whsec_[0-9a-f]{64}$", re.IGNORECASE)


class IntegrationSecretDecryptError(RuntimeError):
  pass


def _fernet() -> Fernet:
  key = settings.fernet_key
  # accept raw bytes/base64 for ergonomics
  try:
    base64.urlsafe_b64decode(key.encode("utf-8"))
    return Fernet(key.encode("utf-8"))
  except Exception:
    b = base64.urlsafe_b64encode(key.encode("utf-8").ljust(32, b"\0")[:32])
    return Fernet(b)


def encrypt_secret(value: str) -> str:
  return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(value: str) -> str:
  return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_integration_secret(value: str) -> str:
  try:
    return decrypt_secret(value)
  except InvalidToken as exc:
    raise IntegrationSecretDecryptError(
      "Stored credential cannot be decrypted with the current key; reinstall the app or run /stockalert apikey again."
    ) from exc


def generate_webhook_secret() -> str:
  return WEBHOOK_SECRET_PREFIX + secrets.token_hex(32)


def is_valid_webhook_secret(secret: str) -> bool:
  return bool(_WEBHOOK_SECRET_RE.fullmatch(secret or ""))


def admin_token_matches(provided: str | None, expected: str | None) -> bool:
  if not expected or not provided:
    return False
  return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
