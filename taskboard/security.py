from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
import time
from urllib.parse import quote

from cryptography.fernet import Fernet
from passlib.context import CryptContext

from taskboard.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_COOKIE_NAME = "tb_session"
TRUSTED_DEVICE_COOKIE_NAME = "tb_trusted_device"
TOTP_ISSUER = "Taskboard"


def hash_password(password: str) -> str:
  return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
  return pwd_context.verify(password, password_hash)


def _fernet() -> Fernet:
  key = settings.fernet_key
  # accept raw bytes/base64 for ergonomics
  try:
    return Fernet(key.encode("utf-8"))
  except ValueError:
    b = base64.urlsafe_b64encode(key.encode("utf-8").ljust(32, b"\0")[:32])
    return Fernet(b)


def encrypt_secret(value: str) -> str:
  return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(value: str) -> str:
  return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")


def _keyed_hash(value: str) -> str:
  key = (settings.app_secret or "").encode("utf-8")
  return hmac.new(key, (value or "").strip().encode("utf-8"), hashlib.sha256).hexdigest()


def sign_session_id(session_id: str) -> str:
  return f"{session_id}.{_keyed_hash(session_id)}"


def unsign_session_id(cookie_value: str | None) -> str | None:
  if not cookie_value or "." not in cookie_value:
    return None
  session_id, sig = cookie_value.rsplit(".", 1)
  if not session_id or not hmac.compare_digest(sig, _keyed_hash(session_id)):
    return None
  return session_id


def totp_new_secret() -> str:
  # RFC 3548 base32 without padding
  return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").replace("=", "")


def _totp_counter(now: int | None = None, step_seconds: int = 30) -> int:
  ts = int(now if now is not None else time.time())
  return ts // step_seconds


def totp_code(secret_b32: str, *, now: int | None = None, digits: int = 6, step_seconds: int = 30) -> str:
  # RFC 6238 (HMAC-SHA1)
  s = secret_b32.strip().upper()
  pad = "=" * ((8 - (len(s) % 8)) % 8)
  key = base64.b32decode((s + pad).encode("utf-8"))
  counter = _totp_counter(now, step_seconds)
  msg = struct.pack(">Q", counter)
  digest = hmac.new(key, msg, hashlib.sha1).digest()
  offset = digest[-1] & 0x0F
  binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
  return str(binary % (10**digits)).zfill(digits)


def totp_verify(secret_b32: str, code: str | None, *, window: int = 1, now: int | None = None) -> bool:
  c = (code or "").strip().replace(" ", "")
  if not c.isdigit():
    return False
  ts = int(now if now is not None else time.time())
  for w in range(-window, window + 1):
    if secrets.compare_digest(totp_code(secret_b32, now=ts + w * 30), c):
      return True
  return False


def totp_provisioning_uri(secret_b32: str, account: str) -> str:
  label = quote(f"{TOTP_ISSUER}:{account}")
  return f"otpauth://totp/{label}?secret={secret_b32}&issuer={quote(TOTP_ISSUER)}&digits=6&period=30"


def trusted_device_token_new() -> str:
  return "tbtd_" + secrets.token_urlsafe(32)


def trusted_device_token_hash(token: str) -> str:
  # Keyed hash so DB leaks don't allow offline token matching.
  return _keyed_hash(token)


def password_reset_token_new() -> str:
  return secrets.token_urlsafe(32)


def password_reset_token_hash(token: str) -> str:
  return hashlib.sha256(token.encode("utf-8")).hexdigest()
