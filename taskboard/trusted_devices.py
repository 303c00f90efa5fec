from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import Request, Response
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.config import settings
from taskboard.models import TrustedDevice
from taskboard.security import TRUSTED_DEVICE_COOKIE_NAME, trusted_device_token_hash, trusted_device_token_new


def _ttl() -> timedelta:
  return timedelta(days=max(1, int(settings.mfa_trusted_device_ttl_days)))


async def issue_trusted_device(db: AsyncSession, *, user_id: str, request: Request | None = None) -> str:
  """Persist a new trusted device for the user and return the raw token for the cookie."""
  raw = trusted_device_token_new()
  db.add(
    TrustedDevice(
      user_id=user_id,
      token_hash=trusted_device_token_hash(raw),
      created_ip=request.client.host if request is not None and request.client else None,
      user_agent=request.headers.get("user-agent") if request is not None else None,
      expires_at=datetime.now(timezone.utc) + _ttl(),
    )
  )
  await db.flush()
  return raw


async def verify_trusted_device(db: AsyncSession, *, user_id: str, raw_token: str | None) -> bool:
  if not raw_token:
    return False
  res = await db.execute(
    select(TrustedDevice).where(
      TrustedDevice.user_id == user_id,
      TrustedDevice.token_hash == trusted_device_token_hash(raw_token),
    )
  )
  td = res.scalar_one_or_none()
  if td is None:
    return False
  now = datetime.now(timezone.utc)
  if td.expires_at <= now:
    # Expired devices are purged even though the login is then refused.
    await db.delete(td)
    await db.commit()
    return False
  td.last_used_at = now
  return True


async def revoke_user_trusted_devices(db: AsyncSession, user_id: str) -> None:
  await db.execute(delete(TrustedDevice).where(TrustedDevice.user_id == user_id))


def set_trusted_device_cookie(response: Response, raw_token: str) -> None:
  response.set_cookie(
    key=TRUSTED_DEVICE_COOKIE_NAME,
    value=raw_token,
    httponly=True,
    secure=settings.cookie_secure,
    samesite="lax",
    domain=settings.cookie_domain or None,
    max_age=int(_ttl().total_seconds()),
    path="/",
  )
