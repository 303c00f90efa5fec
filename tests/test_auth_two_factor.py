from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, update

from taskboard.config import settings
from taskboard.db import SessionLocal
from taskboard.deps import auth_state
from taskboard.models import TrustedDevice
from taskboard.security import TRUSTED_DEVICE_COOKIE_NAME, totp_code
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, MEMBER_EMAIL, MEMBER_PASSWORD, authorize, enable_two_factor, login


def _wrong(code: str) -> str:
  return str((int(code) + 500000) % 1000000).zfill(6)


@pytest.mark.anyio
async def test_auth_state_precedence() -> None:
  def user(**kw):
    return SimpleNamespace(**{"must_change_password": False, "totp_enabled": True, **kw})

  passed = SimpleNamespace(two_factor_passed=True)
  pending = SimpleNamespace(two_factor_passed=False)

  assert auth_state(None, None) == "ANONYMOUS"
  assert auth_state(user(must_change_password=True, totp_enabled=False), pending) == "MUST_CHANGE_PASSWORD"
  assert auth_state(user(totp_enabled=False), pending) == "TWO_FACTOR_SETUP_REQUIRED"
  assert auth_state(user(), pending) == "TWO_FACTOR_PENDING"
  assert auth_state(user(), passed) == "AUTHORIZED"


@pytest.mark.anyio
async def test_setup_required_until_enrollment(client: AsyncClient) -> None:
  res = await client.get("/auth/me")
  assert res.json()["authState"] == "ANONYMOUS"
  res = await client.get("/board")
  assert res.status_code == 401, res.text
  assert res.json()["detail"]["code"] == "Unauthorized"

  body = await login(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  assert body["authState"] == "TWO_FACTOR_SETUP_REQUIRED"
  res = await client.get("/board")
  assert res.status_code == 403, res.text
  assert res.json()["detail"]["code"] == "TwoFactorSetupRequired"

  await enable_two_factor(client)
  res = await client.get("/board")
  assert res.status_code == 200, res.text


@pytest.mark.anyio
async def test_enable_rejects_wrong_code(client: AsyncClient) -> None:
  await login(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  setup = await client.post("/auth/2fa/setup")
  secret = setup.json()["secret"]
  assert setup.json()["otpauthUri"].startswith("otpauth://totp/")

  res = await client.post("/auth/2fa/enable", json={"code": _wrong(totp_code(secret))})
  assert res.status_code == 400, res.text
  assert res.json()["detail"]["code"] == "InvalidCode"
  me = await client.get("/auth/me")
  assert me.json()["user"]["totpEnabled"] is False


@pytest.mark.anyio
async def test_must_change_password_comes_first(client: AsyncClient, other_client: AsyncClient) -> None:
  await authorize(client)
  res = await client.post("/auth/users", json={"email": "new@local", "name": "Newbie", "password": "temp-pass-1"})
  assert res.status_code == 201, res.text

  body = await login(other_client, "new@local", "temp-pass-1")
  assert body["authState"] == "MUST_CHANGE_PASSWORD"
  res = await other_client.post("/auth/2fa/setup")
  assert res.status_code == 403, res.text
  assert res.json()["detail"]["code"] == "PasswordChangeRequired"

  res = await other_client.post("/auth/password", json={"newPassword": "settled-pass-1"})
  assert res.status_code == 200, res.text
  me = await other_client.get("/auth/me")
  assert me.json()["authState"] == "TWO_FACTOR_SETUP_REQUIRED"


@pytest.mark.anyio
async def test_login_requires_code_once_enrolled(client: AsyncClient) -> None:
  secret = await authorize(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  await client.post("/auth/logout")

  res = await client.post("/auth/login", json={"login": MEMBER_EMAIL, "password": MEMBER_PASSWORD})
  assert res.status_code == 401, res.text
  assert res.json()["detail"]["code"] == "TwoFactorRequired"

  res = await client.post("/auth/login", json={"login": MEMBER_EMAIL, "password": MEMBER_PASSWORD, "totp": _wrong(totp_code(secret))})
  assert res.status_code == 401, res.text
  assert res.json()["detail"]["code"] == "InvalidCode"
  me = await client.get("/auth/me")
  assert me.json()["authState"] == "ANONYMOUS"

  body = await login(client, MEMBER_EMAIL, MEMBER_PASSWORD, totp=totp_code(secret))
  assert body["authState"] == "AUTHORIZED"
  assert body["twoFactorPassed"] is True


@pytest.mark.anyio
async def test_trusted_device_skips_code(client: AsyncClient, other_client: AsyncClient) -> None:
  secret = await authorize(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  await client.post("/auth/logout")

  res = await client.post(
    "/auth/login",
    json={"login": MEMBER_EMAIL, "password": MEMBER_PASSWORD, "totp": totp_code(secret), "rememberDevice": True},
  )
  assert res.status_code == 200, res.text
  assert client.cookies.get(TRUSTED_DEVICE_COOKIE_NAME)
  await client.post("/auth/logout")

  body = await login(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  assert body["authState"] == "AUTHORIZED"

  # A different device without the cookie is still prompted.
  res = await other_client.post("/auth/login", json={"login": MEMBER_EMAIL, "password": MEMBER_PASSWORD})
  assert res.status_code == 401, res.text
  assert res.json()["detail"]["code"] == "TwoFactorRequired"


@pytest.mark.anyio
async def test_expired_trusted_device_is_purged(client: AsyncClient) -> None:
  secret = await authorize(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  res = await client.post("/auth/2fa/verify", json={"code": totp_code(secret), "rememberDevice": True})
  assert res.status_code == 200, res.text
  await client.post("/auth/logout")

  async with SessionLocal() as db:
    await db.execute(update(TrustedDevice).values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)))
    await db.commit()

  res = await client.post("/auth/login", json={"login": MEMBER_EMAIL, "password": MEMBER_PASSWORD})
  assert res.status_code == 401, res.text
  assert res.json()["detail"]["code"] == "TwoFactorRequired"

  async with SessionLocal() as db:
    remaining = await db.execute(select(func.count()).select_from(TrustedDevice))
    assert remaining.scalar_one() == 0


@pytest.mark.anyio
async def test_verify_can_remember_device(client: AsyncClient) -> None:
  secret = await authorize(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  res = await client.post("/auth/2fa/verify", json={"code": totp_code(secret), "rememberDevice": True})
  assert res.status_code == 200, res.text
  assert res.json()["authState"] == "AUTHORIZED"
  assert client.cookies.get(TRUSTED_DEVICE_COOKIE_NAME)

  res = await client.post("/auth/2fa/verify", json={"code": _wrong(totp_code(secret))})
  assert res.status_code == 400, res.text
  assert res.json()["detail"]["code"] == "InvalidCode"


@pytest.mark.anyio
async def test_verified_session_can_rotate_secret(client: AsyncClient) -> None:
  await authorize(client, MEMBER_EMAIL, MEMBER_PASSWORD)
  res = await client.post("/auth/2fa/setup")
  assert res.status_code == 200, res.text


@pytest.mark.anyio
async def test_login_identifiers(client: AsyncClient, other_client: AsyncClient) -> None:
  body = await login(client, "admin", ADMIN_PASSWORD)
  assert body["user"]["email"] == ADMIN_EMAIL
  body = await login(client, "MEMBER@LOCAL", MEMBER_PASSWORD)
  assert body["user"]["email"] == MEMBER_EMAIL
  body = await login(client, "member", MEMBER_PASSWORD)
  assert body["user"]["email"] == MEMBER_EMAIL

  res = await client.post("/auth/login", json={"login": "nobody@local", "password": "whatever1"})
  assert res.status_code == 401, res.text
  unknown = res.json()["detail"]
  res = await client.post("/auth/login", json={"login": MEMBER_EMAIL, "password": "wrong-password"})
  assert res.status_code == 401, res.text
  assert res.json()["detail"] == unknown

  await authorize(other_client)
  res = await other_client.post("/auth/users", json={"email": "twin@local", "name": "Member", "password": "twin-pass-1"})
  assert res.status_code == 201, res.text
  res = await client.post("/auth/login", json={"login": "member", "password": MEMBER_PASSWORD})
  assert res.status_code == 409, res.text
  assert res.json()["detail"]["code"] == "AmbiguousLogin"


@pytest.mark.anyio
async def test_logout_ends_session(client: AsyncClient) -> None:
  await authorize(client)
  res = await client.post("/auth/logout")
  assert res.status_code == 200, res.text
  res = await client.get("/auth/profile")
  assert res.status_code == 401, res.text


@pytest.mark.anyio
async def test_login_rate_limit(client: AsyncClient) -> None:
  limit = int(settings.rate_limit_login_identifier_per_minute)
  for _ in range(limit):
    res = await client.post("/auth/login", json={"login": "ghost@local", "password": "nope-nope"})
    assert res.status_code == 401, res.text
  res = await client.post("/auth/login", json={"login": "ghost@local", "password": "nope-nope"})
  assert res.status_code == 429, res.text
  assert res.json()["detail"]["code"] == "RateLimited"
  assert int(res.headers["retry-after"]) >= 1
