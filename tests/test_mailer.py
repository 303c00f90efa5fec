from __future__ import annotations

import smtplib

import pytest
from httpx import AsyncClient

from taskboard.config import settings
from taskboard.db import SessionLocal
from taskboard.models import MAIL_SETTINGS_ID, MailSettings
from taskboard.notifications.service import MailConfig, Mailer, MailMessage, SmtpTransport, TransportCache
from taskboard.security import encrypt_secret
from conftest import FakeMailer, authorize


def _cfg(**kw) -> MailConfig:
  base = {"host": "smtp.local", "port": 465, "secure": True, "user": "bot@local", "password": "pw", "from_address": "bot@local"}
  return MailConfig(**{**base, **kw})


class _Clock:
  def __init__(self) -> None:
    self.now = 100.0

  def __call__(self) -> float:
    return self.now


class _RecordingTransport:
  def __init__(self, cfg: MailConfig, *, timeout: float) -> None:
    self.cfg = cfg
    self.timeout = timeout
    self.sent: list[MailMessage] = []
    self.closed = False

  def send(self, msg: MailMessage) -> None:
    self.sent.append(msg)

  def close(self) -> None:
    self.closed = True


class _BrokenTransport(_RecordingTransport):
  def send(self, msg: MailMessage) -> None:
    raise smtplib.SMTPServerDisconnected("gone")


class _FakeSmtp:
  opened: list["_FakeSmtp"] = []
  drop_next = False

  def __init__(self, host: str, port: int, timeout: float) -> None:
    self.host = host
    self.logins: list[str] = []
    self.messages: list[str] = []
    self.closed = False
    _FakeSmtp.opened.append(self)

  def ehlo(self) -> None:
    pass

  def login(self, user: str, password: str) -> None:
    self.logins.append(user)

  def send_message(self, m) -> None:
    if _FakeSmtp.drop_next:
      _FakeSmtp.drop_next = False
      raise smtplib.SMTPServerDisconnected("idle timeout")
    self.messages.append(m["Subject"])

  def close(self) -> None:
    self.closed = True


@pytest.mark.anyio
async def test_smtp_transport_keeps_connection_open(monkeypatch) -> None:
  monkeypatch.setattr(_FakeSmtp, "opened", [])
  monkeypatch.setattr(smtplib, "SMTP_SSL", _FakeSmtp)
  transport = SmtpTransport(_cfg(), timeout=5)

  transport.send(MailMessage(to=["member@local"], subject="one", text="body"))
  transport.send(MailMessage(to=["member@local"], subject="two", text="body"))
  assert len(_FakeSmtp.opened) == 1
  first = _FakeSmtp.opened[0]
  assert first.messages == ["one", "two"]
  assert first.logins == ["bot@local"]

  # A connection the server dropped is reopened and the message still goes out.
  monkeypatch.setattr(_FakeSmtp, "drop_next", True)
  transport.send(MailMessage(to=["member@local"], subject="three", text="body"))
  assert len(_FakeSmtp.opened) == 2
  assert first.closed is True
  assert _FakeSmtp.opened[1].messages == ["three"]

  transport.close()
  assert _FakeSmtp.opened[1].closed is True


@pytest.mark.anyio
async def test_transport_cache_reuses_until_ttl() -> None:
  clock = _Clock()
  cache = TransportCache(ttl_seconds=30, timeout_seconds=5, factory=_RecordingTransport, clock=clock)

  first = cache.get(_cfg())
  assert first.timeout == 5
  assert cache.get(_cfg()) is first
  # Password is not part of the fingerprint.
  assert cache.get(_cfg(password="rotated")) is first

  clock.now += 31
  second = cache.get(_cfg())
  assert second is not first
  assert first.closed is True
  assert second.closed is False


@pytest.mark.anyio
async def test_transport_cache_rebuilds_on_config_change() -> None:
  cache = TransportCache(ttl_seconds=30, timeout_seconds=5, factory=_RecordingTransport, clock=_Clock())
  first = cache.get(_cfg())
  assert cache.get(_cfg(port=587, secure=False)) is not first
  changed = cache.get(_cfg(from_address="noreply@local"))
  assert changed.cfg.from_address == "noreply@local"

  cache.clear()
  assert changed.closed is True
  assert cache.get(_cfg(from_address="noreply@local")) is not changed


async def _save_mail_settings(*, enabled: bool = True) -> None:
  async with SessionLocal() as db:
    db.add(
      MailSettings(
        id=MAIL_SETTINGS_ID,
        enabled=enabled,
        host="smtp.local",
        port=465,
        secure=True,
        username="bot@local",
        password_encrypted=encrypt_secret("pw"),
        from_address="bot@local",
      )
    )
    await db.commit()


@pytest.mark.anyio
async def test_mailer_sends_through_cached_transport() -> None:
  await _save_mail_settings()
  cache = TransportCache(ttl_seconds=30, timeout_seconds=5, factory=_RecordingTransport, clock=_Clock())
  mailer = Mailer(SessionLocal, cache=cache)

  assert await mailer.is_configured() is True
  msg = MailMessage(to=["member@local"], subject="Hello", text="body")
  assert await mailer.send(msg) is True
  assert await mailer.send(msg) is True
  transport = cache.get(_cfg())
  assert transport.sent == [msg, msg]


@pytest.mark.anyio
async def test_mailer_swallows_delivery_errors() -> None:
  await _save_mail_settings()
  mailer = Mailer(SessionLocal, cache=TransportCache(ttl_seconds=30, timeout_seconds=5, factory=_BrokenTransport))
  assert await mailer.send(MailMessage(to=["member@local"], subject="Hello", text="body")) is False


@pytest.mark.anyio
async def test_disabled_settings_override_environment(monkeypatch) -> None:
  monkeypatch.setattr(settings, "smtp_host", "env.smtp.local")
  monkeypatch.setattr(settings, "smtp_user", "env@local")
  monkeypatch.setattr(settings, "smtp_pass", "env-pass")
  mailer = Mailer(SessionLocal, cache=TransportCache(ttl_seconds=30, timeout_seconds=5, factory=_RecordingTransport))
  cfg = await mailer.load_config()
  assert cfg is not None and cfg.host == "env.smtp.local"

  await _save_mail_settings(enabled=False)
  assert await mailer.is_configured() is False
  assert await mailer.send(MailMessage(to=["member@local"], subject="Hello", text="body")) is False


@pytest.mark.anyio
async def test_admin_mail_settings(client: AsyncClient, mailer: FakeMailer) -> None:
  await authorize(client)
  res = await client.get("/auth/mail-settings")
  assert res.status_code == 200, res.text
  assert res.json()["enabled"] is False
  assert res.json()["passSet"] is False

  res = await client.put("/auth/mail-settings", json={"enabled": True, "host": "smtp.local"})
  assert res.status_code == 400, res.text
  assert res.json()["detail"]["message"] == "SMTP not configured"

  res = await client.put(
    "/auth/mail-settings",
    json={"enabled": True, "host": "smtp.local", "port": 465, "secure": True, "user": "bot@local", "password": "pw", "fromAddress": "bot@local"},
  )
  assert res.status_code == 200, res.text
  body = res.json()
  assert body["passSet"] is True
  assert "password" not in body

  res = await client.post("/auth/mail-settings/test", json={})
  assert res.status_code == 200, res.text
  assert res.json()["ok"] is True
  assert mailer.verified[-1].password == "pw"
