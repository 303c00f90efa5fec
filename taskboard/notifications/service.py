from __future__ import annotations

import asyncio
import json
import logging
import smtplib
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from email.message import EmailMessage

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskboard.config import settings
from taskboard.models import MAIL_SETTINGS_ID, MailSettings
from taskboard.security import decrypt_secret

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailConfig:
  host: str
  port: int
  secure: bool
  user: str
  password: str
  from_address: str

  def fingerprint(self) -> str:
    # Password rotation is picked up by the TTL refresh, not by the key.
    return json.dumps(
      {"host": self.host, "port": self.port, "secure": self.secure, "user": self.user, "from": self.from_address},
      sort_keys=True,
    )


@dataclass(frozen=True)
class MailMessage:
  to: list[str]
  subject: str
  text: str


class SmtpTransport:
  """
  One SMTP connection, opened on first send and kept for later sends.

  A connection the server dropped is reopened once per send; any other failure
  discards it so the next send starts clean.
  """

  def __init__(self, cfg: MailConfig, *, timeout: float) -> None:
    self.cfg = cfg
    self.timeout = timeout
    self._conn: smtplib.SMTP | None = None
    self._lock = threading.Lock()
    self._closed = False

  def _connect(self) -> smtplib.SMTP:
    if self.cfg.secure:
      s: smtplib.SMTP = smtplib.SMTP_SSL(host=self.cfg.host, port=self.cfg.port, timeout=self.timeout)
      s.ehlo()
    else:
      s = smtplib.SMTP(host=self.cfg.host, port=self.cfg.port, timeout=self.timeout)
      s.ehlo()
      if s.has_extn("starttls"):
        s.starttls()
        s.ehlo()
    if self.cfg.user and self.cfg.password:
      s.login(self.cfg.user, self.cfg.password)
    return s

  def _drop(self) -> None:
    conn, self._conn = self._conn, None
    if conn is not None:
      conn.close()

  def send(self, msg: MailMessage) -> None:
    m = EmailMessage()
    m["Subject"] = msg.subject
    m["From"] = self.cfg.from_address
    m["To"] = ", ".join(msg.to)
    m.set_content(msg.text)
    with self._lock:
      try:
        if self._conn is None:
          self._conn = self._connect()
        try:
          self._conn.send_message(m)
        except smtplib.SMTPServerDisconnected:
          logger.info("smtp connection to %s dropped, reconnecting", self.cfg.host)
          self._drop()
          self._conn = self._connect()
          self._conn.send_message(m)
      except Exception:
        self._drop()
        raise
      if self._closed:
        self._drop()

  def verify(self) -> None:
    with self._connect() as s:
      s.noop()

  def close(self) -> None:
    # Never waits on an in-flight send; that send drops the connection when done.
    self._closed = True
    if self._lock.acquire(blocking=False):
      try:
        self._drop()
      finally:
        self._lock.release()


class TransportCache:
  """
  Reuses one transport, and with it one open SMTP connection, per effective
  mail configuration.

  A different fingerprint always builds a new transport; a matching one is
  rebuilt once it is older than the TTL. Replaced transports are closed.
  """

  def __init__(
    self,
    *,
    ttl_seconds: float,
    timeout_seconds: float,
    factory: Callable[..., SmtpTransport] = SmtpTransport,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self.ttl_seconds = ttl_seconds
    self.timeout_seconds = timeout_seconds
    self._factory = factory
    self._clock = clock
    self._key: str | None = None
    self._transport: SmtpTransport | None = None
    self._created_at = 0.0

  def get(self, cfg: MailConfig) -> SmtpTransport:
    now = self._clock()
    key = cfg.fingerprint()
    if self._transport is not None and self._key == key and now - self._created_at < self.ttl_seconds:
      return self._transport
    self._retire()
    self._transport = self._factory(cfg, timeout=self.timeout_seconds)
    self._key = key
    self._created_at = now
    return self._transport

  def _retire(self) -> None:
    if self._transport is not None:
      self._transport.close()
    self._transport = None

  def clear(self) -> None:
    self._retire()
    self._key = None
    self._created_at = 0.0


def config_from_record(rec: MailSettings) -> MailConfig | None:
  if not rec.enabled:
    return None
  password = decrypt_secret(rec.password_encrypted) if rec.password_encrypted else ""
  if not rec.host or not rec.port or not rec.username or not password:
    return None
  return MailConfig(
    host=rec.host,
    port=int(rec.port),
    secure=bool(rec.secure),
    user=rec.username,
    password=password,
    from_address=rec.from_address or rec.username,
  )


def config_from_env() -> MailConfig | None:
  if not settings.smtp_host or not settings.smtp_user or not settings.smtp_pass:
    return None
  return MailConfig(
    host=settings.smtp_host,
    port=int(settings.smtp_port),
    secure=bool(settings.smtp_secure),
    user=settings.smtp_user,
    password=settings.smtp_pass,
    from_address=settings.smtp_from or settings.smtp_user,
  )


async def load_mail_config(db: AsyncSession) -> MailConfig | None:
  # A saved settings row is authoritative, even when it disables mail.
  res = await db.execute(select(MailSettings).where(MailSettings.id == MAIL_SETTINGS_ID))
  rec = res.scalar_one_or_none()
  if rec is not None:
    return config_from_record(rec)
  return config_from_env()


class Mailer:
  def __init__(self, session_factory: async_sessionmaker, *, cache: TransportCache | None = None) -> None:
    self._session_factory = session_factory
    self.cache = cache or TransportCache(
      ttl_seconds=settings.mail_transport_ttl_seconds,
      timeout_seconds=settings.smtp_timeout_seconds,
    )

  async def load_config(self) -> MailConfig | None:
    async with self._session_factory() as db:
      return await load_mail_config(db)

  async def is_configured(self) -> bool:
    return await self.load_config() is not None

  async def send(self, msg: MailMessage) -> bool:
    """Deliver a message; failures are logged and reported as False, never raised."""
    if not msg.to:
      return False
    try:
      cfg = await self.load_config()
      if cfg is None:
        logger.info("mail disabled, dropping %r to %d recipient(s)", msg.subject, len(msg.to))
        return False
      transport = self.cache.get(cfg)
      await asyncio.to_thread(transport.send, msg)
      return True
    except Exception:
      logger.warning("mail delivery failed for %r", msg.subject, exc_info=True)
      return False

  async def verify(self, cfg: MailConfig) -> None:
    transport = SmtpTransport(cfg, timeout=self.cache.timeout_seconds)
    await asyncio.to_thread(transport.verify)
