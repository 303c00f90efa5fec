from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./taskboard_test.db")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="taskboard-uploads-"))

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from taskboard.config import settings
from taskboard.db import SessionLocal, engine
from taskboard.main import app
from taskboard.models import DEFAULT_BOARD_ID, ROLE_ADMIN, ROLE_MEMBER, Base, Board, BoardMember, User
from taskboard.notifications.events import Notifier
from taskboard.notifications.service import MailConfig, MailMessage
from taskboard.rate_limit import limiter
from taskboard.security import SESSION_COOKIE_NAME, hash_password, totp_code

ADMIN_EMAIL = "admin@local"
ADMIN_PASSWORD = "admin1234"
MEMBER_EMAIL = "member@local"
MEMBER_PASSWORD = "member1234"


@dataclass
class FakeMailer:
  """Records outgoing mail instead of talking to SMTP."""

  configured: bool = True
  fail: bool = False
  sent: list[MailMessage] = field(default_factory=list)
  verified: list[MailConfig] = field(default_factory=list)

  def __post_init__(self) -> None:
    self.cache = _NullCache()

  async def is_configured(self) -> bool:
    return self.configured

  async def send(self, msg: MailMessage) -> bool:
    if self.fail or not self.configured:
      return False
    self.sent.append(msg)
    return True

  async def verify(self, cfg: MailConfig) -> None:
    self.verified.append(cfg)


class _NullCache:
  def clear(self) -> None:
    return None


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  limiter.reset_prefix("auth:")
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)

  async with SessionLocal() as db:
    db.add(Board(id=DEFAULT_BOARD_ID, name="Main board"))
    admin = User(
      email=ADMIN_EMAIL,
      name="Administrator",
      role=ROLE_ADMIN,
      is_system=True,
      must_change_password=False,
      password_hash=hash_password(ADMIN_PASSWORD),
      default_board_id=DEFAULT_BOARD_ID,
    )
    member = User(
      email=MEMBER_EMAIL,
      name="Member",
      role=ROLE_MEMBER,
      must_change_password=False,
      password_hash=hash_password(MEMBER_PASSWORD),
      default_board_id=DEFAULT_BOARD_ID,
    )
    db.add_all([admin, member])
    await db.flush()
    db.add_all([BoardMember(board_id=DEFAULT_BOARD_ID, user_id=admin.id), BoardMember(board_id=DEFAULT_BOARD_ID, user_id=member.id)])
    await db.commit()
  await engine.dispose()


@pytest.fixture(autouse=True)
async def _clean_between_tests() -> None:
  if not settings.is_test_db():
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. taskboard_test.db)."
    )
  await _reset_db()
  yield
  await app.state.notifier.drain()


@pytest.fixture
def mailer() -> FakeMailer:
  fake = FakeMailer()
  app.state.mailer = fake
  app.state.notifier = Notifier(fake)
  return fake


@pytest.fixture
async def client(mailer: FakeMailer) -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


@pytest.fixture
async def other_client(mailer: FakeMailer) -> AsyncClient:
  # Separate cookie jar for a second concurrent user.
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


async def login(
  client: AsyncClient,
  login_id: str,
  password: str,
  *,
  totp: str | None = None,
  rememberDevice: bool | None = None,
) -> dict:
  payload: dict = {"login": login_id, "password": password}
  if totp:
    payload["totp"] = totp
  if rememberDevice is not None:
    payload["rememberDevice"] = rememberDevice
  res = await client.post("/auth/login", json=payload)
  assert res.status_code == 200, res.text
  cookie = res.headers.get("set-cookie")
  assert cookie and f"{SESSION_COOKIE_NAME}=" in cookie
  return res.json()


async def enable_two_factor(client: AsyncClient) -> str:
  # Caller is logged in with a settled password and no TOTP yet.
  setup = await client.post("/auth/2fa/setup")
  assert setup.status_code == 200, setup.text
  secret = setup.json()["secret"]
  enable = await client.post("/auth/2fa/enable", json={"code": totp_code(secret)})
  assert enable.status_code == 200, enable.text
  assert enable.json()["authState"] == "AUTHORIZED"
  return secret


async def authorize(client: AsyncClient, login_id: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD) -> str:
  """Log in and enroll TOTP so the session is fully authorized; returns the TOTP secret."""
  await login(client, login_id, password)
  return await enable_two_factor(client)


async def user_id(email: str) -> str:
  async with SessionLocal() as db:
    res = await db.execute(select(User.id).where(User.email == email))
    return res.scalar_one()
