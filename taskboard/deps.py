from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

from fastapi import Cookie, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.db import SessionLocal
from taskboard.errors import (
  BoardNotSelected,
  Forbidden,
  PasswordChangeRequired,
  TwoFactorRequired,
  TwoFactorSetupRequired,
  Unauthorized,
)
from taskboard.memberships import board_exists, can_access_board
from taskboard.models import ROLE_ADMIN, Session as DbSession, User
from taskboard.notifications.events import Notifier
from taskboard.notifications.service import Mailer
from taskboard.security import SESSION_COOKIE_NAME
from taskboard.sessions import load_session

ANONYMOUS = "ANONYMOUS"
MUST_CHANGE_PASSWORD = "MUST_CHANGE_PASSWORD"
TWO_FACTOR_SETUP_REQUIRED = "TWO_FACTOR_SETUP_REQUIRED"
TWO_FACTOR_PENDING = "TWO_FACTOR_PENDING"
AUTHORIZED = "AUTHORIZED"


@dataclass
class AuthContext:
  user: User
  session: DbSession


@dataclass
class BoardContext:
  user: User
  session: DbSession
  board_id: str


async def get_db() -> AsyncIterator[AsyncSession]:
  async with SessionLocal() as session:
    yield session


def get_mailer(request: Request) -> Mailer:
  return request.app.state.mailer


def get_notifier(request: Request) -> Notifier:
  return request.app.state.notifier


def client_ip(request: Request) -> str:
  return request.client.host if request.client else "unknown"


def auth_state(user: User | None, s: DbSession | None) -> str:
  # Precedence: must-change-password > must-setup-2FA > must-verify-2FA > authorized.
  if user is None or s is None:
    return ANONYMOUS
  if user.must_change_password:
    return MUST_CHANGE_PASSWORD
  if not user.totp_enabled:
    return TWO_FACTOR_SETUP_REQUIRED
  if not s.two_factor_passed:
    return TWO_FACTOR_PENDING
  return AUTHORIZED


async def optional_auth(
  db: AsyncSession = Depends(get_db),
  session_cookie: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> AuthContext | None:
  s = await load_session(db, session_cookie)
  if s is None:
    return None
  res = await db.execute(select(User).where(User.id == s.user_id))
  u = res.scalar_one_or_none()
  if u is None:
    return None
  return AuthContext(user=u, session=s)


async def require_login(ctx: AuthContext | None = Depends(optional_auth)) -> AuthContext:
  if ctx is None:
    raise Unauthorized()
  return ctx


async def require_password_settled(ctx: AuthContext = Depends(require_login)) -> AuthContext:
  if ctx.user.must_change_password:
    raise PasswordChangeRequired()
  return ctx


async def require_authorized(ctx: AuthContext = Depends(require_login)) -> AuthContext:
  state = auth_state(ctx.user, ctx.session)
  if state == MUST_CHANGE_PASSWORD:
    raise PasswordChangeRequired()
  if state == TWO_FACTOR_SETUP_REQUIRED:
    raise TwoFactorSetupRequired()
  if state == TWO_FACTOR_PENDING:
    raise TwoFactorRequired()
  return ctx


async def require_admin(ctx: AuthContext = Depends(require_authorized)) -> AuthContext:
  if ctx.user.role != ROLE_ADMIN:
    raise Forbidden("Admin required")
  return ctx


async def require_board(
  ctx: AuthContext = Depends(require_authorized),
  db: AsyncSession = Depends(get_db),
) -> BoardContext:
  board_id = ctx.session.board_id
  if not board_id or not await board_exists(db, board_id):
    raise BoardNotSelected()
  if not await can_access_board(db, user=ctx.user, board_id=board_id):
    raise Forbidden("No board access")
  return BoardContext(user=ctx.user, session=ctx.session, board_id=board_id)
