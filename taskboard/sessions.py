from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import Request, Response
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.config import settings
from taskboard.models import Session as DbSession
from taskboard.security import SESSION_COOKIE_NAME, sign_session_id, unsign_session_id


def _expires_at() -> datetime:
  return datetime.now(timezone.utc) + timedelta(hours=max(1, int(settings.session_ttl_hours)))


async def create_session(
  db: AsyncSession,
  *,
  user_id: str,
  two_factor_passed: bool,
  board_id: str | None,
  request: Request | None = None,
) -> DbSession:
  s = DbSession(
    user_id=user_id,
    two_factor_passed=two_factor_passed,
    board_id=board_id,
    expires_at=_expires_at(),
    created_ip=request.client.host if request is not None and request.client else None,
    user_agent=request.headers.get("user-agent") if request is not None else None,
  )
  db.add(s)
  await db.flush()
  return s


async def load_session(db: AsyncSession, cookie_value: str | None) -> DbSession | None:
  session_id = unsign_session_id(cookie_value)
  if not session_id:
    return None
  res = await db.execute(select(DbSession).where(DbSession.id == session_id))
  s = res.scalar_one_or_none()
  if s is None:
    return None
  if s.expires_at <= datetime.now(timezone.utc):
    await db.delete(s)
    await db.commit()
    return None
  return s


async def destroy_session(db: AsyncSession, session_id: str) -> None:
  await db.execute(delete(DbSession).where(DbSession.id == session_id))


async def destroy_user_sessions(db: AsyncSession, user_id: str, *, except_id: str | None = None) -> None:
  q = delete(DbSession).where(DbSession.user_id == user_id)
  if except_id:
    q = q.where(DbSession.id != except_id)
  await db.execute(q)


def set_session_cookie(response: Response, s: DbSession) -> None:
  response.set_cookie(
    key=SESSION_COOKIE_NAME,
    value=sign_session_id(s.id),
    httponly=True,
    secure=settings.cookie_secure,
    samesite="lax",
    domain=settings.cookie_domain or None,
    max_age=int(max(1, int(settings.session_ttl_hours)) * 3600),
    path="/",
  )


def clear_session_cookie(response: Response) -> None:
  response.delete_cookie(key=SESSION_COOKIE_NAME, path="/", domain=settings.cookie_domain or None)
