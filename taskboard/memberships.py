from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.models import ROLE_ADMIN, Board, BoardMember, Session as DbSession, User


async def has_membership(db: AsyncSession, *, board_id: str, user_id: str) -> bool:
  res = await db.execute(
    select(BoardMember.id).where(BoardMember.board_id == board_id, BoardMember.user_id == user_id)
  )
  return res.scalar_one_or_none() is not None


async def can_access_board(db: AsyncSession, *, user: User, board_id: str) -> bool:
  # Admins are implicit members of every board.
  if user.role == ROLE_ADMIN:
    return True
  return await has_membership(db, board_id=board_id, user_id=user.id)


async def earliest_membership_board_id(db: AsyncSession, user_id: str, *, excluding: str | None = None) -> str | None:
  q = select(BoardMember.board_id).where(BoardMember.user_id == user_id)
  if excluding:
    q = q.where(BoardMember.board_id != excluding)
  res = await db.execute(q.order_by(BoardMember.created_at.asc(), BoardMember.id.asc()).limit(1))
  return res.scalar_one_or_none()


async def earliest_board_id(db: AsyncSession) -> str | None:
  res = await db.execute(select(Board.id).order_by(Board.created_at.asc(), Board.id.asc()).limit(1))
  return res.scalar_one_or_none()


async def board_exists(db: AsyncSession, board_id: str | None) -> bool:
  if not board_id:
    return False
  res = await db.execute(select(func.count()).select_from(Board).where(Board.id == board_id))
  return int(res.scalar_one()) > 0


async def ensure_membership(db: AsyncSession, *, board_id: str, user_id: str) -> None:
  if not await has_membership(db, board_id=board_id, user_id=user_id):
    db.add(BoardMember(board_id=board_id, user_id=user_id))
    await db.flush()


async def board_member_ids(db: AsyncSession, board_id: str) -> list[str]:
  res = await db.execute(
    select(BoardMember.user_id).where(BoardMember.board_id == board_id).order_by(BoardMember.created_at.asc())
  )
  return list(res.scalars().all())


async def session_board_for(db: AsyncSession, user: User) -> str | None:
  """Board a fresh session starts on: the user's default, else the earliest membership."""
  if user.default_board_id and await board_exists(db, user.default_board_id):
    return user.default_board_id
  return await earliest_membership_board_id(db, user.id)


async def reassign_lost_default_boards(db: AsyncSession, *, board_id: str, user_ids: Iterable[str]) -> None:
  """Users whose default board was board_id fall back to their earliest other membership, or none."""
  ids = list(user_ids)
  if not ids:
    return
  res = await db.execute(select(User).where(User.id.in_(ids), User.default_board_id == board_id))
  for u in res.scalars().all():
    u.default_board_id = await earliest_membership_board_id(db, u.id, excluding=board_id)
  await db.flush()


async def clear_sessions_on_board(db: AsyncSession, board_id: str) -> None:
  await db.execute(update(DbSession).where(DbSession.board_id == board_id).values(board_id=None))
