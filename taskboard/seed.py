from __future__ import annotations

import asyncio
import logging
import os
import secrets

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.db import SessionLocal
from taskboard.memberships import earliest_membership_board_id, ensure_membership
from taskboard.models import DEFAULT_BOARD_ID, ROLE_ADMIN, Board, User
from taskboard.security import hash_password

logger = logging.getLogger(__name__)

SYSTEM_ADMIN_EMAIL = "admin@local"
SYSTEM_ADMIN_NAME = "Administrator"
DEFAULT_BOARD_NAME = "Main board"


def _bootstrap_password(env_key: str) -> tuple[str, bool]:
  configured = (os.getenv(env_key) or "").strip()
  if configured:
    return configured, False
  return secrets.token_urlsafe(14), True


async def ensure_default_board(db: AsyncSession) -> Board:
  res = await db.execute(select(Board).where(Board.id == DEFAULT_BOARD_ID))
  board = res.scalar_one_or_none()
  if board is None:
    board = Board(id=DEFAULT_BOARD_ID, name=DEFAULT_BOARD_NAME)
    db.add(board)
    await db.flush()
  return board


async def bootstrap(db: AsyncSession) -> str | None:
  """
  Make a fresh or upgraded database usable.

  Returns the generated system admin password when one had to be invented.
  """
  board = await ensure_default_board(db)
  generated: str | None = None

  res = await db.execute(select(func.count()).select_from(User))
  if int(res.scalar_one()) == 0:
    password, was_generated = _bootstrap_password("SEED_ADMIN_PASSWORD")
    admin = User(
      email=SYSTEM_ADMIN_EMAIL,
      name=SYSTEM_ADMIN_NAME,
      role=ROLE_ADMIN,
      is_system=True,
      must_change_password=True,
      password_hash=hash_password(password),
      default_board_id=board.id,
    )
    db.add(admin)
    await db.flush()
    await ensure_membership(db, board_id=board.id, user_id=admin.id)
    logger.info("created system admin %s", SYSTEM_ADMIN_EMAIL)
    if was_generated:
      generated = password
  else:
    res = await db.execute(select(User.id).where(User.is_system.is_(True)).limit(1))
    if res.scalar_one_or_none() is None:
      res = await db.execute(select(User).where(User.role == ROLE_ADMIN).order_by(User.created_at.asc()).limit(1))
      oldest = res.scalar_one_or_none()
      if oldest is not None:
        oldest.is_system = True
        logger.info("marked %s as system admin", oldest.email)

  res = await db.execute(select(User))
  for u in res.scalars().all():
    if u.role != ROLE_ADMIN and await earliest_membership_board_id(db, u.id) is None:
      await ensure_membership(db, board_id=board.id, user_id=u.id)
    if u.default_board_id is None:
      u.default_board_id = await earliest_membership_board_id(db, u.id) or board.id

  await db.commit()
  return generated


async def seed() -> None:
  async with SessionLocal() as db:
    generated = await bootstrap(db)
  if generated:
    print("Taskboard system admin created:")
    print(f"  login=admin password={generated} (change it on first login)")


def main() -> None:
  logging.basicConfig(level=logging.INFO)
  asyncio.run(seed())


if __name__ == "__main__":
  main()
