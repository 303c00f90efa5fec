from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.deps import AuthContext, get_db, require_admin
from taskboard.errors import Conflict, NotFound, ValidationFailed
from taskboard.memberships import board_exists, earliest_board_id, earliest_membership_board_id, ensure_membership
from taskboard.models import (
  ROLE_ADMIN,
  ROLE_MEMBER,
  Attachment,
  Board,
  BoardMember,
  Card,
  CardParticipant,
  Comment,
  PasswordResetToken,
  Session as DbSession,
  User,
)
from taskboard.routers.auth import user_out
from taskboard.schemas import AdminPasswordResetIn, AdminUserCreateIn, AdminUserUpdateIn, UserBoardsIn, UserBoardsOut, UserOut
from taskboard.security import hash_password
from taskboard.sessions import destroy_user_sessions
from taskboard.trusted_devices import revoke_user_trusted_devices
from taskboard import uploads

router = APIRouter(prefix="/auth/users", tags=["users"])


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
  res = await db.execute(select(User).where(User.id == user_id))
  u = res.scalar_one_or_none()
  if not u:
    raise NotFound("User not found")
  return u


async def _admin_count(db: AsyncSession) -> int:
  res = await db.execute(select(func.count()).select_from(User).where(User.role == ROLE_ADMIN))
  return int(res.scalar_one())


async def _email_taken(db: AsyncSession, email: str, *, except_id: str | None = None) -> bool:
  q = select(User.id).where(func.lower(User.email) == email)
  if except_id:
    q = q.where(User.id != except_id)
  res = await db.execute(q)
  return res.scalar_one_or_none() is not None


def _normalize_email(raw: str) -> str:
  email = raw.strip().lower()
  if "@" not in email or email.startswith("@") or email.endswith("@"):
    raise ValidationFailed("Invalid email")
  return email


async def _ensure_some_membership(db: AsyncSession, u: User) -> None:
  """Non-admins always keep at least one board."""
  existing = await earliest_membership_board_id(db, u.id)
  if existing is not None:
    if u.default_board_id is None:
      u.default_board_id = existing
    return
  board_id = u.default_board_id if await board_exists(db, u.default_board_id) else await earliest_board_id(db)
  if board_id is None:
    raise Conflict("No boards exist")
  await ensure_membership(db, board_id=board_id, user_id=u.id)
  u.default_board_id = board_id


@router.get("", response_model=list[UserOut])
async def list_users(_: AuthContext = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> list[UserOut]:
  res = await db.execute(select(User).order_by(User.created_at.asc(), User.email.asc()))
  return [user_out(u) for u in res.scalars().all()]


@router.post("", response_model=UserOut, status_code=status.HTTP_201_CREATED)
async def create_user(
  payload: AdminUserCreateIn,
  ctx: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> UserOut:
  email = _normalize_email(payload.email)
  if await _email_taken(db, email):
    raise Conflict("Email already in use")

  board_id = ctx.session.board_id if await board_exists(db, ctx.session.board_id) else await earliest_board_id(db)
  if board_id is None:
    raise Conflict("No boards exist")

  u = User(
    email=email,
    name=(payload.name or "").strip() or email.split("@", 1)[0],
    role=payload.role,
    password_hash=hash_password(payload.password),
    must_change_password=True,
    totp_enabled=False,
    default_board_id=board_id,
  )
  db.add(u)
  await db.flush()
  db.add(BoardMember(board_id=board_id, user_id=u.id))
  await db.commit()
  return user_out(u)


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
  user_id: str,
  payload: AdminUserUpdateIn,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> UserOut:
  u = await _get_user_or_404(db, user_id)
  fields_set = getattr(payload, "model_fields_set", set())

  if "role" in fields_set and payload.role is not None and payload.role != u.role:
    if u.is_system:
      raise Conflict("Cannot change role for system admin")
    if payload.role == ROLE_MEMBER and u.role == ROLE_ADMIN and await _admin_count(db) <= 1:
      raise Conflict("Cannot demote last admin")
    u.role = payload.role
    if u.role == ROLE_MEMBER:
      await _ensure_some_membership(db, u)

  if "email" in fields_set and payload.email is not None:
    email = _normalize_email(payload.email)
    if await _email_taken(db, email, except_id=u.id):
      raise Conflict("Email already in use")
    u.email = email
  if "name" in fields_set and payload.name is not None:
    u.name = payload.name.strip()

  await db.commit()
  return user_out(u)


@router.delete("/{user_id}")
async def delete_user(
  user_id: str,
  ctx: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> dict:
  if ctx.user.id == user_id:
    raise Conflict("Cannot delete yourself")
  u = await _get_user_or_404(db, user_id)
  if u.is_system:
    raise Conflict("Cannot delete system admin")
  if u.role == ROLE_ADMIN and await _admin_count(db) <= 1:
    raise Conflict("Cannot delete last admin")

  avatar_path = u.avatar_path
  await destroy_user_sessions(db, u.id)
  await revoke_user_trusted_devices(db, u.id)
  await db.execute(delete(PasswordResetToken).where(PasswordResetToken.user_id == u.id))
  await db.execute(delete(BoardMember).where(BoardMember.user_id == u.id))
  await db.execute(delete(CardParticipant).where(CardParticipant.user_id == u.id))
  # Authored content stays; it just loses its author.
  await db.execute(update(Card).where(Card.author_id == u.id).values(author_id=None))
  await db.execute(update(Comment).where(Comment.author_id == u.id).values(author_id=None))
  await db.execute(update(Attachment).where(Attachment.uploader_id == u.id).values(uploader_id=None))
  await db.delete(u)
  await db.commit()
  uploads.remove(avatar_path)
  return {"ok": True}


@router.post("/{user_id}/password")
async def reset_user_password(
  user_id: str,
  payload: AdminPasswordResetIn,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> dict:
  u = await _get_user_or_404(db, user_id)
  u.password_hash = hash_password(payload.newPassword)
  u.must_change_password = True
  await destroy_user_sessions(db, u.id)
  await revoke_user_trusted_devices(db, u.id)
  await db.commit()
  return {"ok": True}


@router.get("/{user_id}/boards", response_model=UserBoardsOut)
async def get_user_boards(
  user_id: str,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> UserBoardsOut:
  u = await _get_user_or_404(db, user_id)
  res = await db.execute(
    select(BoardMember.board_id).where(BoardMember.user_id == u.id).order_by(BoardMember.created_at.asc(), BoardMember.id.asc())
  )
  return UserBoardsOut(boardIds=list(res.scalars().all()), defaultBoardId=u.default_board_id)


@router.put("/{user_id}/boards", response_model=UserBoardsOut)
async def set_user_boards(
  user_id: str,
  payload: UserBoardsIn,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> UserBoardsOut:
  u = await _get_user_or_404(db, user_id)
  if u.role == ROLE_ADMIN:
    raise ValidationFailed("Admins have access to all boards")

  wanted = list(dict.fromkeys(payload.boardIds))
  res = await db.execute(select(Board.id).where(Board.id.in_(wanted)))
  found = set(res.scalars().all())
  missing = [b for b in wanted if b not in found]
  if missing:
    raise NotFound("Board not found", boardIds=missing)

  res = await db.execute(select(BoardMember).where(BoardMember.user_id == u.id))
  current = {m.board_id: m for m in res.scalars().all()}
  for board_id, m in current.items():
    if board_id not in found:
      await db.delete(m)
  for board_id in wanted:
    if board_id not in current:
      db.add(BoardMember(board_id=board_id, user_id=u.id))

  if payload.defaultBoardId is not None:
    u.default_board_id = payload.defaultBoardId
  elif u.default_board_id not in found:
    u.default_board_id = wanted[0]
  # Live sessions parked on a revoked board move to the new default.
  await db.execute(
    update(DbSession)
    .where(DbSession.user_id == u.id, DbSession.board_id.is_not(None), DbSession.board_id.notin_(wanted))
    .values(board_id=u.default_board_id)
  )
  await db.commit()
  return UserBoardsOut(boardIds=wanted, defaultBoardId=u.default_board_id)
