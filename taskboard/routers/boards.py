from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.deps import AuthContext, BoardContext, get_db, require_admin, require_authorized, require_board
from taskboard.errors import Conflict, Forbidden, NotFound
from taskboard.memberships import (
  board_exists,
  board_member_ids,
  clear_sessions_on_board,
  has_membership,
  reassign_lost_default_boards,
)
from taskboard.models import (
  COLUMNS_IN_ORDER,
  DEFAULT_BOARD_ID,
  ROLE_ADMIN,
  Attachment,
  Board,
  BoardMember,
  Card,
  Comment,
  User,
)
from taskboard.ordering import ordering_lock
from taskboard.routers.cards import purge_cards
from taskboard.schemas import (
  BoardCreateIn,
  BoardListOut,
  BoardOut,
  BoardSelectIn,
  BoardSelectOut,
  BoardUpdateIn,
  BoardViewOut,
  CardSummaryOut,
  ColumnOut,
  MemberOut,
)
from taskboard import uploads

router = APIRouter(tags=["boards"])


def _board_out(b: Board, member_ids: list[str] | None = None) -> BoardOut:
  return BoardOut(id=b.id, name=b.name, description=b.description, memberIds=member_ids, createdAt=b.created_at)


async def _get_board_or_404(db: AsyncSession, board_id: str) -> Board:
  res = await db.execute(select(Board).where(Board.id == board_id))
  b = res.scalar_one_or_none()
  if not b:
    raise NotFound("Board not found")
  return b


async def _validate_user_ids(db: AsyncSession, user_ids: list[str]) -> list[str]:
  ids = list(dict.fromkeys(user_ids))
  if not ids:
    return []
  res = await db.execute(select(User.id).where(User.id.in_(ids)))
  found = set(res.scalars().all())
  missing = [i for i in ids if i not in found]
  if missing:
    raise NotFound("User not found", userIds=missing)
  return ids


@router.get("/boards", response_model=BoardListOut)
async def list_boards(ctx: AuthContext = Depends(require_authorized), db: AsyncSession = Depends(get_db)) -> BoardListOut:
  if ctx.user.role == ROLE_ADMIN:
    res = await db.execute(select(Board).order_by(Board.name.asc(), Board.created_at.asc()))
    boards = [_board_out(b, await board_member_ids(db, b.id)) for b in res.scalars().all()]
  else:
    # Member lists are admin-only data.
    res = await db.execute(
      select(Board)
      .join(BoardMember, BoardMember.board_id == Board.id)
      .where(BoardMember.user_id == ctx.user.id)
      .order_by(BoardMember.created_at.asc(), BoardMember.id.asc())
    )
    boards = [_board_out(b) for b in res.scalars().all()]
  return BoardListOut(boards=boards, currentBoardId=ctx.session.board_id)


@router.post("/boards/select", response_model=BoardSelectOut)
async def select_board(
  payload: BoardSelectIn,
  ctx: AuthContext = Depends(require_authorized),
  db: AsyncSession = Depends(get_db),
) -> BoardSelectOut:
  if ctx.user.role != ROLE_ADMIN and not await has_membership(db, board_id=payload.boardId, user_id=ctx.user.id):
    raise Forbidden("No board access")
  if not await board_exists(db, payload.boardId):
    raise NotFound("Board not found")
  ctx.session.board_id = payload.boardId
  await db.commit()
  return BoardSelectOut(currentBoardId=payload.boardId)


@router.post("/boards", response_model=BoardOut, status_code=status.HTTP_201_CREATED)
async def create_board(
  payload: BoardCreateIn,
  ctx: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> BoardOut:
  member_ids = await _validate_user_ids(db, payload.memberIds)
  if ctx.user.id not in member_ids:
    member_ids.insert(0, ctx.user.id)

  b = Board(name=payload.name.strip(), description=payload.description)
  db.add(b)
  await db.flush()
  for uid in member_ids:
    db.add(BoardMember(board_id=b.id, user_id=uid))
  await db.commit()
  return _board_out(b, member_ids)


@router.patch("/boards/{board_id}", response_model=BoardOut)
async def update_board(
  board_id: str,
  payload: BoardUpdateIn,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> BoardOut:
  b = await _get_board_or_404(db, board_id)
  fields_set = getattr(payload, "model_fields_set", set())
  if "name" in fields_set and payload.name is not None:
    b.name = payload.name.strip()
  if "description" in fields_set:
    b.description = payload.description

  if "memberIds" in fields_set and payload.memberIds is not None:
    wanted = await _validate_user_ids(db, payload.memberIds)
    current = await board_member_ids(db, b.id)
    removed = [uid for uid in current if uid not in wanted]
    added = [uid for uid in wanted if uid not in current]
    if removed:
      await db.execute(delete(BoardMember).where(BoardMember.board_id == b.id, BoardMember.user_id.in_(removed)))
    for uid in added:
      db.add(BoardMember(board_id=b.id, user_id=uid))
    await db.flush()
    await reassign_lost_default_boards(db, board_id=b.id, user_ids=removed)

  await db.commit()
  return _board_out(b, await board_member_ids(db, b.id))


@router.delete("/boards/{board_id}")
async def delete_board(
  board_id: str,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> dict:
  if board_id == DEFAULT_BOARD_ID:
    raise Conflict("Cannot delete default board")
  b = await _get_board_or_404(db, board_id)

  async with ordering_lock(db, b.id):
    res = await db.execute(select(User.id).where(User.default_board_id == b.id))
    await reassign_lost_default_boards(db, board_id=b.id, user_ids=res.scalars().all())
    await clear_sessions_on_board(db, b.id)

    cres = await db.execute(select(Card.id).where(Card.board_id == b.id))
    paths = await purge_cards(db, list(cres.scalars().all()))
    await db.execute(delete(BoardMember).where(BoardMember.board_id == b.id))
    await db.delete(b)
    await db.commit()
  for p in paths:
    uploads.remove(p)
  return {"ok": True}


@router.get("/users", response_model=list[MemberOut])
async def list_board_members(ctx: BoardContext = Depends(require_board), db: AsyncSession = Depends(get_db)) -> list[MemberOut]:
  res = await db.execute(
    select(User)
    .join(BoardMember, BoardMember.user_id == User.id)
    .where(BoardMember.board_id == ctx.board_id)
    .order_by(BoardMember.created_at.asc(), BoardMember.id.asc())
  )
  return [MemberOut(id=u.id, name=u.name, email=u.email, role=u.role, hasAvatar=bool(u.avatar_path)) for u in res.scalars().all()]


@router.get("/board", response_model=BoardViewOut)
async def board_view(ctx: BoardContext = Depends(require_board), db: AsyncSession = Depends(get_db)) -> BoardViewOut:
  res = await db.execute(
    select(Card).where(Card.board_id == ctx.board_id).order_by(Card.position.asc(), Card.created_at.asc(), Card.id.asc())
  )
  cards = res.scalars().all()
  card_ids = [c.id for c in cards]

  comment_counts: dict[str, int] = {}
  attachment_counts: dict[str, int] = {}
  if card_ids:
    ccount = await db.execute(select(Comment.card_id, func.count()).where(Comment.card_id.in_(card_ids)).group_by(Comment.card_id))
    comment_counts = {cid: int(n) for cid, n in ccount.all()}
    acount = await db.execute(select(Attachment.card_id, func.count()).where(Attachment.card_id.in_(card_ids)).group_by(Attachment.card_id))
    attachment_counts = {cid: int(n) for cid, n in acount.all()}

  by_column: dict[str, list[CardSummaryOut]] = {col: [] for col, _ in COLUMNS_IN_ORDER}
  for c in cards:
    by_column.setdefault(c.column, []).append(
      CardSummaryOut(
        id=c.id,
        description=c.description,
        assignee=c.assignee,
        dueDate=c.due_date,
        column=c.column,
        position=c.position,
        importance=c.importance,
        paused=bool(c.paused),
        createdAt=c.created_at,
        updatedAt=c.updated_at,
        commentCount=comment_counts.get(c.id, 0),
        attachmentCount=attachment_counts.get(c.id, 0),
      )
    )
  return BoardViewOut(
    boardId=ctx.board_id,
    columns=[ColumnOut(id=col, title=title, cards=by_column[col]) for col, title in COLUMNS_IN_ORDER],
  )
