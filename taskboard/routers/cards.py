from __future__ import annotations

import os

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.config import settings
from taskboard.deps import BoardContext, get_db, get_notifier, require_board
from taskboard.errors import Forbidden, NotFound, ValidationFailed
from taskboard.models import ROLE_ADMIN, Attachment, Card, CardParticipant, Comment, User
from taskboard.notifications.events import Notifier
from taskboard.ordering import compact_column, move_card, next_position, ordering_lock
from taskboard.schemas import (
  AttachmentOut,
  CardCreateIn,
  CardMoveIn,
  CardOut,
  CardUpdateIn,
  CommentIn,
  CommentOut,
  ParticipantAddIn,
  ParticipantOut,
)
from taskboard import uploads

router = APIRouter(tags=["cards"])


def _can_manage(user: User, author_id: str | None) -> bool:
  return user.role == ROLE_ADMIN or (author_id is not None and author_id == user.id)


async def _card_in_board(db: AsyncSession, card_id: str, board_id: str) -> Card:
  # Cards on other boards are reported as missing, never as forbidden.
  res = await db.execute(select(Card).where(Card.id == card_id, Card.board_id == board_id))
  card = res.scalar_one_or_none()
  if not card:
    raise NotFound("Card not found")
  return card


async def _comment_in_board(db: AsyncSession, comment_id: str, board_id: str) -> tuple[Comment, Card]:
  res = await db.execute(
    select(Comment, Card).join(Card, Card.id == Comment.card_id).where(Comment.id == comment_id, Card.board_id == board_id)
  )
  row = res.first()
  if not row:
    raise NotFound("Comment not found")
  return row[0], row[1]


async def _attachment_in_board(db: AsyncSession, attachment_id: str, board_id: str) -> tuple[Attachment, Card]:
  res = await db.execute(
    select(Attachment, Card).join(Card, Card.id == Attachment.card_id).where(Attachment.id == attachment_id, Card.board_id == board_id)
  )
  row = res.first()
  if not row:
    raise NotFound("Attachment not found")
  return row[0], row[1]


def _comment_out(c: Comment, author_name: str | None) -> CommentOut:
  return CommentOut(
    id=c.id,
    cardId=c.card_id,
    authorId=c.author_id,
    authorName=author_name,
    body=c.body,
    createdAt=c.created_at,
    updatedAt=c.updated_at,
  )


def _attachment_out(a: Attachment) -> AttachmentOut:
  return AttachmentOut(
    id=a.id,
    cardId=a.card_id,
    uploaderId=a.uploader_id,
    filename=a.filename,
    mime=a.mime,
    sizeBytes=a.size_bytes,
    createdAt=a.created_at,
    downloadUrl=f"/attachments/{a.id}/download",
  )


async def _card_out(db: AsyncSession, card: Card) -> CardOut:
  pres = await db.execute(
    select(User)
    .join(CardParticipant, CardParticipant.user_id == User.id)
    .where(CardParticipant.card_id == card.id)
    .order_by(CardParticipant.created_at.asc())
  )
  cres = await db.execute(
    select(Comment, User.name)
    .outerjoin(User, User.id == Comment.author_id)
    .where(Comment.card_id == card.id)
    .order_by(Comment.created_at.asc(), Comment.id.asc())
  )
  ares = await db.execute(select(Attachment).where(Attachment.card_id == card.id).order_by(Attachment.created_at.asc()))
  return CardOut(
    id=card.id,
    boardId=card.board_id,
    description=card.description,
    details=card.details,
    assignee=card.assignee,
    dueDate=card.due_date,
    column=card.column,
    position=card.position,
    importance=card.importance,
    paused=bool(card.paused),
    authorId=card.author_id,
    createdAt=card.created_at,
    updatedAt=card.updated_at,
    participants=[ParticipantOut(id=u.id, name=u.name, email=u.email) for u in pres.scalars().all()],
    comments=[_comment_out(c, name) for c, name in cres.all()],
    attachments=[_attachment_out(a) for a in ares.scalars().all()],
  )


async def purge_cards(db: AsyncSession, card_ids: list[str]) -> list[str]:
  """Delete cards and their children; returns attachment paths to remove after commit."""
  if not card_ids:
    return []
  res = await db.execute(select(Attachment.path).where(Attachment.card_id.in_(card_ids)))
  paths = list(res.scalars().all())
  await db.execute(delete(Attachment).where(Attachment.card_id.in_(card_ids)))
  await db.execute(delete(Comment).where(Comment.card_id.in_(card_ids)))
  await db.execute(delete(CardParticipant).where(CardParticipant.card_id.in_(card_ids)))
  await db.execute(delete(Card).where(Card.id.in_(card_ids)))
  return paths


@router.get("/cards/{card_id}", response_model=CardOut)
async def get_card(card_id: str, ctx: BoardContext = Depends(require_board), db: AsyncSession = Depends(get_db)) -> CardOut:
  card = await _card_in_board(db, card_id, ctx.board_id)
  return await _card_out(db, card)


@router.post("/cards", response_model=CardOut, status_code=status.HTTP_201_CREATED)
async def create_card(payload: CardCreateIn, ctx: BoardContext = Depends(require_board), db: AsyncSession = Depends(get_db)) -> CardOut:
  async with ordering_lock(db, ctx.board_id):
    card = Card(
      board_id=ctx.board_id,
      description=payload.description.strip(),
      details=payload.details,
      assignee=payload.assignee,
      due_date=payload.dueDate,
      column=payload.column,
      importance=payload.importance,
      paused=payload.paused,
      author_id=ctx.user.id,
      position=await next_position(db, board_id=ctx.board_id, column=payload.column),
    )
    db.add(card)
    await db.commit()
  return await _card_out(db, card)


@router.patch("/cards/{card_id}", response_model=CardOut)
async def update_card(
  card_id: str,
  payload: CardUpdateIn,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
  notifier: Notifier = Depends(get_notifier),
) -> CardOut:
  card = await _card_in_board(db, card_id, ctx.board_id)
  fields_set = getattr(payload, "model_fields_set", set())

  if "assignee" in fields_set and payload.assignee != card.assignee and not _can_manage(ctx.user, card.author_id):
    raise Forbidden("Only the author or an admin can change the assignee")
  if "description" in fields_set:
    if payload.description is None:
      raise ValidationFailed("description cannot be empty")
    card.description = payload.description.strip()
  if "details" in fields_set:
    card.details = payload.details
  if "assignee" in fields_set:
    card.assignee = payload.assignee
  if "dueDate" in fields_set:
    card.due_date = payload.dueDate
  if "importance" in fields_set and payload.importance is not None:
    card.importance = payload.importance
  if "paused" in fields_set and payload.paused is not None:
    card.paused = payload.paused

  await db.commit()
  await notifier.card_changed(db, card=card, actor=ctx.user, event="updated")
  return await _card_out(db, card)


@router.post("/cards/{card_id}/move", response_model=CardOut)
async def move(
  card_id: str,
  payload: CardMoveIn,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
  notifier: Notifier = Depends(get_notifier),
) -> CardOut:
  async with ordering_lock(db, ctx.board_id):
    card = await _card_in_board(db, card_id, ctx.board_id)
    result = await move_card(db, card, to_column=payload.toColumn, to_index=payload.toIndex)
    await db.commit()
  if not result.changed:
    return await _card_out(db, card)

  if result.from_column != result.to_column:
    await notifier.card_changed(
      db,
      card=card,
      actor=ctx.user,
      event="moved",
      from_column=result.from_column,
      to_column=result.to_column,
    )
  return await _card_out(db, card)


@router.delete("/cards/{card_id}")
async def delete_card(card_id: str, ctx: BoardContext = Depends(require_board), db: AsyncSession = Depends(get_db)) -> dict:
  async with ordering_lock(db, ctx.board_id):
    card = await _card_in_board(db, card_id, ctx.board_id)
    column = card.column
    paths = await purge_cards(db, [card.id])
    # Close the gap in the same transaction.
    await compact_column(db, board_id=ctx.board_id, column=column)
    await db.commit()
  for p in paths:
    uploads.remove(p)
  return {"ok": True}


@router.post("/cards/{card_id}/participants", response_model=ParticipantOut, status_code=status.HTTP_201_CREATED)
async def add_participant(
  card_id: str,
  payload: ParticipantAddIn,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
) -> ParticipantOut:
  card = await _card_in_board(db, card_id, ctx.board_id)
  if not _can_manage(ctx.user, card.author_id):
    raise Forbidden()

  if payload.userId:
    res = await db.execute(select(User).where(User.id == payload.userId))
  else:
    res = await db.execute(select(User).where(func.lower(User.email) == (payload.email or "").strip().lower()))
  u = res.scalar_one_or_none()
  if not u:
    raise NotFound("User not found")

  existing = await db.execute(select(CardParticipant.id).where(CardParticipant.card_id == card.id, CardParticipant.user_id == u.id))
  if existing.scalar_one_or_none() is None:
    db.add(CardParticipant(card_id=card.id, user_id=u.id))
    await db.commit()
  return ParticipantOut(id=u.id, name=u.name, email=u.email)


@router.delete("/cards/{card_id}/participants/{user_id}")
async def remove_participant(
  card_id: str,
  user_id: str,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
) -> dict:
  card = await _card_in_board(db, card_id, ctx.board_id)
  if not _can_manage(ctx.user, card.author_id):
    raise Forbidden()
  await db.execute(delete(CardParticipant).where(CardParticipant.card_id == card.id, CardParticipant.user_id == user_id))
  await db.commit()
  return {"ok": True}


@router.post("/cards/{card_id}/comments", response_model=CommentOut, status_code=status.HTTP_201_CREATED)
async def create_comment(
  card_id: str,
  payload: CommentIn,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
  notifier: Notifier = Depends(get_notifier),
) -> CommentOut:
  card = await _card_in_board(db, card_id, ctx.board_id)
  c = Comment(card_id=card.id, author_id=ctx.user.id, body=payload.body.strip())
  db.add(c)
  await db.commit()
  await notifier.card_changed(db, card=card, actor=ctx.user)
  return _comment_out(c, ctx.user.name)


@router.patch("/comments/{comment_id}", response_model=CommentOut)
async def update_comment(
  comment_id: str,
  payload: CommentIn,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
  notifier: Notifier = Depends(get_notifier),
) -> CommentOut:
  c, card = await _comment_in_board(db, comment_id, ctx.board_id)
  if not _can_manage(ctx.user, c.author_id):
    raise Forbidden()
  c.body = payload.body.strip()
  await db.commit()
  await notifier.card_changed(db, card=card, actor=ctx.user)
  res = await db.execute(select(User.name).where(User.id == c.author_id))
  return _comment_out(c, res.scalar_one_or_none())


@router.delete("/comments/{comment_id}")
async def delete_comment(
  comment_id: str,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
  notifier: Notifier = Depends(get_notifier),
) -> dict:
  c, card = await _comment_in_board(db, comment_id, ctx.board_id)
  if not _can_manage(ctx.user, c.author_id):
    raise Forbidden()
  await db.delete(c)
  await db.commit()
  await notifier.card_changed(db, card=card, actor=ctx.user)
  return {"ok": True}


@router.post("/cards/{card_id}/attachments", response_model=AttachmentOut, status_code=status.HTTP_201_CREATED)
async def upload_attachment(
  card_id: str,
  file: UploadFile = File(...),
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
  notifier: Notifier = Depends(get_notifier),
) -> AttachmentOut:
  card = await _card_in_board(db, card_id, ctx.board_id)
  data = await uploads.read_limited(file, limit=int(settings.max_attachment_bytes), what="Attachment")
  filename = os.path.basename(file.filename or "") or "attachment"
  path = uploads.store(os.path.join("attachments", card.id), data, ext=os.path.splitext(filename)[1])
  a = Attachment(
    card_id=card.id,
    uploader_id=ctx.user.id,
    filename=filename,
    mime=file.content_type or "application/octet-stream",
    size_bytes=len(data),
    path=path,
  )
  db.add(a)
  try:
    await db.commit()
  except Exception:
    # No row, no file.
    uploads.remove(path)
    raise
  await notifier.card_changed(db, card=card, actor=ctx.user)
  return _attachment_out(a)


@router.get("/attachments/{attachment_id}/download")
async def download_attachment(
  attachment_id: str,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
) -> FileResponse:
  a, _ = await _attachment_in_board(db, attachment_id, ctx.board_id)
  if not os.path.isfile(a.path):
    raise NotFound("Attachment file missing")
  return FileResponse(a.path, media_type=a.mime, filename=a.filename)


@router.delete("/attachments/{attachment_id}")
async def delete_attachment(
  attachment_id: str,
  ctx: BoardContext = Depends(require_board),
  db: AsyncSession = Depends(get_db),
  notifier: Notifier = Depends(get_notifier),
) -> dict:
  a, card = await _attachment_in_board(db, attachment_id, ctx.board_id)
  if not _can_manage(ctx.user, a.uploader_id):
    raise Forbidden()
  path = a.path
  await db.delete(a)
  await db.commit()
  uploads.remove(path)
  await notifier.card_changed(db, card=card, actor=ctx.user)
  return {"ok": True}
