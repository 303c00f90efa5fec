from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.models import Card, CardParticipant, User
from taskboard.notifications.service import Mailer, MailMessage

logger = logging.getLogger(__name__)


async def participant_emails(db: AsyncSession, *, card_id: str, exclude_user_id: str | None) -> list[str]:
  q = select(User.email).join(CardParticipant, CardParticipant.user_id == User.id).where(CardParticipant.card_id == card_id)
  if exclude_user_id:
    q = q.where(User.id != exclude_user_id)
  res = await db.execute(q.order_by(CardParticipant.created_at.asc()))
  return [e for e in res.scalars().all() if e]


def card_message(
  *,
  card: Card,
  actor: User,
  recipients: list[str],
  event: str,
  from_column: str | None = None,
  to_column: str | None = None,
) -> MailMessage:
  moved = event == "moved"
  subject = f"Card moved: {card.description}" if moved else f"Card updated: {card.description}"
  lines = [
    f"Card: {card.description}",
    f"ID: {card.id}",
    f"Event: {'move' if moved else 'update'}",
    f"By: {actor.name} <{actor.email}>",
  ]
  if moved:
    if from_column:
      lines.append(f"From: {from_column}")
    lines.append(f"To: {to_column or card.column}")
  else:
    lines.append(f"Column: {card.column}")
  return MailMessage(to=recipients, subject=subject, text="\n".join(lines))


class Notifier:
  """Fire-and-forget fanout; the triggering request never waits on mail."""

  def __init__(self, mailer: Mailer) -> None:
    self.mailer = mailer
    self._tasks: set[asyncio.Task] = set()

  def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    task = asyncio.create_task(coro)
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    return task

  def send(self, msg: MailMessage) -> asyncio.Task:
    return self.spawn(self.mailer.send(msg))

  async def card_changed(
    self,
    db: AsyncSession,
    *,
    card: Card,
    actor: User,
    event: str = "updated",
    from_column: str | None = None,
    to_column: str | None = None,
  ) -> None:
    try:
      recipients = await participant_emails(db, card_id=card.id, exclude_user_id=actor.id)
    except Exception:
      logger.warning("could not resolve participants for card %s", card.id, exc_info=True)
      return
    if not recipients:
      return
    self.send(card_message(card=card, actor=actor, recipients=recipients, event=event, from_column=from_column, to_column=to_column))

  async def drain(self) -> None:
    while self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)
