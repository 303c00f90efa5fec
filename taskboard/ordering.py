"""
Positional ordering of cards inside a (board, column) partition.

Positions are dense and 0-based after every create, move and delete. Every
write to positions runs under `ordering_lock(db, board_id)`, held until the
caller commits: an in-process lock per board plus a `FOR UPDATE` on the board
row, so appends to an empty column serialize too. Moves also lock the rows
of every partition they touch (in column-name order), recompute the order in
memory and rewrite the positions inside the caller's transaction.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.models import Board, Card

T = TypeVar("T")

# Entries disappear once no request holds or waits on the lock.
_board_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


@asynccontextmanager
async def ordering_lock(db: AsyncSession, board_id: str) -> AsyncIterator[None]:
  """Serialize position writes on one board. Commit before leaving the block."""
  lock = _board_locks.get(board_id)
  if lock is None:
    lock = asyncio.Lock()
    _board_locks[board_id] = lock
  async with lock:
    await db.execute(select(Board.id).where(Board.id == board_id).with_for_update())
    yield


@dataclass(frozen=True)
class MoveResult:
  changed: bool
  from_column: str
  to_column: str
  to_index: int


def clamp_index(index: int, length: int) -> int:
  return max(0, min(int(index), length))


def reorder(items: Sequence[T], item: T, to_index: int) -> list[T]:
  """Return items with `item` removed and reinserted at the clamped index."""
  rest = [x for x in items if x != item]
  idx = clamp_index(to_index, len(rest))
  rest.insert(idx, item)
  return rest


def _ordered(q):
  return q.order_by(Card.position.asc(), Card.created_at.asc(), Card.id.asc())


async def next_position(db: AsyncSession, *, board_id: str, column: str) -> int:
  res = await db.execute(select(func.max(Card.position)).where(Card.board_id == board_id, Card.column == column))
  current = res.scalar_one_or_none()
  return 0 if current is None else int(current) + 1


async def _lock_partitions(db: AsyncSession, *, board_id: str, columns: Sequence[str]) -> dict[str, list[Card]]:
  cols = sorted(set(columns))
  q = (
    select(Card)
    .where(Card.board_id == board_id, Card.column.in_(cols))
    .order_by(Card.column.asc(), Card.position.asc(), Card.created_at.asc(), Card.id.asc())
    .with_for_update()
  )
  res = await db.execute(q)
  out: dict[str, list[Card]] = {c: [] for c in cols}
  for card in res.scalars().all():
    out[card.column].append(card)
  return out


def _rewrite(cards: Sequence[Card]) -> None:
  for idx, c in enumerate(cards):
    if c.position != idx:
      c.position = idx


async def move_card(db: AsyncSession, card: Card, *, to_column: str, to_index: int) -> MoveResult:
  from_column = card.column
  partitions = await _lock_partitions(db, board_id=card.board_id, columns=[from_column, to_column])
  source = partitions[from_column]

  if from_column == to_column:
    target = reorder(source, card, to_index)
    idx = target.index(card)
    already_dense = all(c.position == i for i, c in enumerate(source))
    if target == source and already_dense:
      return MoveResult(changed=False, from_column=from_column, to_column=to_column, to_index=idx)
    _rewrite(target)
    await db.flush()
    return MoveResult(changed=True, from_column=from_column, to_column=to_column, to_index=idx)

  remaining = [c for c in source if c is not card]
  destination = list(partitions[to_column])
  idx = clamp_index(to_index, len(destination))
  destination.insert(idx, card)
  card.column = to_column
  _rewrite(remaining)
  _rewrite(destination)
  # Force the column write even when the position happens to be unchanged.
  card.position = idx
  await db.flush()
  return MoveResult(changed=True, from_column=from_column, to_column=to_column, to_index=idx)


async def compact_column(db: AsyncSession, *, board_id: str, column: str) -> None:
  """Renumber a partition densely, e.g. after a card left it by deletion."""
  res = await db.execute(_ordered(select(Card).where(Card.board_id == board_id, Card.column == column)).with_for_update())
  _rewrite(res.scalars().all())
  await db.flush()
