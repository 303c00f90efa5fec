from __future__ import annotations

import asyncio

import pytest
from httpx import AsyncClient

from taskboard.main import app
from taskboard.ordering import clamp_index, reorder
from conftest import MEMBER_EMAIL, FakeMailer, authorize


async def _create(client: AsyncClient, description: str, column: str = "TODO") -> dict:
  res = await client.post("/cards", json={"description": description, "column": column})
  assert res.status_code == 201, res.text
  return res.json()


async def _column(client: AsyncClient, column: str) -> list[tuple[str, int]]:
  res = await client.get("/board")
  assert res.status_code == 200, res.text
  col = next(c for c in res.json()["columns"] if c["id"] == column)
  return [(c["description"], c["position"]) for c in col["cards"]]


@pytest.mark.anyio
async def test_reorder_moves_item_and_clamps() -> None:
  assert reorder(["a", "b", "c", "d"], "b", 2) == ["a", "c", "b", "d"]
  assert reorder(["a", "b", "c"], "a", 99) == ["b", "c", "a"]
  assert reorder(["a", "b", "c"], "c", 0) == ["c", "a", "b"]
  assert clamp_index(-3, 4) == 0
  assert clamp_index(7, 4) == 4


@pytest.mark.anyio
async def test_create_appends_dense_positions(client: AsyncClient) -> None:
  await authorize(client)
  for name in ["a", "b", "c"]:
    await _create(client, name)
  assert await _column(client, "TODO") == [("a", 0), ("b", 1), ("c", 2)]
  assert await _column(client, "BACKLOG") == []


@pytest.mark.anyio
async def test_move_within_column(client: AsyncClient) -> None:
  await authorize(client)
  cards = {name: await _create(client, name) for name in ["a", "b", "c", "d"]}

  res = await client.post(f"/cards/{cards['b']['id']}/move", json={"toColumn": "TODO", "toIndex": 2})
  assert res.status_code == 200, res.text
  assert res.json()["position"] == 2
  assert await _column(client, "TODO") == [("a", 0), ("c", 1), ("b", 2), ("d", 3)]


@pytest.mark.anyio
async def test_move_across_columns_keeps_both_dense(client: AsyncClient) -> None:
  await authorize(client)
  cards = {name: await _create(client, name) for name in ["a", "b", "c"]}
  await _create(client, "x", "DONE")
  await _create(client, "y", "DONE")

  res = await client.post(f"/cards/{cards['b']['id']}/move", json={"toColumn": "DONE", "toIndex": 1})
  assert res.status_code == 200, res.text
  assert res.json()["column"] == "DONE"
  assert await _column(client, "TODO") == [("a", 0), ("c", 1)]
  assert await _column(client, "DONE") == [("x", 0), ("b", 1), ("y", 2)]


@pytest.mark.anyio
async def test_move_index_is_clamped(client: AsyncClient) -> None:
  await authorize(client)
  a = await _create(client, "a")
  await _create(client, "b")
  await _create(client, "x", "IN_PROGRESS")

  res = await client.post(f"/cards/{a['id']}/move", json={"toColumn": "TODO", "toIndex": 50})
  assert res.status_code == 200, res.text
  assert await _column(client, "TODO") == [("b", 0), ("a", 1)]

  res = await client.post(f"/cards/{a['id']}/move", json={"toColumn": "IN_PROGRESS", "toIndex": 50})
  assert res.status_code == 200, res.text
  assert await _column(client, "IN_PROGRESS") == [("x", 0), ("a", 1)]


@pytest.mark.anyio
async def test_move_to_empty_column(client: AsyncClient) -> None:
  await authorize(client)
  a = await _create(client, "a")
  res = await client.post(f"/cards/{a['id']}/move", json={"toColumn": "READY_FOR_ACCEPTANCE", "toIndex": 3})
  assert res.status_code == 200, res.text
  assert res.json()["position"] == 0
  assert await _column(client, "READY_FOR_ACCEPTANCE") == [("a", 0)]
  assert await _column(client, "TODO") == []


@pytest.mark.anyio
async def test_noop_move_does_not_touch_card(client: AsyncClient) -> None:
  await authorize(client)
  a = await _create(client, "a")
  await _create(client, "b")

  res = await client.post(f"/cards/{a['id']}/move", json={"toColumn": "TODO", "toIndex": 0})
  assert res.status_code == 200, res.text
  assert res.json()["updatedAt"] == a["updatedAt"]
  assert await _column(client, "TODO") == [("a", 0), ("b", 1)]


@pytest.mark.anyio
async def test_negative_index_is_rejected(client: AsyncClient) -> None:
  await authorize(client)
  a = await _create(client, "a")
  res = await client.post(f"/cards/{a['id']}/move", json={"toColumn": "TODO", "toIndex": -1})
  assert res.status_code == 400, res.text
  assert res.json()["detail"]["code"] == "ValidationError"


@pytest.mark.anyio
async def test_delete_renumbers_column(client: AsyncClient) -> None:
  await authorize(client)
  cards = {name: await _create(client, name) for name in ["a", "b", "c"]}

  res = await client.delete(f"/cards/{cards['a']['id']}")
  assert res.status_code == 200, res.text
  assert await _column(client, "TODO") == [("b", 0), ("c", 1)]

  # New cards land after the renumbered tail.
  await _create(client, "d")
  assert await _column(client, "TODO") == [("b", 0), ("c", 1), ("d", 2)]


@pytest.mark.anyio
async def test_only_cross_column_moves_notify(client: AsyncClient, mailer: FakeMailer) -> None:
  await authorize(client)
  a = await _create(client, "Ship it")
  await _create(client, "other")
  res = await client.post(f"/cards/{a['id']}/participants", json={"email": MEMBER_EMAIL})
  assert res.status_code == 201, res.text

  res = await client.post(f"/cards/{a['id']}/move", json={"toColumn": "TODO", "toIndex": 1})
  assert res.status_code == 200, res.text
  await app.state.notifier.drain()
  assert mailer.sent == []

  res = await client.post(f"/cards/{a['id']}/move", json={"toColumn": "DONE", "toIndex": 0})
  assert res.status_code == 200, res.text
  await app.state.notifier.drain()
  assert len(mailer.sent) == 1
  msg = mailer.sent[0]
  assert msg.to == [MEMBER_EMAIL]
  assert msg.subject == "Card moved: Ship it"
  assert "From: TODO" in msg.text and "To: DONE" in msg.text


async def _positions(client: AsyncClient) -> dict[str, list[int]]:
  res = await client.get("/board")
  assert res.status_code == 200, res.text
  return {col["id"]: [c["position"] for c in col["cards"]] for col in res.json()["columns"]}


@pytest.mark.anyio
async def test_concurrent_creates_keep_positions_dense(client: AsyncClient) -> None:
  await authorize(client)
  created = await asyncio.gather(*[_create(client, f"card {i}") for i in range(6)])

  assert sorted(c["position"] for c in created) == [0, 1, 2, 3, 4, 5]
  assert (await _positions(client))["TODO"] == [0, 1, 2, 3, 4, 5]


@pytest.mark.anyio
async def test_concurrent_moves_keep_columns_dense(client: AsyncClient) -> None:
  await authorize(client)
  cards = [await _create(client, f"card {i}") for i in range(6)]

  moves = [
    client.post(f"/cards/{c['id']}/move", json={"toColumn": "DONE" if i % 2 else "IN_PROGRESS", "toIndex": 0})
    for i, c in enumerate(cards)
  ]
  results = await asyncio.gather(*moves, _create(client, "late"))
  assert all(r.status_code == 200 for r in results[:-1])

  positions = await _positions(client)
  assert positions["TODO"] == [0]
  assert positions["DONE"] == [0, 1, 2]
  assert positions["IN_PROGRESS"] == [0, 1, 2]


@pytest.mark.anyio
async def test_every_column_stays_dense_through_mixed_edits(client: AsyncClient) -> None:
  await authorize(client)
  cards = {name: await _create(client, name) for name in ["a", "b", "c", "d", "e"]}
  x = await _create(client, "x", "DONE")
  ids = {name: card["id"] for name, card in {**cards, "x": x}.items()}

  steps = [
    ("move", "b", "DONE", 0),
    ("delete", "a", None, None),
    ("move", "d", "BACKLOG", 5),
    ("move", "c", "DONE", 1),
    ("delete", "x", None, None),
    ("move", "e", "TODO", 0),
  ]
  for op, name, column, index in steps:
    if op == "move":
      res = await client.post(f"/cards/{ids[name]}/move", json={"toColumn": column, "toIndex": index})
    else:
      res = await client.delete(f"/cards/{ids[name]}")
    assert res.status_code == 200, res.text
    for col, pos in (await _positions(client)).items():
      assert pos == list(range(len(pos))), (op, name, col, pos)

  await _create(client, "f", "DONE")
  assert await _column(client, "DONE") == [("b", 0), ("c", 1), ("f", 2)]
  assert await _column(client, "TODO") == [("e", 0)]
  assert await _column(client, "BACKLOG") == [("d", 0)]
