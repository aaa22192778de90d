# tests/test_ordering.py — Ticket sequencer and reorder engine
import random
from types import SimpleNamespace

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

import ordering
from errors import BadRequestError, ConflictError
from models import Ticket
from tests.conftest import create_project, create_ticket, get_auth_headers, status_id


async def _column(db_session, column_id: str) -> list:
    """(title, order) pairs of a column, read straight from the database"""
    result = await db_session.execute(
        select(Ticket.title, Ticket.order)
        .where(Ticket.status_id == column_id)
        .order_by(Ticket.order, Ticket.number)
    )
    return [tuple(row) for row in result.all()]


async def _ticket(db_session, ticket_id: str) -> Ticket:
    result = await db_session.execute(select(Ticket).where(Ticket.id == ticket_id))
    return result.scalar_one()


async def _seed(client, owner, project, titles, column="To Do") -> dict:
    created = {}
    for title in titles:
        created[title] = await create_ticket(client, owner, project, title, column)
    return created


class TestPlaceAt:
    def _items(self, n):
        return [SimpleNamespace(name=str(i), order=i * 10) for i in range(n)]

    def test_insert_renumbers_densely(self):
        moved = SimpleNamespace(name="x", order=99)
        column = ordering.place_at(self._items(3), moved, 1)
        assert [t.name for t in column] == ["0", "x", "1", "2"]
        assert [t.order for t in column] == [0, 1, 2, 3]

    def test_index_clamped_to_end(self):
        moved = SimpleNamespace(name="x", order=0)
        column = ordering.place_at(self._items(2), moved, 50)
        assert column[-1] is moved
        assert moved.order == 2

    def test_negative_index_clamped_to_start(self):
        moved = SimpleNamespace(name="x", order=0)
        column = ordering.place_at(self._items(2), moved, -3)
        assert column[0] is moved

    def test_empty_column(self):
        moved = SimpleNamespace(name="x", order=7)
        assert ordering.place_at([], moved, 4) == [moved]
        assert moved.order == 0


@pytest.mark.asyncio
class TestSequencer:
    async def test_numbers_are_sequential_across_columns(self, client: AsyncClient, project, owner):
        first = await create_ticket(client, owner, project, "First")
        second = await create_ticket(client, owner, project, "Second", "Done")
        third = await create_ticket(client, owner, project, "Third")
        assert [first["number"], second["number"], third["number"]] == [1, 2, 3]
        assert first["key"] == "KAN-1"
        assert third["key"] == "KAN-3"

    async def test_new_tickets_append_to_column(self, client: AsyncClient, project, owner, db_session):
        await _seed(client, owner, project, ["A", "B", "C"])
        await create_ticket(client, owner, project, "Solo", "Done")
        assert await _column(db_session, status_id(project, "To Do")) == [("A", 0), ("B", 1), ("C", 2)]
        assert await _column(db_session, status_id(project, "Done")) == [("Solo", 0)]

    async def test_numbering_is_per_project(self, client: AsyncClient, project, owner):
        other = await create_project(client, owner, name="Side Quest", key="SQ")
        await create_ticket(client, owner, project, "Main")
        side = await create_ticket(client, owner, other, "Side")
        assert side["number"] == 1
        assert side["key"] == "SQ-1"

    async def test_racing_inserts_hit_the_unique_constraint(self, session_factory, project, owner):
        column = status_id(project, "To Do")
        async with session_factory() as first, session_factory() as second:
            n1 = await ordering.next_ticket_number(first, project["id"])
            n2 = await ordering.next_ticket_number(second, project["id"])
            assert n1 == n2 == 1

            first.add(Ticket(project_id=project["id"], status_id=column, reporter_id=owner.id,
                             title="Winner", number=n1, order=0))
            await first.commit()

            second.add(Ticket(project_id=project["id"], status_id=column, reporter_id=owner.id,
                              title="Loser", number=n2, order=1))
            with pytest.raises(IntegrityError):
                await second.commit()
            await second.rollback()

    async def test_create_interleaved_with_a_move_appends_after_it(self, client: AsyncClient, session_factory, project, owner):
        todo = status_id(project, "To Do")
        await create_ticket(client, owner, project, "A")
        moving = await create_ticket(client, owner, project, "B", "Done")

        async with session_factory() as creator, session_factory() as mover:
            await ordering.resolve_status(creator, project["id"], todo, lock=True)
            fresh = Ticket(project_id=project["id"], status_id=todo, reporter_id=owner.id, title="New")

            ticket = await _ticket(mover, moving["id"])
            await ordering.move_ticket(mover, ticket, todo, 5)
            await mover.commit()

            await ordering.insert_with_sequence(creator, fresh)
            assert fresh.order == 2
            assert fresh.number == 3

        async with session_factory() as check:
            assert await _column(check, todo) == [("A", 0), ("B", 1), ("New", 2)]

    async def test_stale_number_surfaces_conflict(self, db_session, project, owner, client, monkeypatch):
        await create_ticket(client, owner, project, "Existing")

        async def stale_number(db, project_id):
            return 1

        monkeypatch.setattr(ordering, "next_ticket_number", stale_number)
        ticket = Ticket(project_id=project["id"], status_id=status_id(project, "To Do"),
                        reporter_id=owner.id, title="Late")
        with pytest.raises(ConflictError) as exc:
            await ordering.insert_with_sequence(db_session, ticket)
        assert exc.value.message == "Ticket number already taken, please retry"

        result = await db_session.execute(select(Ticket.title).where(Ticket.project_id == project["id"]))
        assert result.scalars().all() == ["Existing"]

    async def test_stale_number_over_http_is_409(self, client: AsyncClient, project, owner, monkeypatch):
        await create_ticket(client, owner, project, "Existing")

        async def stale_number(db, project_id):
            return 1

        monkeypatch.setattr(ordering, "next_ticket_number", stale_number)
        res = await client.post(
            f"/api/v1/projects/{project['id']}/tickets",
            json={"title": "Late", "status_id": status_id(project, "To Do")},
            headers=get_auth_headers(owner),
        )
        assert res.status_code == 409
        assert res.json()["message"] == "Ticket number already taken, please retry"


@pytest.mark.asyncio
class TestReorderEngine:
    async def _move(self, client, user, project, ticket_id, column, order):
        return await client.patch(
            f"/api/v1/projects/{project['id']}/tickets/{ticket_id}/move",
            json={"status_id": status_id(project, column), "order": order},
            headers=get_auth_headers(user),
        )

    async def test_same_column_reorder(self, client: AsyncClient, project, member, db_session):
        t = await _seed(client, member, project, ["A", "B", "C", "D"])
        res = await self._move(client, member, project, t["D"]["id"], "To Do", 1)
        assert res.status_code == 200
        assert res.json()["order"] == 1
        assert await _column(db_session, status_id(project, "To Do")) == [("A", 0), ("D", 1), ("B", 2), ("C", 3)]

    async def test_move_down_within_column(self, client: AsyncClient, project, member, db_session):
        t = await _seed(client, member, project, ["A", "B", "C"])
        await self._move(client, member, project, t["A"]["id"], "To Do", 2)
        assert await _column(db_session, status_id(project, "To Do")) == [("B", 0), ("C", 1), ("A", 2)]

    async def test_cross_column_move_leaves_source_gap(self, client: AsyncClient, project, member, db_session):
        t = await _seed(client, member, project, ["A", "B", "C", "D"])

        res = await self._move(client, member, project, t["B"]["id"], "In Progress", 5)
        assert res.status_code == 200
        assert res.json()["status_id"] == status_id(project, "In Progress")
        assert await _column(db_session, status_id(project, "In Progress")) == [("B", 0)]
        assert await _column(db_session, status_id(project, "To Do")) == [("A", 0), ("C", 2), ("D", 3)]

        await self._move(client, member, project, t["D"]["id"], "In Progress", 0)
        assert await _column(db_session, status_id(project, "In Progress")) == [("D", 0), ("B", 1)]

    async def test_move_into_gappy_column_rewrites_it(self, client: AsyncClient, project, member, db_session):
        t = await _seed(client, member, project, ["A", "B", "C"])
        await self._move(client, member, project, t["B"]["id"], "Done", 0)
        await self._move(client, member, project, t["C"]["id"], "To Do", 1)
        assert await _column(db_session, status_id(project, "To Do")) == [("A", 0), ("C", 1)]

    async def test_status_from_another_project_rejected(self, client: AsyncClient, project, owner):
        other = await create_project(client, owner, name="Elsewhere", key="ELS")
        ticket = await create_ticket(client, owner, project, "Stay")
        res = await client.patch(
            f"/api/v1/projects/{project['id']}/tickets/{ticket['id']}/move",
            json={"status_id": status_id(other, "Done"), "order": 0},
            headers=get_auth_headers(owner),
        )
        assert res.status_code == 400
        assert res.json()["message"] == "Status does not belong to this project"

    async def test_negative_order_rejected(self, client: AsyncClient, project, owner):
        ticket = await create_ticket(client, owner, project, "Stay")
        res = await self._move(client, owner, project, ticket["id"], "Done", -1)
        assert res.status_code == 400

    async def test_compact_source_closes_gap(self, client: AsyncClient, project, owner, db_session):
        t = await _seed(client, owner, project, ["A", "B", "C"])
        ticket = await _ticket(db_session, t["A"]["id"])
        await ordering.move_ticket(db_session, ticket, status_id(project, "Done"), 0, compact_source=True)
        await db_session.commit()
        assert await _column(db_session, status_id(project, "To Do")) == [("B", 0), ("C", 1)]
        assert await _column(db_session, status_id(project, "Done")) == [("A", 0)]

    async def test_resolve_status_rejects_foreign_column(self, client: AsyncClient, project, owner, db_session):
        other = await create_project(client, owner, name="Elsewhere", key="ELS")
        with pytest.raises(BadRequestError):
            await ordering.resolve_status(db_session, project["id"], status_id(other, "To Do"))

    async def test_target_column_always_dense(self, client: AsyncClient, project, owner, db_session):
        """Random moves: every target column ends up exactly 0..k-1"""
        columns = ["To Do", "In Progress", "In Review", "Done"]
        seeded = await _seed(client, owner, project, [f"T{i}" for i in range(8)])
        ticket_ids = [t["id"] for t in seeded.values()]
        rng = random.Random(2024)

        for _ in range(25):
            ticket = await _ticket(db_session, rng.choice(ticket_ids))
            target = status_id(project, rng.choice(columns))
            await ordering.move_ticket(db_session, ticket, target, rng.randint(0, 10))
            await db_session.commit()

            orders = [order for _, order in await _column(db_session, target)]
            assert orders == list(range(len(orders)))
