# ordering.py — Ticket numbering and column ordering
# - Numbers are project-scoped: max(number) + 1, arbitrated by the
#   (project_id, number) unique constraint
# - Orders are column-scoped: a move rewrites the target column to 0..k-1
# Nothing here commits except insert_with_sequence; callers own the transaction.

import logging
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from errors import BadRequestError, ConflictError, NotFoundError
from models import Board, Status, Ticket

logger = logging.getLogger("kanban-tracker.ordering")


# ============================================================
# COLUMN RESOLUTION
# ============================================================

async def get_project_board(db: AsyncSession, project_id: str) -> Board:
    result = await db.execute(select(Board).where(Board.project_id == project_id))
    board = result.scalar_one_or_none()
    if not board:
        raise NotFoundError("Board not found")
    return board


async def resolve_status(
    db: AsyncSession, project_id: str, status_id: str, lock: bool = False,
) -> Status:
    """Status row that must sit on the project's board; optionally row-locked"""
    board = await get_project_board(db, project_id)
    stmt = select(Status).where(Status.id == status_id)
    if lock:
        # Serialises concurrent moves into the same column (no-op on SQLite)
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    status = result.scalar_one_or_none()
    if not status or status.board_id != board.id:
        raise BadRequestError("Status does not belong to this project")
    return status


async def column_tickets(
    db: AsyncSession, status_id: str, exclude_id: Optional[str] = None,
) -> List[Ticket]:
    stmt = select(Ticket).where(Ticket.status_id == status_id)
    if exclude_id:
        stmt = stmt.where(Ticket.id != exclude_id)
    stmt = stmt.order_by(Ticket.order, Ticket.number)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ============================================================
# SEQUENCER
# ============================================================

async def next_ticket_number(db: AsyncSession, project_id: str) -> int:
    result = await db.execute(
        select(func.max(Ticket.number)).where(Ticket.project_id == project_id)
    )
    return (result.scalar() or 0) + 1


def next_ticket_order(status_id: str):
    """Bottom-of-column position, evaluated inside the INSERT that uses it"""
    peer = aliased(Ticket)
    return (
        select(func.coalesce(func.max(peer.order) + 1, 0))
        .where(peer.status_id == status_id)
        .scalar_subquery()
    )


async def insert_with_sequence(db: AsyncSession, ticket: Ticket) -> Ticket:
    """Number the ticket, append it to its column and commit.

    Callers lock the target column first (resolve_status with lock=True) so
    the append cannot interleave with a move into the same column.

    A concurrent insert that took the same number makes the commit fail on
    the unique constraint; the transaction is rolled back and the caller
    gets a ConflictError. No retry is attempted.
    """
    project_id = ticket.project_id
    ticket.number = await next_ticket_number(db, project_id)
    ticket.order = next_ticket_order(ticket.status_id)
    db.add(ticket)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning(f"Ticket number collision in project {project_id}")
        raise ConflictError("Ticket number already taken, please retry")
    await db.refresh(ticket)
    return ticket


# ============================================================
# REORDER ENGINE
# ============================================================

def place_at(tickets: List[Ticket], ticket: Ticket, index: int) -> List[Ticket]:
    """Insert ticket at index (clamped to [0, len]) and renumber orders densely"""
    index = max(0, min(index, len(tickets)))
    column = list(tickets)
    column.insert(index, ticket)
    for position, item in enumerate(column):
        item.order = position
    return column


async def compact_column(db: AsyncSession, status_id: str) -> List[Ticket]:
    """Close gaps in a column's orders; pending moves must be flushed first"""
    tickets = await column_tickets(db, status_id)
    for position, item in enumerate(tickets):
        item.order = position
    return tickets


async def move_ticket(
    db: AsyncSession,
    ticket: Ticket,
    status_id: str,
    index: int,
    compact_source: bool = False,
) -> List[Ticket]:
    """Move ticket into status_id at index; returns the target column in order.

    Same-column reorders take the same path. The source column keeps its gap
    unless compact_source is set.
    """
    source_status_id = ticket.status_id
    target = await resolve_status(db, ticket.project_id, status_id, lock=True)
    others = await column_tickets(db, target.id, exclude_id=ticket.id)

    ticket.status_id = target.id
    column = place_at(others, ticket, index)

    if compact_source and source_status_id != target.id:
        await db.flush()
        await compact_column(db, source_status_id)

    logger.info(
        f"Ticket {ticket.id} moved to status {target.id} at position {ticket.order}"
    )
    return column
