# tickets.py — Tickets and comments within a project
# - Any member may create, update and move tickets or comment
# - Delete ticket: reporter or ADMIN+
# - Edit comment: author only; delete comment: author or ADMIN+

import logging
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import ordering
from errors import BadRequestError, ForbiddenError, NotFoundError
from models import (
    Comment, ProjectRole, Status, Ticket, TicketPriority, TicketType,
)
from rbac import ProjectAccess, find_membership

logger = logging.getLogger("kanban-tracker.tickets")


# ============================================================
# SCHEMAS
# ============================================================

class TicketCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: TicketType = TicketType.TASK
    priority: TicketPriority = TicketPriority.MEDIUM
    status_id: str
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


class TicketUpdate(BaseModel):
    """Column changes go through TicketMove"""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    type: Optional[TicketType] = None
    priority: Optional[TicketPriority] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


class TicketMove(BaseModel):
    status_id: str
    order: int = Field(..., ge=0)


class TicketFilters(BaseModel):
    status_id: Optional[str] = None
    assignee_id: Optional[str] = None
    priority: Optional[TicketPriority] = None
    type: Optional[TicketType] = None


class CommentCreate(BaseModel):
    body: str = Field(..., min_length=1, max_length=10000)


# ============================================================
# HELPERS
# ============================================================

async def _ensure_assignable(db: AsyncSession, project_id: str, assignee_id: Optional[str]) -> None:
    if assignee_id and not await find_membership(db, project_id, assignee_id):
        raise BadRequestError("Assignee must be a member of this project")


async def _load_ticket(db: AsyncSession, project_id: str, ticket_id: str) -> Ticket:
    result = await db.execute(
        select(Ticket).where(Ticket.id == ticket_id, Ticket.project_id == project_id)
    )
    ticket = result.scalar_one_or_none()
    if not ticket:
        raise NotFoundError("Ticket not found")
    return ticket


async def _load_comment(db: AsyncSession, project_id: str, ticket_id: str, comment_id: str) -> Comment:
    await _load_ticket(db, project_id, ticket_id)
    result = await db.execute(
        select(Comment)
        .where(Comment.id == comment_id, Comment.ticket_id == ticket_id)
        .options(selectinload(Comment.author))
    )
    comment = result.scalar_one_or_none()
    if not comment:
        raise NotFoundError("Comment not found")
    return comment


async def comment_counts(db: AsyncSession, ticket_ids: List[str]) -> Dict[str, int]:
    if not ticket_ids:
        return {}
    result = await db.execute(
        select(Comment.ticket_id, func.count(Comment.id))
        .where(Comment.ticket_id.in_(ticket_ids))
        .group_by(Comment.ticket_id)
    )
    return dict(result.all())


# ============================================================
# TICKETS
# ============================================================

async def create_ticket(db: AsyncSession, access: ProjectAccess, data: TicketCreate) -> Ticket:
    project_id = access.project.id
    await ordering.resolve_status(db, project_id, data.status_id, lock=True)
    await _ensure_assignable(db, project_id, data.assignee_id)

    ticket = Ticket(
        project_id=project_id,
        status_id=data.status_id,
        title=data.title,
        description=data.description,
        type=data.type,
        priority=data.priority,
        assignee_id=data.assignee_id,
        due_date=data.due_date,
        reporter_id=access.account.id,
    )
    await ordering.insert_with_sequence(db, ticket)
    logger.info(f"Ticket {access.project.key}-{ticket.number} created by {access.account.id}")
    return await get_ticket(db, access, ticket.id)


async def list_tickets(db: AsyncSession, access: ProjectAccess, filters: TicketFilters) -> List[Ticket]:
    stmt = (
        select(Ticket)
        .join(Status, Status.id == Ticket.status_id)
        .where(Ticket.project_id == access.project.id)
        .options(
            selectinload(Ticket.assignee),
            selectinload(Ticket.reporter),
            selectinload(Ticket.status),
        )
        .order_by(Status.order, Ticket.order, Ticket.number)
    )
    if filters.status_id:
        stmt = stmt.where(Ticket.status_id == filters.status_id)
    if filters.assignee_id:
        stmt = stmt.where(Ticket.assignee_id == filters.assignee_id)
    if filters.priority:
        stmt = stmt.where(Ticket.priority == filters.priority)
    if filters.type:
        stmt = stmt.where(Ticket.type == filters.type)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_ticket(db: AsyncSession, access: ProjectAccess, ticket_id: str) -> Ticket:
    """Ticket with people, column and comments (oldest first)"""
    result = await db.execute(
        select(Ticket)
        .where(Ticket.id == ticket_id, Ticket.project_id == access.project.id)
        .options(
            selectinload(Ticket.assignee),
            selectinload(Ticket.reporter),
            selectinload(Ticket.status),
            selectinload(Ticket.comments).selectinload(Comment.author),
        )
        .execution_options(populate_existing=True)
    )
    ticket = result.scalar_one_or_none()
    if not ticket:
        raise NotFoundError("Ticket not found")
    return ticket


async def update_ticket(
    db: AsyncSession, access: ProjectAccess, ticket_id: str, data: TicketUpdate,
) -> Ticket:
    ticket = await _load_ticket(db, access.project.id, ticket_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("assignee_id"):
        await _ensure_assignable(db, access.project.id, changes["assignee_id"])

    for field, value in changes.items():
        if value is None and field not in ("assignee_id", "description", "due_date"):
            continue
        setattr(ticket, field, value)
    await db.commit()
    return await get_ticket(db, access, ticket.id)


async def move_ticket(
    db: AsyncSession,
    access: ProjectAccess,
    ticket_id: str,
    data: TicketMove,
    compact_source: bool = False,
) -> Ticket:
    ticket = await _load_ticket(db, access.project.id, ticket_id)
    await ordering.move_ticket(db, ticket, data.status_id, data.order, compact_source)
    await db.commit()
    return await get_ticket(db, access, ticket.id)


async def delete_ticket(
    db: AsyncSession, access: ProjectAccess, ticket_id: str, compact_source: bool = False,
) -> None:
    ticket = await _load_ticket(db, access.project.id, ticket_id)
    if ticket.reporter_id != access.account.id and not access.has_role(ProjectRole.ADMIN):
        raise ForbiddenError("Only the reporter, admin, or owner can delete this ticket")

    status_id = ticket.status_id
    await db.delete(ticket)
    if compact_source:
        await db.flush()
        await ordering.compact_column(db, status_id)
    await db.commit()
    logger.info(f"Ticket {ticket_id} deleted by {access.account.id}")


# ============================================================
# COMMENTS
# ============================================================

async def add_comment(
    db: AsyncSession, access: ProjectAccess, ticket_id: str, data: CommentCreate,
) -> Comment:
    ticket = await _load_ticket(db, access.project.id, ticket_id)
    comment = Comment(ticket_id=ticket.id, author_id=access.account.id, body=data.body)
    db.add(comment)
    await db.commit()
    return await _load_comment(db, access.project.id, ticket.id, comment.id)


async def edit_comment(
    db: AsyncSession, access: ProjectAccess, ticket_id: str, comment_id: str, data: CommentCreate,
) -> Comment:
    comment = await _load_comment(db, access.project.id, ticket_id, comment_id)
    if comment.author_id != access.account.id:
        raise ForbiddenError("You can only edit your own comments")
    comment.body = data.body
    comment.is_edited = True
    await db.commit()
    return comment


async def delete_comment(
    db: AsyncSession, access: ProjectAccess, ticket_id: str, comment_id: str,
) -> None:
    comment = await _load_comment(db, access.project.id, ticket_id, comment_id)
    if comment.author_id != access.account.id and not access.has_role(ProjectRole.ADMIN):
        raise ForbiddenError("You can only delete your own comments")
    await db.delete(comment)
    await db.commit()
