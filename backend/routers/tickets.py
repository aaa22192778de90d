# routers/tickets.py — Tickets, drag-and-drop moves and comments
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import tickets as ticket_service
from config import Settings, get_settings
from database import get_db_session
from models import Comment, Ticket, TicketPriority, TicketType, User
from rbac import ProjectAccess, require_project_role
from tickets import CommentCreate, TicketCreate, TicketFilters, TicketMove, TicketUpdate

router = APIRouter(prefix="/api/v1/projects/{project_id}/tickets", tags=["Tickets"])

member_access = require_project_role()


# ============================================================
# SCHEMAS
# ============================================================

class PersonOut(BaseModel):
    id: str
    username: str
    first_name: str
    last_name: str


class CommentOut(BaseModel):
    id: str
    body: str
    is_edited: bool
    ticket_id: str
    author: PersonOut
    created_at: str
    updated_at: str


class TicketOut(BaseModel):
    id: str
    key: str
    number: int
    title: str
    description: Optional[str] = None
    type: str
    priority: str
    order: int
    due_date: Optional[str] = None
    project_id: str
    status_id: str
    status_name: Optional[str] = None
    assignee: Optional[PersonOut] = None
    reporter: PersonOut
    comment_count: int = 0
    created_at: str
    updated_at: str


class TicketDetailOut(TicketOut):
    comments: List[CommentOut] = []


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def _person(user: Optional[User]) -> Optional[PersonOut]:
    if user is None:
        return None
    return PersonOut(
        id=user.id, username=user.username, first_name=user.first_name, last_name=user.last_name,
    )


def _comment_to_out(c: Comment) -> CommentOut:
    return CommentOut(
        id=c.id, body=c.body, is_edited=c.is_edited, ticket_id=c.ticket_id,
        author=_person(c.author), created_at=_ts(c.created_at), updated_at=_ts(c.updated_at),
    )


def _ticket_fields(t: Ticket, project_key: str, comment_count: int) -> dict:
    return dict(
        id=t.id,
        key=f"{project_key}-{t.number}",
        number=t.number,
        title=t.title,
        description=t.description,
        type=t.type.value,
        priority=t.priority.value,
        order=t.order,
        due_date=_ts(t.due_date),
        project_id=t.project_id,
        status_id=t.status_id,
        status_name=t.status.name if t.status else None,
        assignee=_person(t.assignee),
        reporter=_person(t.reporter),
        comment_count=comment_count,
        created_at=_ts(t.created_at),
        updated_at=_ts(t.updated_at),
    )


def _ticket_detail(t: Ticket, project_key: str) -> TicketDetailOut:
    return TicketDetailOut(
        **_ticket_fields(t, project_key, len(t.comments)),
        comments=[_comment_to_out(c) for c in t.comments],
    )


# ============================================================
# TICKET ENDPOINTS
# ============================================================

@router.post("", response_model=TicketDetailOut, status_code=201)
async def create_ticket(
    data: TicketCreate,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a ticket at the bottom of its column with the next project number"""
    ticket = await ticket_service.create_ticket(db, access, data)
    return _ticket_detail(ticket, access.project.key)


@router.get("", response_model=List[TicketOut])
async def list_tickets(
    status_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
    priority: Optional[TicketPriority] = None,
    type: Optional[TicketType] = None,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Tickets ordered by column then position"""
    filters = TicketFilters(status_id=status_id, assignee_id=assignee_id, priority=priority, type=type)
    tickets = await ticket_service.list_tickets(db, access, filters)
    counts = await ticket_service.comment_counts(db, [t.id for t in tickets])
    return [TicketOut(**_ticket_fields(t, access.project.key, counts.get(t.id, 0))) for t in tickets]


@router.get("/{ticket_id}", response_model=TicketDetailOut)
async def get_ticket(
    ticket_id: str,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    ticket = await ticket_service.get_ticket(db, access, ticket_id)
    return _ticket_detail(ticket, access.project.key)


@router.patch("/{ticket_id}", response_model=TicketDetailOut)
async def update_ticket(
    ticket_id: str,
    data: TicketUpdate,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    ticket = await ticket_service.update_ticket(db, access, ticket_id, data)
    return _ticket_detail(ticket, access.project.key)


@router.patch("/{ticket_id}/move", response_model=TicketDetailOut)
async def move_ticket(
    ticket_id: str,
    data: TicketMove,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
):
    """Drop a ticket into a column at a zero-based position"""
    ticket = await ticket_service.move_ticket(
        db, access, ticket_id, data, compact_source=settings.reorder_compact_source,
    )
    return _ticket_detail(ticket, access.project.key)


@router.delete("/{ticket_id}")
async def delete_ticket(
    ticket_id: str,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
):
    await ticket_service.delete_ticket(
        db, access, ticket_id, compact_source=settings.reorder_compact_source,
    )
    return {"message": "Ticket deleted successfully"}


# ============================================================
# COMMENT ENDPOINTS
# ============================================================

@router.post("/{ticket_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    ticket_id: str,
    data: CommentCreate,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    comment = await ticket_service.add_comment(db, access, ticket_id, data)
    return _comment_to_out(comment)


@router.patch("/{ticket_id}/comments/{comment_id}", response_model=CommentOut)
async def edit_comment(
    ticket_id: str,
    comment_id: str,
    data: CommentCreate,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Author-only edit; marks the comment as edited"""
    comment = await ticket_service.edit_comment(db, access, ticket_id, comment_id, data)
    return _comment_to_out(comment)


@router.delete("/{ticket_id}/comments/{comment_id}")
async def delete_comment(
    ticket_id: str,
    comment_id: str,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    await ticket_service.delete_comment(db, access, ticket_id, comment_id)
    return {"message": "Comment deleted successfully"}
