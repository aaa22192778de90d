# projects.py — Projects, membership, board and status columns
# Role rules enforced here (callers pass a member-level ProjectAccess):
# - update project, invite, manage columns, remove MEMBER: ADMIN+
# - archive project, remove ADMIN: OWNER
# - OWNER membership is never removable

import re
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import PublicAccount
from errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from models import (
    Board, Comment, Project, ProjectMember, ProjectRole, Status, Ticket, User, new_uuid,
)
from ordering import get_project_board
from rbac import ProjectAccess, assert_role, find_membership

logger = logging.getLogger("kanban-tracker.projects")

DEFAULT_STATUSES = [
    {"name": "To Do", "color": "#6B7280", "order": 0, "is_default": True},
    {"name": "In Progress", "color": "#3B82F6", "order": 1, "is_default": False},
    {"name": "In Review", "color": "#F59E0B", "order": 2, "is_default": False},
    {"name": "Done", "color": "#10B981", "order": 3, "is_default": False},
]

HEX_COLOR = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"

ADMIN_ONLY_COLUMNS = "Only admins and owners can manage columns"


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    key: str = Field(..., pattern=r"^[A-Z]{2,6}$")
    description: Optional[str] = Field(None, max_length=500)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class MemberInvite(BaseModel):
    email: EmailStr
    role: ProjectRole = ProjectRole.MEMBER

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: ProjectRole) -> ProjectRole:
        if v == ProjectRole.OWNER:
            raise ValueError("Role must be ADMIN or MEMBER")
        return v


class StatusCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field("#6B7280", pattern=HEX_COLOR)
    order: int = Field(..., ge=0)
    is_default: bool = False


class StatusUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    order: Optional[int] = Field(None, ge=0)
    is_default: Optional[bool] = None


@dataclass
class ProjectSummary:
    project: Project
    role: ProjectRole
    joined_at: datetime
    member_count: int
    ticket_count: int


# ============================================================
# HELPERS
# ============================================================

def _slugify(name: str) -> str:
    return re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')[:80]


async def _unique_slug(db: AsyncSession, name: str, fallback: str) -> str:
    """Slug from the name, suffixed -2, -3, ... until unused"""
    base = _slugify(name) or fallback.lower()
    result = await db.execute(select(Project.slug).where(Project.slug.like(f"{base}%")))
    taken = set(result.scalars().all())
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


async def _ticket_count(db: AsyncSession, project_id: str) -> int:
    result = await db.execute(select(func.count(Ticket.id)).where(Ticket.project_id == project_id))
    return result.scalar() or 0


async def _status_in_project(db: AsyncSession, project_id: str, status_id: str) -> Status:
    board = await get_project_board(db, project_id)
    result = await db.execute(
        select(Status).where(Status.id == status_id, Status.board_id == board.id)
    )
    status = result.scalar_one_or_none()
    if not status:
        raise NotFoundError("Status not found in this project")
    return status


async def _check_status_conflicts(
    db: AsyncSession, board_id: str, name: Optional[str], order: Optional[int],
    exclude_id: Optional[str] = None,
) -> None:
    def _scoped(stmt):
        stmt = stmt.where(Status.board_id == board_id)
        if exclude_id:
            stmt = stmt.where(Status.id != exclude_id)
        return stmt

    if name is not None:
        result = await db.execute(_scoped(select(Status.id).where(Status.name == name)))
        if result.first():
            raise ConflictError(f'A column named "{name}" already exists on this board')
    if order is not None:
        result = await db.execute(_scoped(select(Status.id).where(Status.order == order)))
        if result.first():
            raise ConflictError(f"A column already exists at position {order}")


async def _clear_default(db: AsyncSession, board_id: str, keep_id: Optional[str] = None) -> None:
    stmt = update(Status).where(Status.board_id == board_id, Status.is_default.is_(True))
    if keep_id:
        stmt = stmt.where(Status.id != keep_id)
    await db.execute(stmt.values(is_default=False))


# ============================================================
# PROJECTS
# ============================================================

async def create_project(db: AsyncSession, account: PublicAccount, data: ProjectCreate) -> Project:
    """Project + OWNER membership + board + default columns in one transaction"""
    result = await db.execute(select(Project.id).where(Project.key == data.key))
    if result.first():
        raise ConflictError(f'Project key "{data.key}" is already in use')

    project = Project(
        id=new_uuid(),
        name=data.name,
        slug=await _unique_slug(db, data.name, data.key),
        key=data.key,
        description=data.description,
    )
    board = Board(id=new_uuid(), project_id=project.id, name=f"{data.name} Board")
    db.add(project)
    db.add(ProjectMember(project_id=project.id, user_id=account.id, role=ProjectRole.OWNER))
    db.add(board)
    for spec in DEFAULT_STATUSES:
        db.add(Status(board_id=board.id, **spec))

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Project key or slug is already in use")

    logger.info(f"Project {project.key} created by {account.id}")
    return project


async def list_projects(
    db: AsyncSession, account: PublicAccount, include_archived: bool = False,
) -> List[ProjectSummary]:
    stmt = (
        select(ProjectMember, Project)
        .join(Project, Project.id == ProjectMember.project_id)
        .where(ProjectMember.user_id == account.id)
        .order_by(ProjectMember.joined_at.desc())
    )
    if not include_archived:
        stmt = stmt.where(Project.is_archived.is_(False))
    rows = (await db.execute(stmt)).all()
    project_ids = [project.id for _, project in rows]
    if not project_ids:
        return []

    member_counts = dict((await db.execute(
        select(ProjectMember.project_id, func.count(ProjectMember.id))
        .where(ProjectMember.project_id.in_(project_ids))
        .group_by(ProjectMember.project_id)
    )).all())
    ticket_counts = dict((await db.execute(
        select(Ticket.project_id, func.count(Ticket.id))
        .where(Ticket.project_id.in_(project_ids))
        .group_by(Ticket.project_id)
    )).all())

    return [
        ProjectSummary(
            project=project,
            role=membership.role,
            joined_at=membership.joined_at,
            member_count=member_counts.get(project.id, 0),
            ticket_count=ticket_counts.get(project.id, 0),
        )
        for membership, project in rows
    ]


async def get_project_detail(db: AsyncSession, project_id: str):
    """Project with members (and their accounts), board columns and ticket count"""
    result = await db.execute(
        select(Project)
        .where(Project.id == project_id)
        .options(
            selectinload(Project.members).selectinload(ProjectMember.user),
            selectinload(Project.board).selectinload(Board.statuses),
        )
        .execution_options(populate_existing=True)
    )
    project = result.scalar_one_or_none()
    if not project:
        raise NotFoundError("Project not found")
    return project, await _ticket_count(db, project.id)


async def update_project(db: AsyncSession, access: ProjectAccess, data: ProjectUpdate) -> Project:
    assert_role(access.role, ProjectRole.ADMIN, "Only admins and owners can update this project")
    project = access.project
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(project, field, value)
    await db.commit()
    logger.info(f"Project {project.id} updated by {access.account.id}: {sorted(changes)}")
    return project


async def archive_project(db: AsyncSession, access: ProjectAccess) -> Project:
    assert_role(access.role, ProjectRole.OWNER, "Only the project owner can archive this project")
    project = access.project
    project.is_archived = True
    await db.commit()
    logger.info(f"Project {project.id} archived by {access.account.id}")
    return project


# ============================================================
# MEMBERSHIP
# ============================================================

async def invite_member(db: AsyncSession, access: ProjectAccess, data: MemberInvite) -> ProjectMember:
    assert_role(access.role, ProjectRole.ADMIN, "Only admins and owners can invite members")

    result = await db.execute(select(User).where(User.email == data.email))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("No user found with that email address")
    if await find_membership(db, access.project.id, user.id):
        raise ConflictError("User is already a member of this project")

    membership = ProjectMember(project_id=access.project.id, user_id=user.id, role=data.role)
    membership.user = user
    db.add(membership)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("User is already a member of this project")

    logger.info(f"{user.id} joined project {access.project.id} as {data.role.value}")
    return membership


async def remove_member(db: AsyncSession, access: ProjectAccess, user_id: str) -> None:
    assert_role(access.role, ProjectRole.ADMIN, "Only admins and owners can remove members")

    target = await find_membership(db, access.project.id, user_id)
    if not target:
        raise NotFoundError("Member not found in this project")
    if target.role == ProjectRole.OWNER:
        raise ForbiddenError("The project owner cannot be removed")
    if target.role == ProjectRole.ADMIN:
        assert_role(access.role, ProjectRole.OWNER, "Only the owner can remove an admin")

    await db.delete(target)
    await db.commit()
    logger.info(f"{user_id} removed from project {access.project.id} by {access.account.id}")


# ============================================================
# BOARD
# ============================================================

async def get_board(db: AsyncSession, access: ProjectAccess):
    """Board with columns by order, each carrying its tickets by order"""
    result = await db.execute(
        select(Board)
        .where(Board.project_id == access.project.id)
        .options(
            selectinload(Board.statuses).selectinload(Status.tickets).selectinload(Ticket.assignee),
            selectinload(Board.statuses).selectinload(Status.tickets).selectinload(Ticket.reporter),
        )
        .execution_options(populate_existing=True)
    )
    board = result.scalar_one_or_none()
    if not board:
        raise NotFoundError("Board not found")

    counts = await db.execute(
        select(Comment.ticket_id, func.count(Comment.id))
        .join(Ticket, Ticket.id == Comment.ticket_id)
        .where(Ticket.project_id == access.project.id)
        .group_by(Comment.ticket_id)
    )
    comment_counts: Dict[str, int] = dict(counts.all())
    return board, comment_counts


# ============================================================
# STATUS COLUMNS
# ============================================================

async def create_status(db: AsyncSession, access: ProjectAccess, data: StatusCreate) -> Status:
    assert_role(access.role, ProjectRole.ADMIN, ADMIN_ONLY_COLUMNS)
    board = await get_project_board(db, access.project.id)
    await _check_status_conflicts(db, board.id, data.name, data.order)

    if data.is_default:
        await _clear_default(db, board.id)
    status = Status(board_id=board.id, **data.model_dump())
    db.add(status)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A column with that name or position already exists")

    logger.info(f"Column {status.name!r} added to project {access.project.id}")
    return status


async def update_status(
    db: AsyncSession, access: ProjectAccess, status_id: str, data: StatusUpdate,
) -> Status:
    assert_role(access.role, ProjectRole.ADMIN, ADMIN_ONLY_COLUMNS)
    status = await _status_in_project(db, access.project.id, status_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    await _check_status_conflicts(
        db, status.board_id, changes.get("name"), changes.get("order"), exclude_id=status.id,
    )

    if changes.get("is_default"):
        await _clear_default(db, status.board_id, keep_id=status.id)
    for field, value in changes.items():
        setattr(status, field, value)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A column with that name or position already exists")
    return status


async def delete_status(db: AsyncSession, access: ProjectAccess, status_id: str) -> None:
    assert_role(access.role, ProjectRole.ADMIN, ADMIN_ONLY_COLUMNS)
    status = await _status_in_project(db, access.project.id, status_id)

    result = await db.execute(select(func.count(Ticket.id)).where(Ticket.status_id == status.id))
    ticket_count = result.scalar() or 0
    if ticket_count:
        raise BadRequestError(
            f"Cannot delete a column that contains {ticket_count} ticket(s). Move them first."
        )

    await db.delete(status)
    await db.commit()
    logger.info(f"Column {status_id} removed from project {access.project.id}")
