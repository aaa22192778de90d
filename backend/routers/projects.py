# routers/projects.py — Projects, members, board and status columns
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import projects as project_service
from auth import PublicAccount, get_current_account
from database import get_db_session
from models import Project, ProjectMember, Status, Ticket, User
from projects import MemberInvite, ProjectCreate, ProjectUpdate, StatusCreate, StatusUpdate
from rbac import ProjectAccess, require_project_role

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])

member_access = require_project_role()


# ============================================================
# SCHEMAS
# ============================================================

class UserBrief(BaseModel):
    id: str
    email: str
    username: str
    first_name: str
    last_name: str


class MemberOut(BaseModel):
    id: str
    role: str
    joined_at: str
    user: UserBrief


class StatusOut(BaseModel):
    id: str
    name: str
    color: str
    order: int
    is_default: bool
    board_id: str


class BoardBrief(BaseModel):
    id: str
    name: str
    statuses: List[StatusOut] = []


class ProjectOut(BaseModel):
    id: str
    name: str
    slug: str
    key: str
    description: Optional[str] = None
    is_archived: bool
    created_at: str
    updated_at: str


class ProjectListItem(ProjectOut):
    my_role: str
    joined_at: str
    member_count: int
    ticket_count: int


class ProjectDetailOut(ProjectOut):
    members: List[MemberOut] = []
    board: Optional[BoardBrief] = None
    ticket_count: int = 0


class BoardTicketOut(BaseModel):
    id: str
    key: str
    number: int
    title: str
    type: str
    priority: str
    order: int
    due_date: Optional[str] = None
    assignee: Optional[UserBrief] = None
    reporter: UserBrief
    comment_count: int = 0


class BoardColumnOut(StatusOut):
    tickets: List[BoardTicketOut] = []


class BoardOut(BaseModel):
    id: str
    name: str
    project_id: str
    statuses: List[BoardColumnOut] = []


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def _user_brief(user: Optional[User]) -> Optional[UserBrief]:
    if user is None:
        return None
    return UserBrief(
        id=user.id, email=user.email, username=user.username,
        first_name=user.first_name, last_name=user.last_name,
    )


def _project_fields(p: Project) -> dict:
    return dict(
        id=p.id, name=p.name, slug=p.slug, key=p.key, description=p.description,
        is_archived=p.is_archived, created_at=_ts(p.created_at), updated_at=_ts(p.updated_at),
    )


def _member_to_out(m: ProjectMember) -> MemberOut:
    return MemberOut(
        id=m.id, role=m.role.value, joined_at=_ts(m.joined_at), user=_user_brief(m.user),
    )


def _status_to_out(s: Status) -> StatusOut:
    return StatusOut(
        id=s.id, name=s.name, color=s.color, order=s.order,
        is_default=s.is_default, board_id=s.board_id,
    )


def _project_to_detail(project: Project, ticket_count: int) -> ProjectDetailOut:
    board = None
    if project.board is not None:
        board = BoardBrief(
            id=project.board.id,
            name=project.board.name,
            statuses=[_status_to_out(s) for s in sorted(project.board.statuses, key=lambda x: x.order)],
        )
    return ProjectDetailOut(
        **_project_fields(project),
        members=[_member_to_out(m) for m in project.members],
        board=board,
        ticket_count=ticket_count,
    )


def _board_ticket(t: Ticket, project_key: str, comment_count: int) -> BoardTicketOut:
    return BoardTicketOut(
        id=t.id, key=f"{project_key}-{t.number}", number=t.number, title=t.title,
        type=t.type.value, priority=t.priority.value, order=t.order,
        due_date=_ts(t.due_date),
        assignee=_user_brief(t.assignee), reporter=_user_brief(t.reporter),
        comment_count=comment_count,
    )


# ============================================================
# PROJECT ENDPOINTS
# ============================================================

@router.post("", response_model=ProjectDetailOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    account: PublicAccount = Depends(get_current_account),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project; the caller becomes its OWNER"""
    project = await project_service.create_project(db, account, data)
    project, ticket_count = await project_service.get_project_detail(db, project.id)
    return _project_to_detail(project, ticket_count)


@router.get("", response_model=List[ProjectListItem])
async def list_projects(
    include_archived: bool = Query(False),
    account: PublicAccount = Depends(get_current_account),
    db: AsyncSession = Depends(get_db_session),
):
    """Projects the caller belongs to, newest membership first"""
    summaries = await project_service.list_projects(db, account, include_archived)
    return [
        ProjectListItem(
            **_project_fields(s.project),
            my_role=s.role.value,
            joined_at=_ts(s.joined_at),
            member_count=s.member_count,
            ticket_count=s.ticket_count,
        )
        for s in summaries
    ]


@router.get("/{project_id}", response_model=ProjectDetailOut)
async def get_project(
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    project, ticket_count = await project_service.get_project_detail(db, access.project.id)
    return _project_to_detail(project, ticket_count)


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    data: ProjectUpdate,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename or re-describe a project (key is fixed)"""
    project = await project_service.update_project(db, access, data)
    return ProjectOut(**_project_fields(project))


@router.patch("/{project_id}/archive", response_model=ProjectOut)
async def archive_project(
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    project = await project_service.archive_project(db, access)
    return ProjectOut(**_project_fields(project))


# ============================================================
# MEMBER ENDPOINTS
# ============================================================

@router.post("/{project_id}/members", response_model=MemberOut, status_code=201)
async def invite_member(
    data: MemberInvite,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Add an existing account to the project as ADMIN or MEMBER"""
    membership = await project_service.invite_member(db, access, data)
    return _member_to_out(membership)


@router.delete("/{project_id}/members/{user_id}")
async def remove_member(
    user_id: str,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    await project_service.remove_member(db, access, user_id)
    return {"message": "Member removed successfully"}


# ============================================================
# BOARD ENDPOINT
# ============================================================

@router.get("/{project_id}/board", response_model=BoardOut)
async def get_board(
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Columns by order, each with its tickets by order"""
    board, comment_counts = await project_service.get_board(db, access)
    key = access.project.key
    return BoardOut(
        id=board.id,
        name=board.name,
        project_id=board.project_id,
        statuses=[
            BoardColumnOut(
                **_status_to_out(s).model_dump(),
                tickets=[
                    _board_ticket(t, key, comment_counts.get(t.id, 0))
                    for t in sorted(s.tickets, key=lambda x: (x.order, x.number))
                ],
            )
            for s in sorted(board.statuses, key=lambda x: x.order)
        ],
    )


# ============================================================
# STATUS ENDPOINTS
# ============================================================

@router.post("/{project_id}/statuses", response_model=StatusOut, status_code=201)
async def create_status(
    data: StatusCreate,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    status = await project_service.create_status(db, access, data)
    return _status_to_out(status)


@router.patch("/{project_id}/statuses/{status_id}", response_model=StatusOut)
async def update_status(
    status_id: str,
    data: StatusUpdate,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    status = await project_service.update_status(db, access, status_id, data)
    return _status_to_out(status)


@router.delete("/{project_id}/statuses/{status_id}")
async def delete_status(
    status_id: str,
    access: ProjectAccess = Depends(member_access),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove an empty column"""
    await project_service.delete_status(db, access, status_id)
    return {"message": "Status deleted successfully"}
