# rbac.py — Project-scoped role checks
# Guard pipeline for every project route:
#   resolve project -> resolve membership -> assert role
# Each step hands its result to the next; the first failure short-circuits.

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from auth import PublicAccount, get_current_account
from database import get_db_session
from errors import ForbiddenError, NotFoundError
from models import Project, ProjectMember, ProjectRole

logger = logging.getLogger("kanban-tracker.rbac")

# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_HIERARCHY = {
    ProjectRole.OWNER: 3,
    ProjectRole.ADMIN: 2,
    ProjectRole.MEMBER: 1,
}

DEFAULT_DENIAL = "You do not have permission to perform this action"


def role_level(role: ProjectRole) -> int:
    return ROLE_HIERARCHY[ProjectRole(role)]


def has_role(actual: ProjectRole, required: ProjectRole) -> bool:
    return role_level(actual) >= role_level(required)


def assert_role(actual: ProjectRole, required: ProjectRole, message: Optional[str] = None) -> None:
    """Raise ForbiddenError unless actual >= required in the hierarchy"""
    if not has_role(actual, required):
        raise ForbiddenError(message or DEFAULT_DENIAL)


# ============================================================
# MEMBERSHIP RESOLUTION
# ============================================================

@dataclass(frozen=True)
class ProjectAccess:
    """Outcome of a passed guard pipeline"""
    account: PublicAccount
    project: Project
    membership: ProjectMember

    @property
    def role(self) -> ProjectRole:
        return self.membership.role

    def has_role(self, required: ProjectRole) -> bool:
        return has_role(self.role, required)


async def resolve_project(db: AsyncSession, project_id: str) -> Project:
    result = await db.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if not project:
        raise NotFoundError("Project not found")
    return project


async def find_membership(db: AsyncSession, project_id: str, account_id: str) -> Optional[ProjectMember]:
    result = await db.execute(
        select(ProjectMember)
        .options(joinedload(ProjectMember.project))
        .where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == account_id,
        )
    )
    return result.scalar_one_or_none()


async def resolve_membership(db: AsyncSession, project_id: str, account_id: str) -> ProjectMember:
    """Membership row for (project, account); 404 for a missing project, 403 for a non-member"""
    await resolve_project(db, project_id)
    membership = await find_membership(db, project_id, account_id)
    if not membership:
        logger.warning(f"Non-member {account_id} denied access to project {project_id}")
        raise ForbiddenError("You are not a member of this project")
    return membership


async def authorize(
    db: AsyncSession,
    project_id: str,
    account: PublicAccount,
    min_role: ProjectRole = ProjectRole.MEMBER,
    message: Optional[str] = None,
) -> ProjectAccess:
    membership = await resolve_membership(db, project_id, account.id)
    assert_role(membership.role, min_role, message)
    return ProjectAccess(account=account, project=membership.project, membership=membership)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def require_project_role(min_role: ProjectRole = ProjectRole.MEMBER, message: Optional[str] = None):
    """Dependency factory: caller must hold at least min_role in the path's project"""
    async def _check(
        project_id: str,
        account: PublicAccount = Depends(get_current_account),
        db: AsyncSession = Depends(get_db_session),
    ) -> ProjectAccess:
        return await authorize(db, project_id, account, min_role, message)
    return _check
