# models.py — Database models for Kanban Tracker
# - UUID string primary keys everywhere
# - Project-scoped roles (OWNER > ADMIN > MEMBER)
# - One board per project, ordered status columns
# - Project-scoped ticket numbers, column-scoped ticket order

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class ProjectRole(str, PyEnum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class TicketPriority(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TicketType(str, PyEnum):
    TASK = "TASK"
    BUG = "BUG"
    STORY = "STORY"
    EPIC = "EPIC"


# ============================================================
# ACCOUNTS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    # bcrypt(sha256(refresh token)); NULL means no active session
    refresh_token_hash = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    memberships = relationship("ProjectMember", back_populates="user")


# ============================================================
# PROJECTS & MEMBERSHIP
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    key = Column(String, unique=True, nullable=False)  # e.g. "MYP" -> MYP-1, MYP-2
    description = Column(Text, nullable=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship("ProjectMember", back_populates="project", cascade="all, delete-orphan")
    board = relationship("Board", back_populates="project", uselist=False, cascade="all, delete-orphan")
    tickets = relationship("Ticket", back_populates="project", cascade="all, delete-orphan")


class ProjectMember(Base):
    __tablename__ = "project_members"

    id = Column(String, primary_key=True, default=new_uuid)
    role = Column(SQLEnum(ProjectRole), nullable=False, default=ProjectRole.MEMBER)
    joined_at = Column(DateTime(timezone=True), default=utcnow)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)

    user = relationship("User", back_populates="memberships")
    project = relationship("Project", back_populates="members")

    __table_args__ = (
        UniqueConstraint("user_id", "project_id", name="uq_member_user_project"),
        Index("idx_member_project", "project_id"),
    )


# ============================================================
# BOARD & STATUS COLUMNS
# ============================================================

class Board(Base):
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="board")
    statuses = relationship(
        "Status", back_populates="board", order_by="Status.order", cascade="all, delete-orphan",
    )


class Status(Base):
    """Board column; left-to-right position is `order`"""
    __tablename__ = "statuses"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    color = Column(String, nullable=False, default="#6B7280")
    order = Column(Integer, nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False)

    board = relationship("Board", back_populates="statuses")
    tickets = relationship("Ticket", back_populates="status", order_by="Ticket.order")

    __table_args__ = (
        UniqueConstraint("board_id", "order", name="uq_status_board_order"),
        UniqueConstraint("board_id", "name", name="uq_status_board_name"),
    )


# ============================================================
# TICKETS & COMMENTS
# ============================================================

class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(SQLEnum(TicketType), nullable=False, default=TicketType.TASK)
    priority = Column(SQLEnum(TicketPriority), nullable=False, default=TicketPriority.MEDIUM)
    due_date = Column(DateTime(timezone=True), nullable=True)
    order = Column(Integer, nullable=False)  # Position within the status column
    number = Column(Integer, nullable=False)  # Project-scoped sequence
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    status_id = Column(String, ForeignKey("statuses.id", ondelete="RESTRICT"), nullable=False)
    assignee_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reporter_id = Column(String, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    project = relationship("Project", back_populates="tickets")
    status = relationship("Status", back_populates="tickets")
    assignee = relationship("User", foreign_keys=[assignee_id])
    reporter = relationship("User", foreign_keys=[reporter_id])
    comments = relationship(
        "Comment", back_populates="ticket", order_by="Comment.created_at", cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("project_id", "number", name="uq_ticket_project_number"),
        Index("idx_ticket_status_order", "status_id", "order"),
        Index("idx_ticket_project_assignee", "project_id", "assignee_id"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=new_uuid)
    body = Column(Text, nullable=False)
    is_edited = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    ticket_id = Column(String, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    ticket = relationship("Ticket", back_populates="comments")
    author = relationship("User")
