from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Numeric,
    Boolean,
    TIMESTAMP,
    Text,
    JSON,
    Table,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from firmassist.core.database import Base


# =========================
# Firm (tenant)
# =========================
class Firm(Base):
    __tablename__ = "firms"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    users = relationship("User", back_populates="firm", passive_deletes=True)


# =========================
# User
# =========================
class User(Base):
    __tablename__ = "users_table"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String, nullable=False, unique=True, index=True)
    password = Column(String, nullable=False)
    full_name = Column(String, nullable=False, server_default="")
    # owner / admin / employee / client
    role = Column(String, nullable=False, server_default="employee")
    department = Column(String, nullable=True)

    firm_id = Column(
        Integer,
        ForeignKey("firms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    is_active = Column(Boolean, nullable=False, default=True)
    last_active = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    firm = relationship("Firm", back_populates="users")


# Tasks can pull in extra people besides the assignee
task_collaborators = Table(
    "task_collaborators",
    Base.metadata,
    Column(
        "task_id",
        Integer,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "user_id",
        Integer,
        ForeignKey("users_table.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


# =========================
# Client
# =========================
class Client(Base):
    """
    A customer of the firm.
    Owned by the client-management module; the assistant only reads it.
    """

    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, autoincrement=True)

    firm_id = Column(
        Integer,
        ForeignKey("firms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = Column(String, nullable=False, index=True)
    email = Column(String)
    phone = Column(String)
    status = Column(String, nullable=False, default="active")  # active/inactive/prospect
    industry = Column(String)
    business_type = Column(String)
    gstin = Column(String(15), index=True)
    pan = Column(String(10))
    address = Column(Text)
    notes = Column(Text)

    is_deleted = Column(Boolean, nullable=False, default=False, index=True)

    created_by = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    tasks = relationship("Task", back_populates="client")
    invoices = relationship("Invoice", back_populates="client")


# =========================
# Task
# =========================
class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)

    firm_id = Column(
        Integer,
        ForeignKey("firms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    client_id = Column(
        Integer,
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="todo")  # todo/inprogress/review/completed/cancelled
    priority = Column(String, nullable=False, default="medium")
    due_date = Column(TIMESTAMP(timezone=True), nullable=True)

    assigned_to = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    assigned_by = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    is_archived = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    client = relationship("Client", back_populates="tasks")
    collaborators = relationship("User", secondary=task_collaborators)


# =========================
# Invoice
# =========================
class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)

    firm_id = Column(
        Integer,
        ForeignKey("firms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    client_id = Column(
        Integer,
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    invoice_number = Column(String, nullable=False)
    client_name = Column(String)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="draft")  # draft/sent/partially_paid/paid/overdue/cancelled
    due_date = Column(TIMESTAMP(timezone=True), nullable=True)

    created_by = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    related_task_id = Column(
        Integer,
        ForeignKey("tasks.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    client = relationship("Client", back_populates="invoices")


# =========================
# Assistant conversation channel
# =========================
class AssistantChannel(Base):
    """One private assistant channel per user."""

    __tablename__ = "assistant_channels"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    firm_id = Column(
        Integer,
        ForeignKey("firms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    messages = relationship(
        "AssistantMessage",
        back_populates="channel",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class AssistantMessage(Base):
    __tablename__ = "assistant_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    channel_id = Column(
        Integer,
        ForeignKey("assistant_channels.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role = Column(String, nullable=False)  # user / model
    content = Column(Text, nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    channel = relationship("AssistantChannel", back_populates="messages")


# =========================
# AI usage (AUDIT LOG)
# =========================
class AIUsage(Base):
    """
    One row per assistant run.
    Inserted before the first model call and finalized exactly once.
    """

    __tablename__ = "ai_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    firm_id = Column(
        Integer,
        ForeignKey("firms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    prompt_excerpt = Column(Text, nullable=False)
    response_excerpt = Column(Text, nullable=True)
    query_type = Column(String, nullable=False, default="chat", index=True)

    # NULL until the run is finalized, then success / error / timeout
    status = Column(String, nullable=True, index=True)
    latency_ms = Column(Integer, nullable=True)
    tools_invoked = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)

    continuity = Column(Boolean, nullable=False, default=True)
    cancelled = Column(Boolean, nullable=False, default=False)
    iteration_exhausted = Column(Boolean, nullable=False, default=False)

    model = Column(String, nullable=True)
    endpoint = Column(String, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
    )
    finalized_at = Column(TIMESTAMP(timezone=True), nullable=True)

    user = relationship("User")
