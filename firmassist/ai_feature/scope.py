from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from firmassist.core import models


# -----------------------------------------------------------------------------
# DATA SCOPE MODULE
# Purpose: decide which clients, tasks and invoices a principal may read.
# Resolved on every request and again inside every tool call; never cached.
# -----------------------------------------------------------------------------


MANAGER_ROLES = frozenset({"owner", "admin"})


class VisibilityLevel(str, Enum):
    FULL = "full"
    RESTRICTED = "restricted"


@dataclass(frozen=True)
class Principal:
    """The authenticated actor of one request."""

    id: int
    role: str
    firm_id: int
    full_name: str = ""

    @classmethod
    def from_user(cls, user: models.User) -> "Principal":
        return cls(
            id=user.id,
            role=user.role,
            firm_id=user.firm_id,
            full_name=user.full_name or "",
        )

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES


@dataclass(frozen=True)
class DataScope:
    visibility_level: VisibilityLevel
    client_ids: FrozenSet[int] = field(default_factory=frozenset)
    task_ids: FrozenSet[int] = field(default_factory=frozenset)
    invoice_ids: FrozenSet[int] = field(default_factory=frozenset)

    @property
    def is_restricted(self) -> bool:
        return self.visibility_level == VisibilityLevel.RESTRICTED

    @property
    def is_empty(self) -> bool:
        return not (self.client_ids or self.task_ids or self.invoice_ids)

    @classmethod
    def nothing_visible(cls) -> "DataScope":
        return cls(visibility_level=VisibilityLevel.RESTRICTED)


async def _firm_wide_scope(firm_id: int, db: AsyncSession) -> DataScope:
    client_rows = await db.execute(
        select(models.Client.id).where(
            models.Client.firm_id == firm_id,
            models.Client.is_deleted == False,
        )
    )
    task_rows = await db.execute(
        select(models.Task.id).where(
            models.Task.firm_id == firm_id,
            models.Task.is_archived == False,
        )
    )
    invoice_rows = await db.execute(
        select(models.Invoice.id).where(models.Invoice.firm_id == firm_id)
    )

    return DataScope(
        visibility_level=VisibilityLevel.FULL,
        client_ids=frozenset(client_rows.scalars().all()),
        task_ids=frozenset(task_rows.scalars().all()),
        invoice_ids=frozenset(invoice_rows.scalars().all()),
    )


async def _employee_scope(principal: Principal, db: AsyncSession) -> DataScope:
    """
    Restricted scope built from the employee's own work.

    1. tasks: assignee, assigner or collaborator; archived tasks drop out
    2. clients: referenced by those tasks, plus clients the employee created
    3. invoices: created by the employee, plus invoices linked to those tasks

    Invoices of a visible client that have no link to the employee stay
    hidden.
    """
    collaborating = select(models.task_collaborators.c.task_id).where(
        models.task_collaborators.c.user_id == principal.id
    )
    task_rows = await db.execute(
        select(models.Task.id, models.Task.client_id).where(
            models.Task.firm_id == principal.firm_id,
            models.Task.is_archived == False,
            or_(
                models.Task.assigned_to == principal.id,
                models.Task.assigned_by == principal.id,
                models.Task.id.in_(collaborating),
            ),
        )
    )
    tasks = task_rows.all()
    task_ids = frozenset(row.id for row in tasks)
    referenced_clients = {row.client_id for row in tasks if row.client_id is not None}

    client_conditions = [models.Client.created_by == principal.id]
    if referenced_clients:
        client_conditions.append(models.Client.id.in_(referenced_clients))
    client_rows = await db.execute(
        select(models.Client.id).where(
            models.Client.firm_id == principal.firm_id,
            models.Client.is_deleted == False,
            or_(*client_conditions),
        )
    )

    invoice_conditions = [models.Invoice.created_by == principal.id]
    if task_ids:
        invoice_conditions.append(models.Invoice.related_task_id.in_(task_ids))
    invoice_rows = await db.execute(
        select(models.Invoice.id).where(
            models.Invoice.firm_id == principal.firm_id,
            or_(*invoice_conditions),
        )
    )

    return DataScope(
        visibility_level=VisibilityLevel.RESTRICTED,
        client_ids=frozenset(client_rows.scalars().all()),
        task_ids=task_ids,
        invoice_ids=frozenset(invoice_rows.scalars().all()),
    )


async def resolve_scope(principal: Principal, db: AsyncSession) -> DataScope:
    """
    Compute the DataScope of a principal from the current database state.

    Args:
        principal: Requesting actor
        db: Database session

    Returns:
        Full firm-wide scope for owners/admins, a restricted scope for
        employees, and an empty restricted scope for every other role.
    """
    if principal.is_manager:
        return await _firm_wide_scope(principal.firm_id, db)
    if principal.role == "employee":
        return await _employee_scope(principal, db)
    return DataScope.nothing_visible()
