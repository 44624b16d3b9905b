from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from firmassist.core import models
from firmassist.core.config import settings
from firmassist.ai_feature.scope import DataScope, Principal, VisibilityLevel
from firmassist.ai_feature.time_utils import as_utc, utc_now
from firmassist.ai_feature.turns import ContextTurn, ModelTurn


# -----------------------------------------------------------------------------
# CONTEXT COMPOSER
# Purpose: the two priming turns of every run. A data snapshot built from the
# principal's DataScope, followed by a fixed acknowledgment from the model.
# -----------------------------------------------------------------------------


ACKNOWLEDGMENT = (
    "I understand. I have the business data above and the tools to look up "
    "more. I'll answer using only that information."
)

OPEN_TASK_STATUSES = ("todo", "inprogress", "review")


@dataclass
class SnapshotSection:
    title: str
    lines: List[str]
    # Rows beyond the cap, reported as a count only
    remainder: int = 0


@dataclass
class ContextSnapshot:
    header: str
    summary: List[str] = field(default_factory=list)
    sections: List[SnapshotSection] = field(default_factory=list)
    instructions: List[str] = field(default_factory=list)

    def render(self) -> str:
        parts = [self.header, "", "SUMMARY:"]
        parts.extend(f"- {line}" for line in self.summary)
        for section in self.sections:
            parts.append("")
            parts.append(f"{section.title}:")
            if not section.lines:
                parts.append("- None")
            parts.extend(f"- {line}" for line in section.lines)
            if section.remainder:
                parts.append(f"... and {section.remainder} more")
        parts.append("")
        parts.append("INSTRUCTIONS:")
        parts.extend(f"- {line}" for line in self.instructions)
        return "\n".join(parts)


@dataclass
class ScopedData:
    """Rows visible to the principal, already filtered by the DataScope."""

    clients: List[models.Client]
    tasks: List[models.Task]
    invoices: List[models.Invoice]
    team: List[models.User] = field(default_factory=list)


def _capped(title: str, lines: Sequence[str], cap: int) -> SnapshotSection:
    return SnapshotSection(
        title=title, lines=list(lines[:cap]), remainder=max(len(lines) - cap, 0)
    )


def _amount(invoices) -> float:
    return sum(float(i.amount or 0) for i in invoices)


def _is_overdue(task: models.Task, now) -> bool:
    return (
        task.due_date is not None
        and task.status in OPEN_TASK_STATUSES
        and as_utc(task.due_date) < now
    )


def _common_summary(data: ScopedData) -> List[str]:
    now = utc_now()
    open_tasks = [t for t in data.tasks if t.status in OPEN_TASK_STATUSES]
    return [
        f"Clients: {len(data.clients)} "
        f"({sum(1 for c in data.clients if c.status == 'active')} active)",
        f"Tasks: {len(data.tasks)} ({len(open_tasks)} open, "
        f"{sum(1 for t in data.tasks if _is_overdue(t, now))} overdue)",
        f"Invoices: {len(data.invoices)} "
        f"({sum(1 for i in data.invoices if i.status == 'paid')} paid, "
        f"{sum(1 for i in data.invoices if i.status == 'overdue')} overdue)",
    ]


def _common_sections(data: ScopedData, cap: int) -> List[SnapshotSection]:
    client_lines = [
        f"{c.name} (id {c.id}, {c.status}"
        + (f", {c.industry}" if c.industry else "")
        + (f", GSTIN {c.gstin}" if c.gstin else "")
        + ")"
        for c in data.clients
    ]
    task_lines = [
        f"{t.title} [{t.status}, {t.priority}]"
        + (f" due {as_utc(t.due_date).date().isoformat()}" if t.due_date else "")
        for t in data.tasks
        if t.status in OPEN_TASK_STATUSES
    ]
    invoice_lines = [
        f"{i.invoice_number}: {i.client_name or 'Unknown client'} "
        f"{float(i.amount or 0):.2f} ({i.status})"
        for i in data.invoices
    ]
    return [
        _capped("CLIENTS", client_lines, cap),
        _capped("OPEN TASKS", task_lines, cap),
        _capped("INVOICES", invoice_lines, cap),
    ]


_COMMON_INSTRUCTIONS = [
    "Answer only from the data above or from tool results.",
    "Use the tools for details, searches, statistics and pagination.",
    "If something is not in the data, say you don't have access to it.",
]


def _full_snapshot(principal: Principal, data: ScopedData, cap: int) -> ContextSnapshot:
    paid = [i for i in data.invoices if i.status == "paid"]
    outstanding = [i for i in data.invoices if i.status not in ("paid", "cancelled")]

    summary = _common_summary(data)
    summary.append(f"Revenue collected: {_amount(paid):.2f}")
    summary.append(f"Outstanding: {_amount(outstanding):.2f}")
    summary.append(f"Team members: {len(data.team)}")

    sections = _common_sections(data, cap)
    sections.append(
        _capped(
            "TEAM",
            [
                f"{u.full_name or u.email} ({u.role}"
                + (f", {u.department}" if u.department else "")
                + ")"
                for u in data.team
            ],
            cap,
        )
    )

    return ContextSnapshot(
        header=(
            f"You are the assistant of {principal.full_name or 'a user'} "
            f"({principal.role}). You can see all data of the firm."
        ),
        summary=summary,
        sections=sections,
        instructions=list(_COMMON_INSTRUCTIONS),
    )


def _restricted_snapshot(
    principal: Principal, data: ScopedData, cap: int
) -> ContextSnapshot:
    header = (
        f"You are the assistant of {principal.full_name or 'a user'} "
        f"({principal.role}). You are viewing a subset of the firm's data: only "
        "the clients, tasks and invoices linked to this user's own work."
    )
    instructions = list(_COMMON_INSTRUCTIONS)
    instructions.append(
        "Never claim firm-wide totals; every number covers this user's subset only."
    )
    if not (data.clients or data.tasks or data.invoices):
        instructions.append(
            "Nothing is visible to this user yet. Say so plainly when asked."
        )

    return ContextSnapshot(
        header=header,
        summary=_common_summary(data),
        sections=_common_sections(data, cap),
        instructions=instructions,
    )


SnapshotStrategy = Callable[[Principal, ScopedData, int], ContextSnapshot]

SNAPSHOT_STRATEGIES: Dict[VisibilityLevel, SnapshotStrategy] = {
    VisibilityLevel.FULL: _full_snapshot,
    VisibilityLevel.RESTRICTED: _restricted_snapshot,
}


def build_snapshot(
    principal: Principal,
    scope: DataScope,
    data: ScopedData,
    cap: Optional[int] = None,
) -> ContextSnapshot:
    strategy = SNAPSHOT_STRATEGIES[scope.visibility_level]
    if cap is None:
        cap = settings.AI_CONTEXT_ITEM_CAP
    return strategy(principal, data, cap)


async def load_scoped_data(
    principal: Principal, scope: DataScope, db: AsyncSession
) -> ScopedData:
    clients, tasks, invoices, team = [], [], [], []

    if scope.client_ids:
        result = await db.execute(
            select(models.Client)
            .where(
                models.Client.firm_id == principal.firm_id,
                models.Client.is_deleted == False,
                models.Client.id.in_(scope.client_ids),
            )
            .order_by(models.Client.created_at.desc(), models.Client.id.desc())
        )
        clients = list(result.scalars().all())

    if scope.task_ids:
        result = await db.execute(
            select(models.Task)
            .where(
                models.Task.firm_id == principal.firm_id,
                models.Task.id.in_(scope.task_ids),
            )
            .order_by(models.Task.due_date.asc(), models.Task.id.asc())
        )
        tasks = list(result.scalars().all())

    if scope.invoice_ids:
        result = await db.execute(
            select(models.Invoice)
            .where(
                models.Invoice.firm_id == principal.firm_id,
                models.Invoice.id.in_(scope.invoice_ids),
            )
            .order_by(models.Invoice.created_at.desc(), models.Invoice.id.desc())
        )
        invoices = list(result.scalars().all())

    if scope.visibility_level == VisibilityLevel.FULL:
        result = await db.execute(
            select(models.User)
            .where(
                models.User.firm_id == principal.firm_id,
                models.User.is_active == True,
                models.User.role != "client",
            )
            .order_by(models.User.full_name)
        )
        team = list(result.scalars().all())

    return ScopedData(clients=clients, tasks=tasks, invoices=invoices, team=team)


async def compose_context(
    principal: Principal,
    scope: DataScope,
    db: AsyncSession,
    cap: Optional[int] = None,
) -> List:
    """
    Build the priming turns of a run.

    Returns:
        [ContextTurn(snapshot), ModelTurn(acknowledgment)]
    """
    data = await load_scoped_data(principal, scope, db)
    snapshot = build_snapshot(principal, scope, data, cap)
    return [ContextTurn(text=snapshot.render()), ModelTurn(text=ACKNOWLEDGMENT)]
