import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from firmassist.core import models
from firmassist.ai_feature.errors import ToolError
from firmassist.ai_feature.llm.base import FunctionSchema
from firmassist.ai_feature.scope import DataScope, Principal, resolve_scope
from firmassist.ai_feature.time_utils import as_utc, utc_now, window_start
from firmassist.ai_feature.turns import ToolInvocationResult


# -----------------------------------------------------------------------------
# TOOL REGISTRY
# Purpose: the fixed catalog of read-only operations the model may request.
# Every executor resolves the principal's DataScope itself and only ever
# queries inside it. Executors fail soft: problems come back to the model as
# {"errorKind", "message"} so it can recover.
# -----------------------------------------------------------------------------


logger = logging.getLogger(__name__)

# 2 digits state + 10 char PAN + entity number + "Z" + checksum
GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")

GST_STATE_CODES = {
    "01": "Jammu and Kashmir", "02": "Himachal Pradesh", "03": "Punjab",
    "04": "Chandigarh", "05": "Uttarakhand", "06": "Haryana",
    "07": "Delhi", "08": "Rajasthan", "09": "Uttar Pradesh",
    "10": "Bihar", "11": "Sikkim", "12": "Arunachal Pradesh",
    "13": "Nagaland", "14": "Manipur", "15": "Mizoram",
    "16": "Tripura", "17": "Meghalaya", "18": "Assam",
    "19": "West Bengal", "20": "Jharkhand", "21": "Odisha",
    "22": "Chhattisgarh", "23": "Madhya Pradesh", "24": "Gujarat",
    "26": "Dadra and Nagar Haveli and Daman and Diu", "27": "Maharashtra",
    "28": "Andhra Pradesh (Old)", "29": "Karnataka", "30": "Goa",
    "31": "Lakshadweep", "32": "Kerala", "33": "Tamil Nadu",
    "34": "Puducherry", "35": "Andaman and Nicobar Islands", "36": "Telangana",
    "37": "Andhra Pradesh", "38": "Ladakh", "97": "Other Territory",
}

PENDING_INVOICE_STATUSES = ("draft", "sent", "partially_paid")
ONLINE_WINDOW_MINUTES = 15
TEAM_ROLES = ("owner", "admin", "employee")


# =========================
# Argument models
# =========================
class GstinLookupArgs(BaseModel):
    gstin: str


class ClientLookupArgs(BaseModel):
    client_name_or_id: str = Field(min_length=1)


class ClientStatsArgs(BaseModel):
    time_period: Literal["week", "month", "quarter", "year", "all"] = "all"


class FeesArgs(BaseModel):
    status: Literal["all", "pending", "paid", "overdue"] = "all"
    client_name: Optional[str] = None


class SearchClientsArgs(BaseModel):
    query: Optional[str] = None
    industry: Optional[str] = None
    status: Literal["active", "inactive", "prospect", "all"] = "all"


class ListClientsArgs(BaseModel):
    skip: int = 0
    limit: int = 10
    status: Literal["active", "inactive", "prospect", "all"] = "all"

    @field_validator("skip")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(value, 0)

    @field_validator("limit")
    @classmethod
    def _bounded(cls, value: int) -> int:
        return min(max(value, 1), 50)


class OnlineStatusArgs(BaseModel):
    include_clients: bool = True
    include_team: bool = True


# =========================
# Scoped query helpers
# =========================
def _money(value: Optional[Decimal]) -> float:
    return float(value or 0)


def _client_conditions(scope: DataScope, principal: Principal) -> list:
    return [
        models.Client.firm_id == principal.firm_id,
        models.Client.is_deleted == False,
        models.Client.id.in_(scope.client_ids),
    ]


async def _scoped_clients(
    scope: DataScope,
    principal: Principal,
    db: AsyncSession,
    *conditions,
    limit: Optional[int] = None,
) -> List[models.Client]:
    if not scope.client_ids:
        return []
    stmt = (
        select(models.Client)
        .where(*_client_conditions(scope, principal), *conditions)
        .order_by(models.Client.created_at.desc(), models.Client.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _scoped_invoices(
    scope: DataScope,
    principal: Principal,
    db: AsyncSession,
    *conditions,
    limit: Optional[int] = None,
) -> List[models.Invoice]:
    if not scope.invoice_ids:
        return []
    stmt = (
        select(models.Invoice)
        .where(
            models.Invoice.firm_id == principal.firm_id,
            models.Invoice.id.in_(scope.invoice_ids),
            *conditions,
        )
        .order_by(models.Invoice.created_at.desc(), models.Invoice.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _scoped_tasks(
    scope: DataScope,
    principal: Principal,
    db: AsyncSession,
    *conditions,
    limit: Optional[int] = None,
) -> List[models.Task]:
    if not scope.task_ids:
        return []
    stmt = (
        select(models.Task)
        .where(
            models.Task.firm_id == principal.firm_id,
            models.Task.id.in_(scope.task_ids),
            *conditions,
        )
        .order_by(models.Task.created_at.desc(), models.Task.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _client_brief(client: models.Client) -> Dict[str, Any]:
    return {
        "id": client.id,
        "name": client.name,
        "email": client.email or "Not provided",
        "phone": client.phone or "Not provided",
        "status": client.status,
        "industry": client.industry or "Not specified",
        "gstin": client.gstin or "Not provided",
        "businessType": client.business_type or "Not specified",
    }


def _invoice_brief(invoice: models.Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "number": invoice.invoice_number,
        "clientName": invoice.client_name,
        "amount": _money(invoice.amount),
        "status": invoice.status,
        "dueDate": as_utc(invoice.due_date).isoformat() if invoice.due_date else None,
    }


# =========================
# Executors
# =========================
async def get_gstin_data(
    args: GstinLookupArgs, principal: Principal, db: AsyncSession
) -> Dict[str, Any]:
    """Decode a GSTIN and find the visible clients registered under it."""
    gstin = args.gstin.strip().upper()
    if not GSTIN_PATTERN.match(gstin):
        raise ToolError(
            "invalid_format",
            "Invalid GSTIN format. Expected 15 characters, e.g. 29ABCDE1234F1Z5",
        )

    scope = await resolve_scope(principal, db)
    clients = await _scoped_clients(scope, principal, db, models.Client.gstin == gstin)

    return {
        "gstin": gstin,
        "stateCode": gstin[:2],
        "state": GST_STATE_CODES.get(gstin[:2], "Unknown"),
        "pan": gstin[2:12],
        "entityNumber": gstin[12],
        "registeredClients": [_client_brief(c) for c in clients],
    }


async def get_client_data(
    args: ClientLookupArgs, principal: Principal, db: AsyncSession
) -> Dict[str, Any]:
    """
    Profile of one client plus its visible tasks and invoices.

    Lookup order: exact id inside the scope, then case-insensitive partial
    name match inside the scope (an exact name wins over a partial one).
    """
    scope = await resolve_scope(principal, db)
    needle = args.client_name_or_id.strip()

    client = None
    if needle.isdigit() and int(needle) in scope.client_ids:
        matches = await _scoped_clients(
            scope, principal, db, models.Client.id == int(needle)
        )
        client = matches[0] if matches else None

    if client is None and needle:
        matches = await _scoped_clients(
            scope,
            principal,
            db,
            models.Client.name.icontains(needle, autoescape=True),
            limit=10,
        )
        exact = [c for c in matches if c.name.lower() == needle.lower()]
        client = (exact or matches or [None])[0]

    if client is None:
        raise ToolError("not_found", f'Client "{needle}" not found')

    tasks = await _scoped_tasks(
        scope, principal, db, models.Task.client_id == client.id, limit=10
    )
    invoices = await _scoped_invoices(
        scope, principal, db, models.Invoice.client_id == client.id, limit=10
    )

    profile = _client_brief(client)
    profile.update(
        {
            "pan": client.pan or "Not provided",
            "address": client.address or "Not provided",
            "notes": client.notes or "No notes",
            "createdAt": as_utc(client.created_at).isoformat() if client.created_at else None,
        }
    )

    return {
        "client": profile,
        "associatedTasks": {
            "total": len(tasks),
            "pending": sum(1 for t in tasks if t.status in ("todo", "inprogress", "review")),
            "completed": sum(1 for t in tasks if t.status == "completed"),
            "recentTasks": [
                {"id": t.id, "title": t.title, "status": t.status} for t in tasks[:5]
            ],
        },
        "associatedInvoices": {
            "total": len(invoices),
            "paid": sum(1 for i in invoices if i.status == "paid"),
            "pending": sum(1 for i in invoices if i.status != "paid"),
            "totalAmount": sum(_money(i.amount) for i in invoices),
            "recentInvoices": [_invoice_brief(i) for i in invoices[:5]],
        },
    }


async def get_client_stats(
    args: ClientStatsArgs, principal: Principal, db: AsyncSession
) -> Dict[str, Any]:
    """
    Client and revenue statistics for a time window.

    Empty buckets and zero denominators come back as 0, never as an error.
    """
    scope = await resolve_scope(principal, db)
    start = window_start(args.time_period)

    all_clients = await _scoped_clients(scope, principal, db)
    if start is not None:
        clients = await _scoped_clients(
            scope, principal, db, models.Client.created_at >= start
        )
        invoices = await _scoped_invoices(
            scope, principal, db, models.Invoice.created_at >= start
        )
    else:
        clients = all_clients
        invoices = await _scoped_invoices(scope, principal, db)

    industry_breakdown: Dict[str, int] = {}
    for c in clients:
        industry = c.industry or "Uncategorized"
        industry_breakdown[industry] = industry_breakdown.get(industry, 0) + 1

    revenue_by_client: Dict[str, float] = {}
    for inv in invoices:
        if inv.status == "paid" and inv.client_name:
            revenue_by_client[inv.client_name] = (
                revenue_by_client.get(inv.client_name, 0.0) + _money(inv.amount)
            )

    top_clients = sorted(revenue_by_client.items(), key=lambda kv: kv[1], reverse=True)[:10]
    total_revenue = sum(revenue_by_client.values())

    return {
        "timePeriod": args.time_period,
        "totalClients": len(all_clients),
        "newClients": len(clients),
        "activeClients": sum(1 for c in clients if c.status == "active"),
        "inactiveClients": sum(1 for c in clients if c.status == "inactive"),
        "prospectClients": sum(1 for c in clients if c.status == "prospect"),
        "industryBreakdown": industry_breakdown,
        "invoiceCount": len(invoices),
        "paidInvoiceCount": sum(1 for i in invoices if i.status == "paid"),
        "topClientsByRevenue": [{"name": n, "revenue": r} for n, r in top_clients],
        "totalRevenue": total_revenue,
        "averageRevenuePerClient": (
            round(total_revenue / len(revenue_by_client), 2) if revenue_by_client else 0
        ),
    }


async def get_fees_data(
    args: FeesArgs, principal: Principal, db: AsyncSession
) -> Dict[str, Any]:
    """Fee/revenue summary over the visible invoices."""
    scope = await resolve_scope(principal, db)

    conditions = []
    if args.status == "pending":
        conditions.append(models.Invoice.status.in_(PENDING_INVOICE_STATUSES))
    elif args.status != "all":
        conditions.append(models.Invoice.status == args.status)

    invoices: List[models.Invoice] = []
    client_filter = (args.client_name or "").strip()
    if client_filter:
        matching = await _scoped_clients(
            scope,
            principal,
            db,
            models.Client.name.icontains(client_filter, autoescape=True),
        )
        if matching:
            conditions.append(models.Invoice.client_id.in_([c.id for c in matching]))
            invoices = await _scoped_invoices(scope, principal, db, *conditions)
    else:
        invoices = await _scoped_invoices(scope, principal, db, *conditions)

    paid = [i for i in invoices if i.status == "paid"]
    pending = [i for i in invoices if i.status in PENDING_INVOICE_STATUSES]
    overdue = [i for i in invoices if i.status == "overdue"]

    return {
        "filter": {"status": args.status, "clientName": client_filter or "all"},
        "summary": {
            "totalInvoices": len(invoices),
            "totalAmount": sum(_money(i.amount) for i in invoices),
            "paidCount": len(paid),
            "paidAmount": sum(_money(i.amount) for i in paid),
            "pendingCount": len(pending),
            "pendingAmount": sum(_money(i.amount) for i in pending),
            "overdueCount": len(overdue),
            "overdueAmount": sum(_money(i.amount) for i in overdue),
            "collectionRate": round(len(paid) / len(invoices) * 100) if invoices else 0,
        },
        "recentInvoices": [_invoice_brief(i) for i in invoices[:10]],
    }


async def search_clients(
    args: SearchClientsArgs, principal: Principal, db: AsyncSession
) -> Dict[str, Any]:
    scope = await resolve_scope(principal, db)

    conditions = []
    if args.query:
        conditions.append(
            or_(
                models.Client.name.icontains(args.query, autoescape=True),
                models.Client.email.icontains(args.query, autoescape=True),
                models.Client.phone.icontains(args.query, autoescape=True),
                models.Client.gstin.icontains(args.query, autoescape=True),
            )
        )
    if args.industry:
        conditions.append(models.Client.industry.icontains(args.industry, autoescape=True))
    if args.status != "all":
        conditions.append(models.Client.status == args.status)

    clients = await _scoped_clients(scope, principal, db, *conditions, limit=50)

    return {
        "matchCount": len(clients),
        "searchCriteria": {
            "query": args.query or "none",
            "industry": args.industry or "all",
            "status": args.status,
        },
        "clients": [_client_brief(c) for c in clients],
    }


async def list_clients(
    args: ListClientsArgs, principal: Principal, db: AsyncSession
) -> Dict[str, Any]:
    """
    One page of visible clients, newest first.

    totalInScope counts the principal's scope, not the firm, and
    hasMore is true iff skip + returnedCount < totalInScope.
    """
    scope = await resolve_scope(principal, db)

    clients: List[models.Client] = []
    total = 0
    if scope.client_ids:
        conditions = _client_conditions(scope, principal)
        if args.status != "all":
            conditions.append(models.Client.status == args.status)

        total = await db.scalar(
            select(func.count()).select_from(models.Client).where(*conditions)
        ) or 0
        result = await db.execute(
            select(models.Client)
            .where(*conditions)
            .order_by(models.Client.created_at.desc(), models.Client.id.desc())
            .offset(args.skip)
            .limit(args.limit)
        )
        clients = list(result.scalars().all())

    returned = len(clients)
    items = []
    for idx, client in enumerate(clients):
        item = _client_brief(client)
        item["number"] = args.skip + idx + 1
        items.append(item)

    return {
        "items": items,
        "totalInScope": total,
        "returnedCount": returned,
        "skip": args.skip,
        "limit": args.limit,
        "hasMore": args.skip + returned < total,
        "nextSkip": args.skip + returned,
    }


async def get_team_online_status(
    args: OnlineStatusArgs, principal: Principal, db: AsyncSession
) -> Dict[str, Any]:
    """Firm users active in the last few minutes."""
    roles = []
    if args.include_team:
        roles.extend(TEAM_ROLES)
    if args.include_clients:
        roles.append("client")
    # Portal users never learn who is online
    if principal.role not in TEAM_ROLES:
        roles = []

    now = utc_now()
    cutoff = now - timedelta(minutes=ONLINE_WINDOW_MINUTES)

    users: List[models.User] = []
    if roles:
        result = await db.execute(
            select(models.User)
            .where(
                models.User.firm_id == principal.firm_id,
                models.User.is_active == True,
                models.User.role.in_(roles),
                models.User.last_active >= cutoff,
            )
            .order_by(models.User.last_active.desc())
        )
        users = list(result.scalars().all())

    return {
        "onlineCount": len(users),
        "onlineUsers": [
            {
                "name": u.full_name,
                "role": u.role,
                "department": u.department,
                "minutesAgo": int((now - as_utc(u.last_active)).total_seconds() // 60),
            }
            for u in users
        ],
        "criteria": f"Active in the last {ONLINE_WINDOW_MINUTES} minutes",
    }


# =========================
# Registry
# =========================
ToolHandler = Callable[[Any, Principal, AsyncSession], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameters: Dict[str, Any]
    args_model: Type[BaseModel]
    handler: ToolHandler

    @property
    def schema(self) -> FunctionSchema:
        return FunctionSchema(
            name=self.name, description=self.description, parameters=self.parameters
        )


_DESCRIPTORS = (
    ToolDescriptor(
        name="get_gstin_data",
        description=(
            "Decode a GSTIN (GST Identification Number): state, PAN and the firm's "
            "clients registered under it. Use for GST/GSTIN lookups."
        ),
        parameters={
            "type": "object",
            "properties": {
                "gstin": {
                    "type": "string",
                    "description": "The 15-character GSTIN, e.g. 29ABCDE1234F1Z5",
                }
            },
            "required": ["gstin"],
        },
        args_model=GstinLookupArgs,
        handler=get_gstin_data,
    ),
    ToolDescriptor(
        name="get_client_data",
        description=(
            "Detailed information about one client by name (partial match) or id: "
            "profile, contact details, related tasks and invoices."
        ),
        parameters={
            "type": "object",
            "properties": {
                "client_name_or_id": {
                    "type": "string",
                    "description": "Client name (partial match supported) or numeric client id",
                }
            },
            "required": ["client_name_or_id"],
        },
        args_model=ClientLookupArgs,
        handler=get_client_data,
    ),
    ToolDescriptor(
        name="get_client_stats",
        description=(
            "Client statistics: totals, active/inactive breakdown, industries, "
            "top clients by revenue, for a time period."
        ),
        parameters={
            "type": "object",
            "properties": {
                "time_period": {
                    "type": "string",
                    "enum": ["week", "month", "quarter", "year", "all"],
                    "description": "Time period for the statistics (default: all)",
                }
            },
        },
        args_model=ClientStatsArgs,
        handler=get_client_stats,
    ),
    ToolDescriptor(
        name="get_fees_data",
        description=(
            "Fee and revenue information: pending/collected fees, outstanding and "
            "overdue invoices, collection rate."
        ),
        parameters={
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": ["all", "pending", "paid", "overdue"],
                    "description": "Filter invoices by payment status (default: all)",
                },
                "client_name": {
                    "type": "string",
                    "description": "Optional: only fees of clients matching this name",
                },
            },
        },
        args_model=FeesArgs,
        handler=get_fees_data,
    ),
    ToolDescriptor(
        name="search_clients",
        description=(
            "Search clients by name, email, phone or GSTIN, optionally filtered by "
            "industry and status."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Text searched across name, email, phone and GSTIN",
                },
                "industry": {"type": "string", "description": "Filter by industry"},
                "status": {
                    "type": "string",
                    "enum": ["active", "inactive", "prospect", "all"],
                    "description": "Filter by client status",
                },
            },
        },
        args_model=SearchClientsArgs,
        handler=search_clients,
    ),
    ToolDescriptor(
        name="list_clients",
        description=(
            'List clients page by page. Use for "list clients", "next 6 clients", '
            '"clients 10 to 20". Returns items, totalInScope and hasMore.'
        ),
        parameters={
            "type": "object",
            "properties": {
                "skip": {
                    "type": "integer",
                    "description": "Clients to skip (default 0). Use nextSkip from the previous page.",
                },
                "limit": {
                    "type": "integer",
                    "description": "Clients to return, 1-50 (default 10)",
                },
                "status": {
                    "type": "string",
                    "enum": ["active", "inactive", "prospect", "all"],
                    "description": "Filter by client status (default all)",
                },
            },
        },
        args_model=ListClientsArgs,
        handler=list_clients,
    ),
    ToolDescriptor(
        name="get_team_online_status",
        description="Which team members or client users are online right now.",
        parameters={
            "type": "object",
            "properties": {
                "include_clients": {
                    "type": "boolean",
                    "description": "Include client users (default true)",
                },
                "include_team": {
                    "type": "boolean",
                    "description": "Include owners, admins and employees (default true)",
                },
            },
        },
        args_model=OnlineStatusArgs,
        handler=get_team_online_status,
    ),
)

# Built once at import, read-only afterwards
TOOL_REGISTRY: Mapping[str, ToolDescriptor] = MappingProxyType(
    {descriptor.name: descriptor for descriptor in _DESCRIPTORS}
)


def tool_catalog(registry: Mapping[str, ToolDescriptor] = TOOL_REGISTRY) -> List[FunctionSchema]:
    return [descriptor.schema for descriptor in registry.values()]


async def execute_tool(
    name: str,
    arguments: Optional[Dict[str, Any]],
    principal: Principal,
    db: AsyncSession,
    registry: Mapping[str, ToolDescriptor] = TOOL_REGISTRY,
) -> ToolInvocationResult:
    """
    Run one tool on behalf of a principal.

    Never raises for tool-level problems: unknown tools, bad arguments, soft
    failures and unexpected exceptions all become an error result that is
    handed back to the model.
    """
    arguments = dict(arguments or {})
    descriptor = registry.get(name)
    if descriptor is None:
        logger.warning(f"[User {principal.id}] Model requested unknown tool {name}")
        return ToolInvocationResult(
            tool_name=name,
            arguments=arguments,
            error_kind="unknown_tool",
            error_message=f"Tool {name} not found",
        )

    try:
        parsed = descriptor.args_model.model_validate(arguments)
    except ValidationError as error:
        return ToolInvocationResult(
            tool_name=name,
            arguments=arguments,
            error_kind="invalid_arguments",
            error_message=str(error),
        )

    try:
        output = await descriptor.handler(parsed, principal, db)
    except ToolError as error:
        logger.info(f"[User {principal.id}] {name} -> {error.kind}: {error.message}")
        return ToolInvocationResult(
            tool_name=name,
            arguments=arguments,
            error_kind=error.kind,
            error_message=error.message,
        )
    except Exception as error:
        logger.exception(f"[User {principal.id}] {name} failed")
        return ToolInvocationResult(
            tool_name=name,
            arguments=arguments,
            error_kind="tool_execution_failed",
            error_message=f"Tool execution failed: {error}",
        )

    logger.info(f"[User {principal.id}] {name} -> success")
    return ToolInvocationResult(tool_name=name, arguments=arguments, output=output)
