import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from firmassist.core import models
from firmassist.core.schemas import UsageWindow
from firmassist.ai_feature.time_utils import as_utc, utc_now


# -----------------------------------------------------------------------------
# USAGE MODULE
# Purpose: the audit log of assistant runs and the analytics read off it.
# Every run inserts one row before the first model call and finalizes that
# same row exactly once, whatever the outcome.
# -----------------------------------------------------------------------------


logger = logging.getLogger(__name__)

WINDOW_DAYS = {
    UsageWindow.DAYS_7: 7,
    UsageWindow.DAYS_30: 30,
    UsageWindow.DAYS_90: 90,
    UsageWindow.YEAR: 365,
}


@dataclass
class UsageRecord:
    principal_id: int
    firm_id: int
    prompt_excerpt: str
    query_type: str = "chat"
    continuity: bool = True
    model: Optional[str] = None
    endpoint: Optional[str] = None


@dataclass
class UsagePatch:
    """Terminal write of a run."""

    status: str  # success / error / timeout
    latency_ms: int
    response_excerpt: str = ""
    tools_invoked: List[Dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None
    cancelled: bool = False
    iteration_exhausted: bool = False


def excerpt(text: Optional[str], length: int) -> str:
    return (text or "")[:length]


class UsageRecorder(ABC):
    @abstractmethod
    async def create(self, record: UsageRecord) -> int: ...

    @abstractmethod
    async def update(self, record_id: int, patch: UsagePatch) -> None: ...


class SqlUsageRecorder(UsageRecorder):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(self, record: UsageRecord) -> int:
        async with self.session_factory() as db:
            row = models.AIUsage(
                user_id=record.principal_id,
                firm_id=record.firm_id,
                prompt_excerpt=record.prompt_excerpt,
                query_type=record.query_type,
                continuity=record.continuity,
                model=record.model,
                endpoint=record.endpoint,
                tools_invoked=[],
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return row.id

    async def update(self, record_id: int, patch: UsagePatch) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(models.AIUsage)
                .where(models.AIUsage.id == record_id)
                .values(
                    status=patch.status,
                    latency_ms=patch.latency_ms,
                    response_excerpt=patch.response_excerpt,
                    tools_invoked=patch.tools_invoked,
                    error_message=patch.error_message,
                    cancelled=patch.cancelled,
                    iteration_exhausted=patch.iteration_exhausted,
                    finalized_at=utc_now(),
                )
            )
            await db.commit()
        logger.info(f"Usage record {record_id} finalized as {patch.status}")


async def build_usage_report(
    firm_id: int, window: UsageWindow, db: AsyncSession
) -> Dict[str, Any]:
    """
    Aggregate the firm's assistant usage over a window.

    Args:
        firm_id: Firm to report on
        window: 7days / 30days / 90days / year
        db: Database session

    Returns:
        Dict shaped like schemas.UsageReportResponse

    Example:
        {
            "summary": {"total_queries": 12, "success_rate": 91.67, ...},
            "top_queries": [{"query": "list my clients", "count": 4}],
            "usage_by_role": [{"role": "employee", "count": 9}],
            "top_tools": [{"name": "list_clients", "count": 6}],
            ...
        }
    """
    end_date = utc_now()
    start_date = end_date - timedelta(days=WINDOW_DAYS[window])

    result = await db.execute(
        select(models.AIUsage, models.User.role, models.User.full_name, models.User.email)
        .join(models.User, models.User.id == models.AIUsage.user_id)
        .where(
            models.AIUsage.firm_id == firm_id,
            models.AIUsage.created_at >= start_date,
        )
        .order_by(models.AIUsage.created_at.asc())
    )
    rows = result.all()

    records = [row[0] for row in rows]
    total = len(records)
    successes = [r for r in records if r.status == "success"]
    latencies = [r.latency_ms for r in records if r.latency_ms is not None]

    summary = {
        "total_queries": total,
        "total_responses": len(successes),
        "failed_queries": sum(1 for r in records if r.status == "error"),
        "timed_out_queries": sum(1 for r in records if r.status == "timeout"),
        "cancelled_queries": sum(1 for r in records if r.cancelled),
        "iteration_exhausted_queries": sum(1 for r in records if r.iteration_exhausted),
        "success_rate": round(len(successes) / total * 100, 2) if total else 0,
        "average_response_time": round(sum(latencies) / len(latencies)) if latencies else 0,
        "time_range": window,
        "start_date": start_date,
        "end_date": end_date,
    }

    query_counter = Counter(
        r.prompt_excerpt.strip().lower()[:100] for r in records if r.prompt_excerpt
    )
    role_counter = Counter(row.role for row in rows)
    day_counter = Counter(as_utc(r.created_at).date().isoformat() for r in records)
    user_counter = Counter((row[0].user_id, row.full_name or row.email) for row in rows)
    type_counter = Counter(r.query_type for r in records)
    tool_counter = Counter(
        tool.get("name") for r in records for tool in (r.tools_invoked or []) if tool.get("name")
    )

    return {
        "summary": summary,
        "top_queries": [
            {"query": query, "count": count}
            for query, count in query_counter.most_common(10)
        ],
        "usage_by_role": [
            {"role": role, "count": count} for role, count in role_counter.most_common()
        ],
        "usage_over_time": [
            {"date": day, "count": day_counter[day]} for day in sorted(day_counter)
        ],
        "top_users": [
            {"user_id": user_id, "name": name, "count": count}
            for (user_id, name), count in user_counter.most_common(10)
        ],
        "query_types": dict(type_counter),
        "top_tools": [
            {"name": name, "count": count} for name, count in tool_counter.most_common(10)
        ],
    }
