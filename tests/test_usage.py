import pytest
from sqlalchemy import select

from firmassist.core import models
from firmassist.core.schemas import UsageWindow
from firmassist.ai_feature.usage import (
    SqlUsageRecorder,
    UsagePatch,
    UsageRecord,
    build_usage_report,
)


@pytest.mark.asyncio
async def test_record_is_created_open_then_finalized(session_factory, db_session, owner):
    recorder = SqlUsageRecorder(session_factory)

    record_id = await recorder.create(
        UsageRecord(
            principal_id=owner.id,
            firm_id=owner.firm_id,
            prompt_excerpt="list clients",
            model="stub-model",
            endpoint="/ai/chat",
        )
    )
    row = await db_session.scalar(select(models.AIUsage).where(models.AIUsage.id == record_id))
    assert row.status is None
    assert row.finalized_at is None

    await recorder.update(
        record_id,
        UsagePatch(
            status="success",
            latency_ms=1234,
            response_excerpt="You have 3 clients.",
            tools_invoked=[{"name": "list_clients", "arguments": {}, "status": "success"}],
        ),
    )
    await db_session.refresh(row)
    assert row.status == "success"
    assert row.latency_ms == 1234
    assert row.tools_invoked[0]["name"] == "list_clients"
    assert row.finalized_at is not None


@pytest.mark.asyncio
async def test_report_breaks_down_outcomes(session_factory, db_session, seed, firm, owner, employee):
    recorder = SqlUsageRecorder(session_factory)
    outcomes = [
        (employee, UsagePatch(status="success", latency_ms=100, tools_invoked=[{"name": "list_clients"}])),
        (employee, UsagePatch(status="timeout", latency_ms=300)),
        (owner, UsagePatch(status="error", latency_ms=200, cancelled=True)),
        (owner, UsagePatch(status="success", latency_ms=400, iteration_exhausted=True,
                           tools_invoked=[{"name": "list_clients"}, {"name": "get_fees_data"}])),
    ]
    for user, patch in outcomes:
        record_id = await recorder.create(
            UsageRecord(principal_id=user.id, firm_id=firm.id, prompt_excerpt="List Clients")
        )
        await recorder.update(record_id, patch)

    other_firm = await seed.firm("Elsewhere LLP")
    outsider = await seed.user(other_firm, role="owner")
    await recorder.create(
        UsageRecord(principal_id=outsider.id, firm_id=other_firm.id, prompt_excerpt="x")
    )

    report = await build_usage_report(firm.id, UsageWindow.DAYS_30, db_session)
    summary = report["summary"]

    assert summary["total_queries"] == 4
    assert summary["total_responses"] == 2
    assert summary["failed_queries"] == 1
    assert summary["timed_out_queries"] == 1
    assert summary["cancelled_queries"] == 1
    assert summary["iteration_exhausted_queries"] == 1
    assert summary["success_rate"] == 50
    assert summary["average_response_time"] == 250
    assert report["top_queries"] == [{"query": "list clients", "count": 4}]
    assert report["top_tools"][0] == {"name": "list_clients", "count": 2}
    assert sorted((r["role"], r["count"]) for r in report["usage_by_role"]) == [
        ("employee", 2),
        ("owner", 2),
    ]
