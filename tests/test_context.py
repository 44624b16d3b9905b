import pytest

from conftest import principal_of
from firmassist.core import models
from firmassist.ai_feature.context import (
    ACKNOWLEDGMENT,
    ScopedData,
    build_snapshot,
    compose_context,
)
from firmassist.ai_feature.scope import DataScope, Principal, VisibilityLevel, resolve_scope
from firmassist.ai_feature.turns import ContextTurn, ModelTurn, TurnRole


def _clients(count):
    return [
        models.Client(id=i, name=f"Client {i}", status="active", industry="Retail")
        for i in range(1, count + 1)
    ]


def test_listings_are_capped_with_a_count_suffix():
    principal = Principal(id=1, role="owner", firm_id=1, full_name="Anita")
    scope = DataScope(visibility_level=VisibilityLevel.FULL)
    data = ScopedData(clients=_clients(25), tasks=[], invoices=[])

    snapshot = build_snapshot(principal, scope, data, cap=20)
    clients_section = next(s for s in snapshot.sections if s.title == "CLIENTS")

    assert len(clients_section.lines) == 20
    assert clients_section.remainder == 5
    text = snapshot.render()
    assert "... and 5 more" in text
    assert "Client 21" not in text


def test_restricted_snapshot_says_it_is_a_subset():
    principal = Principal(id=2, role="employee", firm_id=1, full_name="Ravi")
    scope = DataScope(visibility_level=VisibilityLevel.RESTRICTED, client_ids=frozenset({1, 2}))
    data = ScopedData(clients=_clients(2), tasks=[], invoices=[])

    text = build_snapshot(principal, scope, data).render()

    assert "viewing a subset" in text
    assert "TEAM:" not in text
    assert "Revenue collected" not in text


def test_full_snapshot_adds_revenue_and_team():
    principal = Principal(id=1, role="admin", firm_id=1, full_name="Anita")
    scope = DataScope(visibility_level=VisibilityLevel.FULL)
    invoices = [
        models.Invoice(id=1, invoice_number="INV-1", client_name="A", amount=1500, status="paid"),
        models.Invoice(id=2, invoice_number="INV-2", client_name="B", amount=500, status="sent"),
    ]
    team = [models.User(id=3, email="ravi@example.com", full_name="Ravi", role="employee")]
    data = ScopedData(clients=[], tasks=[], invoices=invoices, team=team)

    text = build_snapshot(principal, scope, data).render()

    assert "Revenue collected: 1500.00" in text
    assert "Outstanding: 500.00" in text
    assert "TEAM:" in text
    assert "Ravi (employee)" in text
    assert "viewing a subset" not in text


def test_empty_restricted_snapshot_is_still_valid():
    principal = Principal(id=2, role="employee", firm_id=1)
    snapshot = build_snapshot(principal, DataScope.nothing_visible(), ScopedData([], [], []))

    text = snapshot.render()
    assert "Clients: 0" in text
    assert "Nothing is visible" in text


@pytest.mark.asyncio
async def test_compose_context_returns_snapshot_and_acknowledgment(db_session, seed, firm, employee):
    client = await seed.client(firm, name="Kapoor Steel")
    await seed.task(firm, client_id=client.id, assigned_to=employee.id, title="File GSTR-3B")
    await seed.client(firm, name="Not Mine Pvt Ltd")

    principal = principal_of(employee)
    scope = await resolve_scope(principal, db_session)
    turns = await compose_context(principal, scope, db_session)

    assert [type(t) for t in turns] == [ContextTurn, ModelTurn]
    assert turns[0].role == TurnRole.CONTEXT
    assert "Kapoor Steel" in turns[0].text
    assert "File GSTR-3B" in turns[0].text
    assert "Not Mine Pvt Ltd" not in turns[0].text
    assert turns[1].text == ACKNOWLEDGMENT


def test_zero_cap_lists_nothing():
    principal = Principal(id=1, role="owner", firm_id=1, full_name="Anita")
    scope = DataScope(visibility_level=VisibilityLevel.FULL)
    data = ScopedData(clients=_clients(3), tasks=[], invoices=[])

    snapshot = build_snapshot(principal, scope, data, cap=0)
    clients_section = next(s for s in snapshot.sections if s.title == "CLIENTS")

    assert clients_section.lines == []
    assert clients_section.remainder == 3
