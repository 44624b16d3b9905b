import pytest
from httpx import AsyncClient

from conftest import auth_headers


@pytest.mark.asyncio
async def test_login_success(client: AsyncClient, employee):
    """Login returns 200 with access_token"""
    payload = {"email": employee.email, "password": "password123"}
    response = await client.post("/profile/login", json=payload)

    assert response.status_code == 200
    data = response.json()
    assert "access_token" in data
    assert isinstance(data["access_token"], str)
    assert data["token_type"] == "bearer"


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, employee):
    """Wrong password and unknown email answer the same 401"""
    response = await client.post(
        "/profile/login", json={"email": employee.email, "password": "nope-nope"}
    )
    assert response.status_code == 401

    response = await client.post(
        "/profile/login", json={"email": "ghost@example.com", "password": "password123"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"


@pytest.mark.asyncio
async def test_login_invalid_data(client: AsyncClient):
    """Invalid payload returns 422 Unprocessable Entity"""
    response = await client.post("/profile/login", json={"email": "not-an-email"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_me_returns_current_user(client: AsyncClient, employee):
    response = await client.get("/profile/me", headers=auth_headers(employee))

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == employee.id
    assert data["role"] == "employee"
    assert data["firm_id"] == employee.firm_id
    assert "password" not in data


@pytest.mark.asyncio
async def test_me_requires_token(client: AsyncClient):
    response = await client.get("/profile/me")
    assert response.status_code == 401

    response = await client.get(
        "/profile/me", headers={"Authorization": "Bearer not-a-real-token"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_inactive_user_is_rejected(client: AsyncClient, seed, firm):
    user = await seed.user(firm, role="employee", is_active=False)

    response = await client.get("/profile/me", headers=auth_headers(user))
    assert response.status_code == 401
