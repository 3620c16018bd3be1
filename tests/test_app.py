"""
tests/test_app.py
App-level behaviour: health, request ids, and the shape of auth errors.
"""

import uuid

import pytest
from httpx import AsyncClient

from shared.models.models import UserRole
from shared.utils.security import create_access_token
from tests.factories import auth_headers


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["redis"] == "disabled"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert "X-Process-Time" in response.headers


@pytest.mark.asyncio
async def test_error_body_carries_request_id(client: AsyncClient):
    response = await client.get("/wallet", headers={"X-Request-ID": "req-456"})
    assert response.status_code == 401
    assert response.json() == {
        "code": "unauthorized",
        "detail": "Authentication required",
        "request_id": "req-456",
    }


@pytest.mark.asyncio
async def test_token_for_unknown_user(client: AsyncClient):
    token, _ = create_access_token(str(uuid.uuid4()), UserRole.CUSTOMER.value, "ghost@example.com")
    response = await client.get("/wallet", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_token_with_wrong_role(client: AsyncClient, customer):
    token, _ = create_access_token(str(customer.id), UserRole.ADMIN.value, customer.email)
    response = await client.get("/admin/overview", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_inactive_user_is_forbidden(client: AsyncClient, db, customer):
    customer.is_active = False
    db.add(customer)
    await db.commit()
    response = await client.get("/wallet", headers=auth_headers(customer))
    assert response.status_code == 403
