"""API test fixtures: the app wired to an in-memory database and the stub gateway."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from firearms_compliance.api.app import create_app
from firearms_compliance.runtime import Runtime, build_runtime

from helpers import ACTIVE_FFL, make_settings


@pytest.fixture
def runtime(engine, gateway, crm, ffl_directory):
    """Runtime sharing the test engine; the schema already exists."""
    runtime = build_runtime(
        make_settings(),
        engine=engine,
        gateway=gateway,
        crm_client=crm,
        ffl_directory=ffl_directory,
        sleep=lambda seconds: None,
    )
    # ASGITransport does not run the lifespan, so seed the policy here.
    runtime.config_store.bootstrap()
    yield runtime
    runtime.emitter.shutdown()


@pytest.fixture
def app(runtime: Runtime) -> FastAPI:
    return create_app(runtime)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def checkout_payload():
    """Build a checkout body; one firearm by default."""

    def _payload(customer_id="cust-api", firearms=1, accessories=0, card_number="4111111111111111"):
        lines = []
        if firearms:
            lines.append(
                {"sku": "FA-100", "quantity": firearms, "unit_price": "499.99", "is_firearm": True}
            )
        if accessories:
            lines.append(
                {"sku": "AC-200", "quantity": accessories, "unit_price": "29.99", "is_firearm": False}
            )
        return {
            "customer_id": customer_id,
            "lines": lines,
            "payment": {"card_number": card_number, "expiration_date": "12/30", "cvv": "123"},
        }

    return _payload


@pytest_asyncio.fixture
async def held_order(client: AsyncClient, checkout_payload) -> dict:
    """An order on FFL hold, created through the API."""
    response = await client.post("/api/v1/checkout", json=checkout_payload())
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "hold_ffl"
    return data


@pytest.fixture
def staff_headers() -> dict[str, str]:
    return {"X-Staff-ID": "staff-42"}


@pytest.fixture
def active_ffl() -> str:
    return ACTIVE_FFL
