"""Tests for the REST client and the HTTP ledger and rating collaborators."""

import json
from decimal import Decimal

import httpx
import pytest

from consultline.errors import ConsultError, LedgerUnavailable
from consultline.ledger import HttpBalanceService, HttpRatingService
from consultline.models.session import Rating
from consultline.transport.http import HttpClient


def client_for(handler) -> HttpClient:
    return HttpClient(base_url="https://api.test/api", token="tok", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_balance_unwraps_data():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"balance": "42.50"}})

    http = client_for(handler)
    balance = await HttpBalanceService(http).get_balance("cust-1")
    await http.close()

    assert balance == Decimal("42.50")
    assert seen[0].url.path == "/api/v1/wallet/cust-1/balance"
    assert seen[0].headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_debit_sends_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"balance": 75})

    http = client_for(handler)
    new_balance = await HttpBalanceService(http).debit("cust-1", Decimal("25.00"), idempotency_key="s-1")
    await http.close()

    assert new_balance == Decimal("75")
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["Idempotency-Key"] == "s-1"
    assert json.loads(request.content) == {"amount": "25.00", "idempotencyKey": "s-1", "reason": "consultation"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [500, 503, 429])
async def test_server_errors_are_outages(status):
    http = client_for(lambda request: httpx.Response(status, text="down"))
    with pytest.raises(LedgerUnavailable):
        await HttpBalanceService(http).debit("cust-1", Decimal("1"), idempotency_key="s-1")
    await http.close()


@pytest.mark.asyncio
async def test_transport_error_is_outage():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    http = client_for(handler)
    with pytest.raises(LedgerUnavailable):
        await HttpBalanceService(http).get_balance("cust-1")
    await http.close()


@pytest.mark.asyncio
async def test_client_errors_are_not_outages():
    http = client_for(lambda request: httpx.Response(404, text="no wallet"))
    with pytest.raises(ConsultError) as exc:
        await HttpBalanceService(http).get_balance("ghost")
    await http.close()

    assert not isinstance(exc.value, LedgerUnavailable)
    assert exc.value.code == "http_error"
    assert exc.value.details == {"status": 404}


@pytest.mark.asyncio
async def test_unreadable_balance():
    http = client_for(lambda request: httpx.Response(200, json={"balance": "lots"}))
    with pytest.raises(LedgerUnavailable):
        await HttpBalanceService(http).get_balance("cust-1")
    await http.close()


@pytest.mark.asyncio
async def test_rating_posted():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    http = client_for(handler)
    await HttpRatingService(http).submit(Rating(session_id="s-1", score=4, comment="good", tags=["calm"]))
    await http.close()

    assert seen[0].url.path == "/api/v1/sessions/s-1/rating"
    assert json.loads(seen[0].content) == {"rating": 4, "review": "good", "tags": ["calm"]}


@pytest.mark.asyncio
async def test_non_json_body_is_invalid_response():
    http = client_for(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    with pytest.raises(ConsultError) as exc:
        await http.get("/v1/wallet/cust-1/balance")
    await http.close()

    assert exc.value.code == "invalid_response"
    assert exc.value.details == {"status": 200}


@pytest.mark.asyncio
async def test_non_json_debit_is_outage():
    http = client_for(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    with pytest.raises(LedgerUnavailable):
        await HttpBalanceService(http).debit("cust-1", Decimal("1"), idempotency_key="s-1")
    await http.close()
