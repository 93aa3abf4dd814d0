from __future__ import annotations

from pathlib import Path
from typing import Any

import currency.service as currency_service
import pytest
from currency.main import create_app
from currency.storage import InMemoryKeyValueStore
from fastapi.testclient import TestClient

pytestmark = pytest.mark.integration


class StubResponse:
    def __init__(self, status_code: int, payload: dict[str, Any]) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> dict[str, Any]:
        return self._payload


class StubAsyncClient:
    def __init__(self, response: StubResponse, capture: list[str]) -> None:
        self.response = response
        self.capture = capture

    async def __aenter__(self) -> StubAsyncClient:
        return self

    async def __aexit__(self, *_: object) -> bool:
        return False

    async def get(self, url: str) -> StubResponse:
        self.capture.append(url)
        return self.response


@pytest.fixture
def capture(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    urls: list[str] = []
    response = StubResponse(
        200,
        {"result": "success", "conversion_rates": {"USD": 1, "EUR": 0.9, "GBP": 0.8}},
    )
    monkeypatch.setattr(
        currency_service.httpx,
        "AsyncClient",
        lambda *_, **__: StubAsyncClient(response=response, capture=urls),
    )
    return urls


@pytest.fixture
def client(capture: list[str]):
    app = create_app(store=InMemoryKeyValueStore(), api_key="test-key")
    with TestClient(app) as test_client:
        yield test_client


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "currency"}


def test_list_currencies_includes_symbols(client: TestClient) -> None:
    response = client.get("/currencies")

    body = response.json()
    assert response.status_code == 200
    assert len(body) == 15
    assert body[0] == {"code": "USD", "name": "US Dollar", "symbol": "$"}
    assert {"code": "UYU", "name": "Uruguayan Peso", "symbol": "$U"} in body


def test_rates_are_fetched_once_and_cached(client: TestClient, capture: list[str]) -> None:
    first = client.get("/rates/usd")
    second = client.get("/rates/USD")

    assert first.status_code == 200
    assert first.json()["base"] == "USD"
    assert first.json()["rates"] == {"USD": 1.0, "EUR": 0.9, "GBP": 0.8}
    assert second.json()["rates"] == first.json()["rates"]
    assert len(capture) == 1
    assert capture[0].endswith("/test-key/latest/USD")


def test_convert_returns_formatted_amount(client: TestClient) -> None:
    response = client.get(
        "/convert",
        params={"amount": 25000, "from_currency": "USD", "to_currency": "EUR"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "amount": 25000.0,
        "from_currency": "USD",
        "to_currency": "EUR",
        "converted": 22500.0,
        "formatted": "€22.500",
    }


def test_convert_to_unknown_currency_is_not_found(client: TestClient) -> None:
    response = client.get(
        "/convert",
        params={"amount": 100, "from_currency": "USD", "to_currency": "ZZZ"},
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "Exchange rate unavailable for ZZZ"


@pytest.mark.parametrize("amount", ["nan", "inf", "-inf"])
def test_convert_rejects_non_finite_amount(
    client: TestClient, capture: list[str], amount: str
) -> None:
    response = client.get(
        "/convert",
        params={"amount": amount, "from_currency": "USD", "to_currency": "EUR"},
    )

    assert response.status_code == 422
    assert capture == []


def test_request_id_is_generated_or_preserved(client: TestClient) -> None:
    generated = client.get("/health")
    preserved = client.get("/health", headers={"x-request-id": "manual-request-id"})

    assert generated.headers.get("x-request-id")
    assert preserved.headers.get("x-request-id") == "manual-request-id"


def test_sqlite_backed_app_persists_rates_between_instances(
    tmp_path: Path, capture: list[str]
) -> None:
    database_path = str(tmp_path / "currency.sqlite3")

    with TestClient(create_app(database_path=database_path, api_key="test-key")) as client:
        assert client.get("/rates/USD").status_code == 200
    with TestClient(create_app(database_path=database_path, api_key="test-key")) as client:
        response = client.get("/rates/USD")

    assert response.json()["rates"]["EUR"] == 0.9
    assert len(capture) == 1
