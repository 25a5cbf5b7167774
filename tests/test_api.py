from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import main
from stores import FlatStore, MemoryKeyValueEngine


@pytest.fixture
def client():
    store = FlatStore(MemoryKeyValueEngine())
    main.app.dependency_overrides[main.get_store] = lambda: store
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _sign_up(client) -> dict:
    response = client.post(
        "/auth/signup",
        json={"email": "api@example.com", "password": "secret-pass", "full_name": "Api"},
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _budget_url(client, headers, month: int = 3, year: int = 2025) -> str:
    [profile] = client.get("/profiles", headers=headers).json()
    return f"/budgets/{profile['id']}/{year}/{month}"


def test_requests_without_token_are_rejected(client) -> None:
    assert client.get("/profiles").status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/profiles", headers=bad).status_code == 401


def test_sign_in_returns_a_working_token(client) -> None:
    _sign_up(client)

    response = client.post(
        "/auth/signin", json={"email": "api@example.com", "password": "secret-pass"}
    )
    assert response.status_code == 200
    headers = {"Authorization": f"Bearer {response.json()['access_token']}"}
    assert client.get("/profiles", headers=headers).status_code == 200

    wrong = client.post(
        "/auth/signin", json={"email": "api@example.com", "password": "wrong-pass"}
    )
    assert wrong.status_code == 401


def test_duplicate_sign_up_is_a_bad_request(client) -> None:
    _sign_up(client)

    response = client.post(
        "/auth/signup", json={"email": "api@example.com", "password": "secret-pass"}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "User already exists"


def test_transaction_and_refund_round_trip(client) -> None:
    headers = _sign_up(client)
    url = _budget_url(client, headers)

    created = client.post(
        f"{url}/transactions",
        headers=headers,
        json={
            "type": "expense",
            "category": "want",
            "amount": "80",
            "description": "Shoes",
            "transaction_date": "2025-03-08",
        },
    )
    assert created.status_code == 201
    txn_id = created.json()["id"]

    refund = client.post(
        f"{url}/transactions/{txn_id}/refund",
        headers=headers,
        json={"amount": "30", "reason": "Wrong size"},
    )
    assert refund.status_code == 201
    assert refund.json()["description"] == "Refund: Wrong size"

    snapshot = client.get(url, headers=headers).json()
    by_id = {t["id"]: t for t in snapshot["transactions"]}
    assert by_id[txn_id]["status"] == "partial_refund"
    assert Decimal(by_id[refund.json()["id"]]["amount"]) == Decimal("30")


def test_budget_config_route_returns_snapshot(client) -> None:
    headers = _sign_up(client)
    url = _budget_url(client, headers)
    modules = client.get(url, headers=headers).json()["modules"]

    response = client.put(
        f"{url}/config",
        headers=headers,
        json={
            "monthly_salary": "2000",
            "allocations": [{"module_id": modules[0]["id"], "percentage": "40"}],
        },
    )

    assert response.status_code == 200
    config = response.json()["config"]
    assert Decimal(config["total_budget_amount"]) == Decimal("2000")
    assert Decimal(config["allocations"][0]["allocated_amount"]) == Decimal("800")


def test_domain_errors_map_to_status_codes(client) -> None:
    headers = _sign_up(client)
    url = _budget_url(client, headers)

    missing = client.patch(
        f"{url}/transactions/nope", headers=headers, json={"notes": "x"}
    )
    assert missing.status_code == 404

    bad_month = client.get(_budget_url(client, headers, month=13), headers=headers)
    assert bad_month.status_code == 400
    assert bad_month.json()["field"] == "month"

    unknown_profile = client.get("/budgets/nobody/2025/3", headers=headers)
    assert unknown_profile.status_code == 404


def test_inherit_route_copies_portfolios(client) -> None:
    headers = _sign_up(client)
    february = _budget_url(client, headers, month=2)
    march = _budget_url(client, headers, month=3)
    client.post(
        f"{february}/portfolios",
        headers=headers,
        json={"portfolio_name": "Index", "allocated_amount": "500", "invested_amount": "200"},
    )
    source_period = client.get(february, headers=headers).json()["period"]["id"]

    response = client.post(
        f"{march}/inherit",
        headers=headers,
        json={"source_period_id": source_period, "components": ["investment_portfolios"]},
    )

    assert response.status_code == 201
    [portfolio] = response.json()["snapshot"]["portfolios"]
    assert Decimal(portfolio["invested_amount"]) == Decimal("0")
    assert Decimal(portfolio["allocated_amount"]) == Decimal("500")
