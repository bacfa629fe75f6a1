from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from settlement_hub import models  # noqa: F401
from settlement_hub.config import Settings
from settlement_hub.db import Base
from settlement_hub.main import app


def _make_client(**overrides) -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app.state.session_factory = TestingSessionLocal
    app.state.settings = Settings(
        rollover_interval_seconds=0, remote_poll_interval_seconds=0, **overrides
    )
    return TestClient(app)


def _create_restaurant(client: TestClient, restaurant_id: str = "rest_001", **extra) -> dict:
    payload = {"id": restaurant_id, "name": "Savour Foods", "city": "Pune", "status": "Active"}
    payload.update(extra)
    resp = client.post("/api/v1/restaurants", json=payload)
    assert resp.status_code == 200
    return resp.json()["data"]


def test_health() -> None:
    client = _make_client()
    with client:
        assert client.get("/health").json() == {"status": "healthy"}


def test_create_and_list_restaurants() -> None:
    client = _make_client()
    with client:
        _create_restaurant(client, "rest_001")
        _create_restaurant(client, "rest_002", name="Bombay Bistro", status="Suspended")

        dup = client.post("/api/v1/restaurants", json={"id": "rest_001", "name": "Again"})
        assert dup.status_code == 409

        list_resp = client.get("/api/v1/restaurants", params={"status": "Active"})
        assert list_resp.status_code == 200
        data = list_resp.json()["data"]
        assert [r["restaurant_id"] for r in data] == ["rest_001"]

        page = client.get("/api/v1/restaurants", params={"limit": 1})
        assert len(page.json()["data"]) == 1
        assert page.json()["meta"]["page"]["cursor"] == "1"

        assert client.get("/api/v1/restaurants/missing").status_code == 404


def test_settlement_payment_flow() -> None:
    client = _make_client()
    with client:
        _create_restaurant(client)
        base = "/api/v1/restaurants/rest_001/settlement"

        no_period = client.post(f"{base}/payments", json={"amount": 100})
        assert no_period.status_code == 409
        assert no_period.json()["meta"]["warnings"] == ["no settlement period for the current month"]

        assert client.post(f"{base}/default-amount", json={"amount": 0}).status_code == 409
        default_resp = client.post(f"{base}/default-amount", json={"amount": 1000})
        assert default_resp.status_code == 200
        assert default_resp.json()["data"]["default_settlement_amount"] == 1000.0

        again = client.post(f"{base}:rollover")
        assert again.json()["data"]["opened"] is False
        assert again.json()["meta"]["warnings"] == ["period already open"]

        first = client.post(f"{base}/payments", json={"amount": 600})
        assert first.status_code == 200
        assert first.json()["data"]["period"]["status"] == "Processing"

        second = client.post(f"{base}/payments", json={"amount": 500})
        assert second.status_code == 200
        assert second.json()["data"]["period"]["status"] == "Paid"
        assert second.json()["data"]["current_overpayment"] == 100.0

        third = client.post(f"{base}/payments", json={"amount": 50})
        assert third.status_code == 409

        view = client.get(base).json()["data"]
        period = view["settlement"]["periods"][view["current_period"]]
        assert period["total_paid"] == 1100.0
        assert period["overpayment_amount"] == 100.0
        assert view["totals"]["overpayment_credit"] == 100.0
        assert view["days_remaining"] == 30
        assert view["settlement"]["version"] == 5


def test_first_default_amount_opens_current_period() -> None:
    client = _make_client()
    with client:
        _create_restaurant(client)
        base = "/api/v1/restaurants/rest_001/settlement"

        default_resp = client.post(f"{base}/default-amount", json={"amount": 1000})
        assert default_resp.status_code == 200

        payment = client.post(f"{base}/payments", json={"amount": 250})
        assert payment.status_code == 200
        assert payment.json()["data"]["period"]["total_amount_due"] == 1000.0
        assert payment.json()["data"]["period"]["status"] == "Processing"


def test_suspended_restaurant_gets_no_period() -> None:
    client = _make_client()
    with client:
        _create_restaurant(client, status="Suspended")
        base = "/api/v1/restaurants/rest_001"
        client.post(f"{base}/settlement/default-amount", json={"amount": 1000})

        view = client.get(f"{base}/settlement").json()["data"]
        assert view["settlement"]["periods"] == {}

        paused = client.post(f"{base}/settlement:rollover").json()
        assert paused["data"]["opened"] is False
        assert paused["meta"]["warnings"] == ["restaurant is Suspended"]

        status_resp = client.post(f"{base}/status", json={"status": "Active"})
        assert status_resp.status_code == 200
        assert status_resp.json()["data"]["status"] == "Active"
        assert client.post(f"{base}/settlement:rollover").json()["data"]["opened"] is True

        bad = client.post(f"{base}/status", json={"status": "Closed"})
        assert bad.status_code == 422


def test_configured_online_methods_drive_reports() -> None:
    client = _make_client(online_payment_methods=["cash"])
    with client:
        _create_restaurant(client)
        orders = [
            {"id": "ORD-1", "paymentMethod": "online", "subtotal": 1000, "taxes": 50},
            {"id": "ORD-2", "paymentMethod": "cash", "subtotal": 400, "taxes": 20},
        ]
        client.post("/api/v1/restaurants/rest_001/orders:append", json={"orders": orders})

        txns = client.get("/api/v1/transactions").json()["data"]
        assert [t["id"] for t in txns] == ["ORD-2"]
        stats = client.get("/api/v1/restaurants/rest_001/stats").json()["data"]
        assert stats["total_revenue"] == 420.0


def test_orders_feed_transactions_and_reports() -> None:
    client = _make_client()
    with client:
        _create_restaurant(client)
        orders = [
            {
                "id": "ORD-1",
                "paymentMethod": "online",
                "OnlinePayMethod": "UPI",
                "subtotal": "1000",
                "taxes": "50",
                "createdAt": "2026-02-14T07:00:00Z",
            },
            {
                "id": "ORD-2",
                "paymentMethod": "cash",
                "subtotal": "400",
                "taxes": "20",
                "createdAt": "2026-02-14T08:00:00Z",
            },
        ]
        resp = client.post(
            "/api/v1/restaurants/rest_001/orders:append",
            json={"customer_id": "9876543210", "orders": orders},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["inserted"] == 2

        dup = client.post(
            "/api/v1/restaurants/rest_001/orders:append", json={"orders": orders[:1]}
        )
        assert dup.json()["data"]["deduped"] == 1

        txns = client.get("/api/v1/transactions", params={"restaurant_id": "rest_001"}).json()
        assert [t["id"] for t in txns["data"]] == ["ORD-1"]
        assert abs(txns["data"][0]["gst"] - 4.752) < 1e-9

        stats = client.get("/api/v1/restaurants/rest_001/stats").json()["data"]
        assert stats["transaction_count"] == 1
        assert abs(stats["gateway_fees"] - 23.6) < 1e-9

        dashboard = client.get("/api/v1/dashboard").json()["data"]
        assert dashboard["stats"]["total_transactions"] == 1
        assert dashboard["earnings_by_date"] == [
            {"date": "Feb 14", "earnings": 45, "transactions": 1}
        ]
        assert dashboard["top_restaurants"][0]["restaurant_name"] == "Savour Foods"

        ledger_resp = client.get("/api/v1/ledger", params={"group_by": "date"})
        assert ledger_resp.json()["data"][0]["group"] == "14 Feb 2026"
        assert client.get("/api/v1/ledger", params={"group_by": "customer"}).status_code == 400
