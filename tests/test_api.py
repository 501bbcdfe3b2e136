import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
    engine.dispose()


def test_health(client: TestClient) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_monthly_flow(client: TestClient) -> None:
    food = client.post(
        "/api/categories",
        json={"name": "Food", "type": "expense", "default_budget": 200000},
    ).json()
    client.post(
        "/api/transactions",
        json={
            "type": "income",
            "amount": 2500000,
            "occurred_at": "2025-03-01T09:00:00",
        },
    )
    created = client.post(
        "/api/transactions",
        json={
            "type": "expense",
            "amount": 50000,
            "category_id": food["id"],
            "description": "Groceries",
            "occurred_at": "2025-03-02T18:00:00",
        },
    )
    assert created.status_code == 201
    assert created.json()["date"] == "2025-03-02"

    goal = client.post(
        "/api/savings",
        json={
            "name": "Trip",
            "target_amount": 1000000,
            "target_year": 2099,
            "target_month": 12,
            "is_primary": True,
        },
    ).json()
    deposit = client.post(f"/api/savings/{goal['id']}/deposit", json={"amount": 100000})
    assert deposit.status_code == 200
    assert deposit.json()["goal"]["current_amount"] == 100000
    assert deposit.json()["transaction"]["savings_goal_id"] == goal["id"]

    stats = client.get("/api/stats", params={"year": 2025, "month": 3})
    assert stats.status_code == 200
    body = stats.json()
    assert body["summary"]["total_income"] == 2500000
    assert body["summary"]["total_expense"] == 50000
    assert body["categories"][0]["budget"] == 200000
    assert body["categories"][0]["budget_usage_percent"] == 25

    listed = client.get(
        "/api/transactions",
        params={"year": 2025, "month": 3, "category_ids": [food["id"]]},
    ).json()
    assert [t["description"] for t in listed["data"]] == ["Groceries"]

    monthly = client.get(
        "/api/daily-balance/monthly", params={"year": 2025, "month": 3}
    ).json()
    assert [row["date"] for row in monthly] == ["2025-03-01", "2025-03-02"]
    assert monthly[-1]["balance"] == 2450000


def test_errors_map_to_status_codes(client: TestClient) -> None:
    goal = client.post(
        "/api/savings",
        json={
            "name": "Trip",
            "target_amount": 1000000,
            "target_year": 2099,
            "target_month": 12,
        },
    ).json()

    invalid = client.post(f"/api/savings/{goal['id']}/deposit", json={"amount": 0})
    assert invalid.status_code == 400
    assert invalid.json()["field"] == "amount"

    missing = client.post("/api/savings/999/deposit", json={"amount": 1000})
    assert missing.status_code == 404

    assert client.get("/api/transactions/12345").status_code == 404

    client.post("/api/categories", json={"name": "Food", "type": "expense"})
    duplicate = client.post("/api/categories", json={"name": "FOOD", "type": "expense"})
    assert duplicate.status_code == 409

    assert client.get("/api/stats", params={"year": 2025, "month": 13}).status_code == 400


def test_primary_goal_toggle(client: TestClient) -> None:
    payload = {"target_amount": 500000, "target_year": 2099, "target_month": 1}
    first = client.post("/api/savings", json={"name": "A", **payload}).json()
    second = client.post("/api/savings", json={"name": "B", **payload}).json()

    client.patch(f"/api/savings/{first['id']}", json={"is_primary": True})
    response = client.patch(f"/api/savings/{second['id']}", json={"is_primary": True})
    assert response.json()["is_primary"] is True

    goals = client.get("/api/savings").json()
    assert [g["name"] for g in goals if g["is_primary"]] == ["B"]


def test_rebuild_endpoint(client: TestClient) -> None:
    client.post(
        "/api/transactions",
        json={"type": "income", "amount": 1000, "occurred_at": "2025-01-05T10:00:00"},
    )
    response = client.post("/api/admin/rebuild-daily-balances")
    assert response.status_code == 200
    assert response.json() == {"rebuilt_days": 1}

    removed = client.delete("/api/transactions/1")
    assert removed.status_code == 204
