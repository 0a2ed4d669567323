"""
HTTP tests for the chat, expense and settlement routers.
"""
import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from app.db.database import get_db
from app.main import app
from app.services import chat_service
from app.services.auth.jwt_handler import create_access_token

TRIP = "trip-1"


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth(profiles):
    def _headers(name):
        return {"access-token": create_access_token(profiles[name])}
    return _headers


def create_dinner(client, auth, profiles):
    members = [profiles["alice"], profiles["bob"], profiles["carol"]]
    response = client.post(
        f"/expenses/trips/{TRIP}",
        headers=auth("alice"),
        json={
            "expense": {"title": "Dinner", "amount": "90", "paid_by": profiles["alice"], "category": "food"},
            "splits": [{"user_id": user_id, "amount": "30"} for user_id in members]
        }
    )
    assert response.status_code == 200
    return response.json()


@pytest.mark.integration
class TestAuth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_invalid_token(self, client):
        response = client.get(f"/chat/trips/{TRIP}/messages", headers={"access-token": "garbage"})
        assert response.status_code == 401

    def test_missing_token(self, client):
        assert client.get(f"/settlements/trips/{TRIP}").status_code == 422

    def test_bearer_prefix_accepted(self, client, profiles):
        token = create_access_token(profiles["bob"])
        response = client.get(f"/chat/trips/{TRIP}/messages", headers={"access-token": f"Bearer {token}"})
        assert response.status_code == 200


@pytest.mark.integration
class TestChatRoutes:

    def test_history_decrypted(self, client, auth, db, profiles):
        chat_service.create_message(db, TRIP, profiles["alice"], "Meet at the lobby")

        response = client.get(f"/chat/trips/{TRIP}/messages", headers=auth("bob"))

        assert response.status_code == 200
        body = response.json()
        assert [m["message"] for m in body] == ["Meet at the lobby"]
        assert body[0]["sender"]["display_name"] == "Alice Archer"

    def test_mark_read(self, client, auth, db, profiles):
        message = chat_service.create_message(db, TRIP, profiles["alice"], "Read me")

        response = client.post(f"/chat/messages/{message.id}/read", headers=auth("carol"))

        assert response.status_code == 200
        assert response.json()["read_by"] == [profiles["alice"], profiles["carol"]]

    def test_mark_read_missing(self, client, auth):
        response = client.post("/chat/messages/missing/read", headers=auth("carol"))
        assert response.status_code == 404


@pytest.mark.integration
class TestExpenseRoutes:

    def test_create_and_list(self, client, auth, profiles):
        created = create_dinner(client, auth, profiles)

        assert Decimal(created["amount"]) == Decimal("90")
        assert len(created["splits"]) == 3

        listed = client.get(f"/expenses/trips/{TRIP}", headers=auth("bob")).json()
        assert [e["id"] for e in listed] == [created["id"]]

    def test_bad_split_total(self, client, auth, profiles):
        response = client.post(
            f"/expenses/trips/{TRIP}",
            headers=auth("alice"),
            json={
                "expense": {"title": "Dinner", "amount": "90", "paid_by": profiles["alice"]},
                "splits": [{"user_id": profiles["bob"], "amount": "10"}]
            }
        )
        assert response.status_code == 400

    def test_only_payer_deletes(self, client, auth, profiles):
        created = create_dinner(client, auth, profiles)

        assert client.delete(f"/expenses/{created['id']}", headers=auth("bob")).status_code == 403
        assert client.delete(f"/expenses/{created['id']}", headers=auth("alice")).status_code == 200
        assert client.get(f"/expenses/{created['id']}", headers=auth("alice")).status_code == 404

    def test_categories(self, client):
        assert len(client.get("/expenses/categories").json()) == 6

    def test_budget(self, client, auth, profiles):
        create_dinner(client, auth, profiles)
        client.put(f"/expenses/trips/{TRIP}/budget", headers=auth("bob"), json={"budget_limit": "35"})

        summary = client.get(f"/expenses/trips/{TRIP}/budget", headers=auth("bob")).json()

        assert Decimal(summary["total_spent"]) == Decimal("30")
        assert summary["warning_threshold"] is True
        assert summary["is_over_budget"] is False


@pytest.mark.integration
class TestSettlementRoutes:

    def test_debt_summary(self, client, auth, profiles):
        create_dinner(client, auth, profiles)

        summary = client.get(f"/settlements/trips/{TRIP}/debts", headers=auth("carol")).json()

        assert Decimal(summary["total_debt"]) == Decimal("60")
        assert {s["from_user_id"] for s in summary["settlements"]} == {profiles["bob"], profiles["carol"]}
        assert {s["to_user_id"] for s in summary["settlements"]} == {profiles["alice"]}

    def test_breakdown(self, client, auth, profiles):
        create_dinner(client, auth, profiles)

        breakdown = client.get(f"/settlements/trips/{TRIP}/breakdown", headers=auth("alice")).json()

        assert Decimal(breakdown["total_owed_to_me"]) == Decimal("60")
        assert len(breakdown["members_who_owe_me"]) == 2

    def test_settlement_by_outsider_forbidden(self, client, auth, profiles):
        response = client.post(
            f"/settlements/trips/{TRIP}",
            headers=auth("bob"),
            json={"from_user_id": profiles["carol"], "to_user_id": profiles["alice"], "amount": "30"}
        )
        assert response.status_code == 403

    def test_payment_marker_and_undo(self, client, auth, profiles):
        response = client.post(
            f"/settlements/trips/{TRIP}/payments/received",
            headers=auth("alice"),
            json={"counterparty_id": profiles["bob"], "amount": "30"}
        )
        assert response.status_code == 200
        payment = response.json()
        assert payment["from_user_id"] == profiles["bob"]
        assert payment["recorded_by"] == profiles["alice"]
        assert payment["status"] == "paid"

        assert client.post(f"/settlements/payments/{payment['id']}/undo", headers=auth("carol")).status_code == 403
        undone = client.post(f"/settlements/payments/{payment['id']}/undo", headers=auth("bob")).json()
        assert undone["status"] == "reversed"

        payments = client.get(f"/settlements/trips/{TRIP}/payments", headers=auth("bob")).json()
        assert [p["id"] for p in payments] == [payment["id"]]
