import sys
from datetime import timezone
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as dashboard_app  # noqa: E402


def configure_db(monkeypatch, tmp_path):
    db_path = tmp_path / "tickets.db"
    monkeypatch.setattr(dashboard_app, "LOCAL_TZ", timezone.utc)
    dashboard_app.configure_database(f"sqlite:///{db_path}")
    with dashboard_app.app.app_context():
        dashboard_app.init_db()
    return dashboard_app.app.test_client()


def post_ticket(client, **overrides):
    payload = {
        "ticket_id": "T-100",
        "subject": "Order never arrived",
        "brand": "_shopify",
        "status": "Open",
        "client_name": "Pat",
        "client_email": "pat@example.com",
        "created_at": "2025-10-14T03:14:00Z",
        "updated_at": "Updated Oct 15th, 2025 09:30 AM from IP 10.0.0.1",
        "ticket_url": "https://help.example.com/tickets/100",
    }
    payload.update(overrides)
    return client.post("/api/tickets", json=payload)


def test_post_creates_ticket_with_canonical_timestamps(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)

    response = post_ticket(client)

    assert response.status_code == 200
    assert response.get_json() == {"success": True, "message": "Ticket saved successfully"}

    rows = client.get("/api/tickets").get_json()
    assert len(rows) == 1
    assert rows[0]["ticket_id"] == "T-100"
    assert rows[0]["created_at"] == "2025-10-14T03:14:00Z"
    assert rows[0]["updated_at"] == "2025-10-15T09:30:00Z"
    assert rows[0]["brand"] == "_shopify"


def test_new_ticket_defaults_brand_and_status(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)

    post_ticket(client, ticket_id="T-1", brand=None, status=None)

    row = client.get("/api/tickets/T-1").get_json()
    assert row["brand"] == "Unknown"
    assert row["status"] == "Unknown"


def test_post_updates_existing_ticket_in_place(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(client)

    response = client.post(
        "/api/tickets",
        json={"ticket_id": "T-100", "brand": "Acme", "status": "Closed", "updated_at": "Oct 16, 2025"},
    )

    assert response.status_code == 200
    rows = client.get("/api/tickets").get_json()
    assert len(rows) == 1
    assert rows[0]["status"] == "Closed"
    assert rows[0]["brand"] == "Acme"
    assert rows[0]["subject"] is None
    assert rows[0]["updated_at"] == "2025-10-16T00:00:00Z"


def test_messages_are_appended(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(
        client,
        messages=[
            {"author": "Pat", "content": "Where is my order?", "timestamp": "Oct 14, 2025, 03:20 AM"},
            {"author": "Agent", "content": "Looking into it", "timestamp": "garbage"},
        ],
    )
    post_ticket(client, messages=[{"author": "Pat", "content": "Thanks", "created_at": "2025-10-15T08:00:00Z"}])

    detail = client.get("/api/tickets/T-100").get_json()

    assert detail["message_count"] == 3
    assert [m["content"] for m in detail["messages"]] == ["Where is my order?", "Looking into it", "Thanks"]
    assert detail["messages"][0]["timestamp"] == "2025-10-14T03:20:00Z"
    assert detail["messages"][1]["timestamp"].endswith("Z")
    assert detail["messages"][2]["timestamp"] == "2025-10-15T08:00:00Z"


def test_post_rejects_bad_payloads(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)

    missing_id = client.post("/api/tickets", json={"subject": "No id"})
    not_json = client.post("/api/tickets", data="nope", content_type="text/plain")

    assert missing_id.status_code == 400
    assert missing_id.get_json()["success"] is False
    assert not_json.status_code == 400


def test_list_is_newest_first_with_cors(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(client, ticket_id="T-1")
    post_ticket(client, ticket_id="T-2")

    response = client.get("/api/tickets")

    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert [row["ticket_id"] for row in response.get_json()] == ["T-2", "T-1"]


def test_preflight(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)

    response = client.open("/api/tickets", method="OPTIONS")

    assert response.status_code == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "DELETE" in response.headers["Access-Control-Allow-Methods"]


def test_delete_ticket(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(client, messages=[{"author": "Pat", "content": "Hello"}])

    assert client.delete("/api/tickets").status_code == 400
    assert client.delete("/api/tickets?id=missing").status_code == 404

    response = client.delete("/api/tickets?id=T-100")

    assert response.status_code == 200
    assert response.get_json()["success"] is True
    assert client.get("/api/tickets/T-100").status_code == 404
    with dashboard_app.app.app_context():
        session = dashboard_app.get_session()
        assert session.query(dashboard_app.TicketMessage).count() == 0


def test_dashboard_data(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(client, ticket_id="T-1", brand="_shopify", status="Open", first_reply_minutes=20)
    post_ticket(client, ticket_id="T-2", brand="SHOPIFY", status="Closed", first_reply_minutes=40)
    post_ticket(client, ticket_id="T-3", brand="acme.com.au", status="Pending", first_reply_minutes=30)

    payload = client.get("/api/dashboard").get_json()

    assert payload["total"] == 3
    assert payload["unsolved"] == 2
    assert payload["resolved"] == 1
    assert payload["avg_first_reply_minutes"] == 30
    assert payload["brands"] == [{"brand": "Shopify", "count": 2}, {"brand": "Acme.com.au", "count": 1}]
    assert payload["tickets_per_day"] == [{"key": "2025-10-15", "label": "Oct 15", "count": 3}]


def test_dashboard_page_filters_and_sorts(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(client, ticket_id="SHOP-1", brand="_shopify", subject="Refund request")
    post_ticket(client, ticket_id="ACME-1", brand="Acme", subject="Password reset")

    everything = client.get("/").get_data(as_text=True)
    shopify_only = client.get("/?brand=shopify&sort=bogus").get_data(as_text=True)

    assert "SHOP-1" in everything
    assert "ACME-1" in everything
    assert "Oct 14, 2025 03:14 AM UTC" in everything
    assert "SHOP-1" in shopify_only
    assert "Password reset" not in shopify_only


def test_ticket_detail_reports_database_errors(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(client)

    def broken(ticket, include_messages=False):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(dashboard_app, "ticket_to_dict", broken)
    response = client.get("/api/tickets/T-100")

    assert response.status_code == 500
    assert response.get_json() == {"success": False, "error": "database is locked"}


def test_fractional_first_reply_minutes_are_kept(monkeypatch, tmp_path):
    client = configure_db(monkeypatch, tmp_path)
    post_ticket(client, first_reply_minutes=12.5)

    assert client.get("/api/tickets/T-100").get_json()["first_reply_minutes"] == 12.5
