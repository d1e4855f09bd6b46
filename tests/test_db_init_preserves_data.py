import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as dashboard_app  # noqa: E402


def configure_isolated_db(tmp_path):
    db_path = tmp_path / "tickets.db"
    dashboard_app.configure_database(f"sqlite:///{db_path}")
    with dashboard_app.app.app_context():
        dashboard_app.init_db()
    return db_path


def test_init_db_preserves_existing_tickets(tmp_path):
    configure_isolated_db(tmp_path)

    with dashboard_app.app.app_context():
        session = dashboard_app.get_session()
        ticket = dashboard_app.Ticket(
            ticket_id="T-1",
            subject="Original Ticket",
            brand="Acme",
            status="Open",
            created_at="2025-10-14 03:14:00",
            updated_at="2025-10-14 03:14:00",
        )
        ticket.messages.append(
            dashboard_app.TicketMessage(author="Pat", content="Hi", timestamp="2025-10-14 03:15:00")
        )
        session.add(ticket)
        session.commit()

        dashboard_app.init_db()

        rows = session.query(dashboard_app.Ticket).order_by(dashboard_app.Ticket.id).all()

        assert len(rows) == 1
        assert rows[0].subject == "Original Ticket"
        assert [m.content for m in rows[0].messages] == ["Hi"]


def test_configure_database_switches_storage(tmp_path):
    first = tmp_path / "first.db"
    second = tmp_path / "second.db"

    dashboard_app.configure_database(f"sqlite:///{first}")
    client = dashboard_app.app.test_client()
    client.post("/api/tickets", json={"ticket_id": "T-1"})

    dashboard_app.configure_database(f"sqlite:///{second}")

    assert client.get("/api/tickets").get_json() == []
    assert first.exists()
    assert second.exists()
