from __future__ import annotations
import os
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import (
    Flask,
    jsonify,
    render_template_string,
    request,
)
from jinja2 import DictLoader
from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    Session,
    declarative_base,
    joinedload,
    relationship,
    scoped_session,
    sessionmaker,
)

from ticket_dates import format_timestamp, storage_to_api, to_storage_timestamp
from ticket_stats import (
    DATE_COLUMNS,
    TEXT_COLUMNS,
    filter_tickets,
    group_by_brand,
    normalize_brand,
    sort_tickets,
    summarize,
)

# --------------------------------------------------------------------------------------
# Flask app config
# --------------------------------------------------------------------------------------
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET", "dev-secret")
app.config["MAX_CONTENT_LENGTH"] = 4 * 1024 * 1024  # ticket exports are plain JSON


def _candidate_path_from_env(value: str) -> Path | None:
    """Return a filesystem path for supported SQLite URI formats."""

    cleaned = value.strip()
    if not cleaned or cleaned == ":memory:":
        return None

    # SQLite supports URIs such as sqlite:///path/to/db.sqlite or sqlite://relative.db
    if cleaned.startswith("sqlite:///"):
        cleaned = cleaned[len("sqlite:///"):]
    elif cleaned.startswith("sqlite://"):
        cleaned = cleaned[len("sqlite://"):]

    if cleaned == ":memory:":
        return None

    if cleaned.startswith("file:") or "://" in cleaned:
        # Treat as a raw SQLite connection string (e.g., file::memory:?cache=shared)
        return None

    if "?" in cleaned:
        cleaned = cleaned.split("?", 1)[0]

    return Path(cleaned)


def _resolve_db_path(
    env_override: str | None = None,
    data_dir_override: str | None = None,
) -> str:
    """Determine the SQLite database location and ensure the directory exists."""

    env_value = env_override if env_override is not None else os.environ.get("TICKETS_DB")
    data_dir = data_dir_override if data_dir_override is not None else os.environ.get("RENDER_DATA_DIR")

    candidate: Path | None = None
    if env_value:
        path_candidate = _candidate_path_from_env(env_value)
        if path_candidate is None:
            return env_value
        candidate = path_candidate.expanduser()
    else:
        base_dir = Path(data_dir) if data_dir else Path(app.instance_path)
        base_dir.mkdir(parents=True, exist_ok=True)
        candidate = (base_dir / "tickets.db").expanduser()

    if not candidate.is_absolute():
        base_dir = Path(data_dir) if data_dir else Path(app.instance_path)
        base_dir.mkdir(parents=True, exist_ok=True)
        candidate = (base_dir / candidate).resolve()

    candidate.parent.mkdir(parents=True, exist_ok=True)
    return str(candidate)


def _load_local_timezone() -> Optional[tzinfo]:
    """Zone used for local-calendar bucketing; ``None`` means the server's own."""

    name = (os.getenv("DASHBOARD_TZ") or "").strip()
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        app.logger.warning("Unknown DASHBOARD_TZ %r, using server local time", name)
        return None


DB_PATH = _resolve_db_path()
DATABASE_URL = os.getenv("DATABASE_URL")
LOCAL_TZ = _load_local_timezone()
try:
    TICKET_LIMIT = int(os.getenv("DASHBOARD_TICKET_LIMIT", "100"))
except ValueError:
    TICKET_LIMIT = 100
BRAND_CHART_LIMIT = 8

Base = declarative_base()


def _build_engine(url: str | None = None):
    url = url or DATABASE_URL
    if url:
        return create_engine(url, pool_pre_ping=True)
    return create_engine(
        f"sqlite:///{DB_PATH}",
        connect_args={"check_same_thread": False},
    )


engine = _build_engine()
app.logger.info("DB engine: %s", "external" if DATABASE_URL else f"SQLite @ {DB_PATH}")

SessionLocal = scoped_session(
    sessionmaker(bind=engine, autoflush=False, autocommit=False)
)


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True)
    ticket_id = Column(String(191), unique=True, nullable=False, index=True)
    subject = Column(Text)
    brand = Column(String(255))
    status = Column(String(64))
    assigned_to = Column(String(255))
    client_name = Column(String(255))
    client_email = Column(String(255))
    # Canonical "YYYY-MM-DD HH:MM:SS" UTC strings, see ticket_dates.to_storage_timestamp
    created_at = Column(String(19), nullable=False)
    updated_at = Column(String(19), nullable=False)
    first_reply_at = Column(String(19))
    first_reply_minutes = Column(Float)
    ticket_url = Column(Text)

    messages = relationship(
        "TicketMessage",
        back_populates="ticket",
        lazy="select",
        cascade="all, delete-orphan",
        order_by="TicketMessage.id",
    )


class TicketMessage(Base):
    __tablename__ = "ticket_messages"

    id = Column(Integer, primary_key=True)
    ticket_id = Column(
        String(191),
        ForeignKey("tickets.ticket_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    author = Column(String(255))
    content = Column(Text)
    timestamp = Column(String(19), nullable=False)

    ticket = relationship("Ticket", back_populates="messages", lazy="select")


# --------------------------------------------------------------------------------------
# DB helpers
# --------------------------------------------------------------------------------------
_schema_ready = False


def configure_database(url: str | None = None):
    """Point the app at another database (tests, one-off imports)."""

    global engine, _schema_ready
    SessionLocal.remove()
    engine.dispose()
    engine = _build_engine(url)
    SessionLocal.configure(bind=engine)
    _schema_ready = False
    return engine


def get_session() -> Session:
    return SessionLocal()


def close_session(exc: BaseException | None = None):  # noqa: ARG001
    SessionLocal.remove()


@app.teardown_appcontext
def _teardown_sqlalchemy(exc: BaseException | None):  # noqa: ARG001
    close_session(exc)


def init_db():
    global _schema_ready
    Base.metadata.create_all(engine)
    _schema_ready = True


@app.before_request
def _ensure_schema():
    if not _schema_ready:
        init_db()


# --------------------------------------------------------------------------------------
# Constants / helpers
# --------------------------------------------------------------------------------------
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
SORT_COLUMNS = DATE_COLUMNS | TEXT_COLUMNS
DEFAULT_SORT = "updated_at"
TABLE_COLUMNS = [
    ("ticket_id", "Ticket"),
    ("subject", "Subject"),
    ("brand", "Brand"),
    ("status", "Status"),
    ("assigned_to", "Assignee"),
    ("created_at", "Created"),
    ("updated_at", "Updated"),
]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _minutes(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _json_error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def message_to_dict(message: TicketMessage) -> dict:
    return {
        "author": message.author,
        "content": message.content,
        "timestamp": storage_to_api(message.timestamp),
    }


def ticket_to_dict(ticket: Ticket, include_messages: bool = False) -> dict:
    data = {
        "id": ticket.id,
        "ticket_id": ticket.ticket_id,
        "subject": ticket.subject,
        "brand": ticket.brand,
        "status": ticket.status,
        "assigned_to": ticket.assigned_to,
        "client_name": ticket.client_name,
        "client_email": ticket.client_email,
        "created_at": storage_to_api(ticket.created_at),
        "updated_at": storage_to_api(ticket.updated_at),
        "first_reply_at": storage_to_api(ticket.first_reply_at),
        "first_reply_minutes": ticket.first_reply_minutes,
        "ticket_url": ticket.ticket_url,
        "message_count": len(ticket.messages),
    }
    if include_messages:
        data["messages"] = [message_to_dict(m) for m in ticket.messages]
    return data


def load_recent_tickets(session: Session, limit: int | None = None) -> list[dict]:
    rows = (
        session.query(Ticket)
        .options(joinedload(Ticket.messages))
        .order_by(Ticket.id.desc())
        .limit(limit or TICKET_LIMIT)
        .all()
    )
    return [ticket_to_dict(row) for row in rows]


def apply_ticket_payload(ticket: Ticket, data: dict, now: datetime, is_new: bool) -> None:
    """Copy an export payload onto ``ticket``; every mutable field is overwritten."""

    ticket.subject = _text(data.get("subject"))
    ticket.brand = _text(data.get("brand") or "Unknown") if is_new else _text(data.get("brand"))
    ticket.status = _text(data.get("status") or "Unknown") if is_new else _text(data.get("status"))
    ticket.assigned_to = _text(data.get("assigned_to"))
    ticket.client_name = _text(data.get("client_name"))
    ticket.client_email = _text(data.get("client_email"))
    ticket.created_at = to_storage_timestamp(data.get("created_at"), now=now, tz=LOCAL_TZ)
    ticket.updated_at = to_storage_timestamp(data.get("updated_at"), now=now, tz=LOCAL_TZ)
    first_reply = data.get("first_reply_at")
    ticket.first_reply_at = (
        to_storage_timestamp(first_reply, now=now, tz=LOCAL_TZ) if first_reply else None
    )
    ticket.first_reply_minutes = _minutes(data.get("first_reply_minutes"))
    ticket.ticket_url = _text(data.get("ticket_url"))


# --------------------------------------------------------------------------------------
# Templates (kept inline for single-file simplicity)
# --------------------------------------------------------------------------------------
BASE_HTML = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Support Ticket Dashboard</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
  <link href="https://cdn.jsdelivr.net/npm/bootstrap-icons@1.11.3/font/bootstrap-icons.css" rel="stylesheet">
  <style>
    :root {
      --td-blue: #2563eb;
      --td-cyan: #06b6d4;
      --td-ink: #111827;
      --td-muted: #6b7280;
      --td-surface: #ffffff;
      --td-shadow: 0 18px 35px rgba(0, 0, 0, 0.08);
    }

    html, body {
      background: #f5f7fb;
      color: var(--td-ink);
      font-family: "Segoe UI", "Helvetica Neue", Arial, sans-serif;
    }

    .app-header {
      background: linear-gradient(135deg, var(--td-blue), var(--td-cyan));
      color: #fff;
      padding: 0.85rem 1.5rem;
    }

    .surface-card {
      background: var(--td-surface);
      border-radius: 20px;
      box-shadow: var(--td-shadow);
    }

    .stat-card { padding: 1.4rem; }
    .stat-kicker { text-transform: uppercase; font-size: 0.75rem; color: var(--td-muted); letter-spacing: .06em; }
    .stat-value { font-size: 2.1rem; font-weight: 600; margin: 0.25rem 0; }
    .delta-up { color: #047857; }
    .delta-down { color: #be123c; }
    .table-modern th a { color: inherit; text-decoration: none; }
  </style>
</head>
<body>
  <header class="app-header d-flex align-items-center justify-content-between">
    <a class="text-white fw-semibold text-decoration-none" href="{{ url_for('dashboard') }}"><i class="bi bi-bar-chart-line me-2"></i>Support Tickets</a>
    <a class="btn btn-outline-light btn-sm" href="{{ url_for('dashboard_data') }}">JSON</a>
  </header>
  <main class="container-xl py-4 d-flex flex-column gap-4">
    {% block workspace_content %}{% endblock %}
  </main>
</body>
</html>
"""

DASHBOARD_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
{% set cmp = stats.today_vs_yesterday %}
<div class="row g-3">
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Created Tickets</div>
      <p class="stat-value">{{ stats.total }}</p>
      <div class="{{ 'delta-up' if cmp.positive else 'delta-down' }}">
        {{ '▲' if cmp.positive else '▼' }} {{ cmp.percent|abs }}% vs yesterday
      </div>
    </div>
  </div>
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Unsolved Tickets</div>
      <p class="stat-value text-warning">{{ stats.unsolved }}</p>
    </div>
  </div>
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Resolved Tickets</div>
      <p class="stat-value text-success">{{ stats.resolved }}</p>
    </div>
  </div>
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Average First Reply</div>
      <p class="stat-value">{{ stats.avg_first_reply_minutes }} min</p>
    </div>
  </div>
</div>

<div class="row g-3">
  <div class="col-lg-4">
    <div class="surface-card p-4 h-100">
      <h6 class="text-uppercase small text-secondary">Tickets per Day</h6>
      <div class="small text-secondary mb-2">
        Avg. created {{ stats.avg_created_per_day }} · Avg. resolved {{ stats.avg_resolved_per_day }}
      </div>
      {% for day in stats.tickets_per_day %}
        <div class="d-flex justify-content-between"><span>{{ day.label }}</span><span class="text-secondary">{{ day.count }}</span></div>
      {% else %}
        <div class="text-secondary">No dated tickets yet.</div>
      {% endfor %}
    </div>
  </div>
  <div class="col-lg-4">
    <div class="surface-card p-4 h-100">
      <h6 class="text-uppercase small text-secondary">Today vs Yesterday</h6>
      <div class="d-flex justify-content-between"><span>Today</span><span>{{ cmp.today }}</span></div>
      <div class="d-flex justify-content-between"><span>Yesterday</span><span>{{ cmp.yesterday }}</span></div>
      <div class="mt-2 fw-semibold {{ 'delta-up' if cmp.positive else 'delta-down' }}">
        {{ '+' if cmp.diff >= 0 else '' }}{{ cmp.diff }}
      </div>
    </div>
  </div>
  <div class="col-lg-4">
    <div class="surface-card p-4 h-100">
      <h6 class="text-uppercase small text-secondary">Tickets by Brand</h6>
      {% for item in stats.brands %}
        <div class="d-flex justify-content-between"><span class="fw-semibold">{{ item.brand }}</span><span class="text-secondary">{{ item.count }}</span></div>
      {% else %}
        <div class="text-secondary">No tickets yet.</div>
      {% endfor %}
    </div>
  </div>
</div>

<div class="surface-card p-4">
  <form class="row g-3 align-items-end" method="get">
    <div class="col-12 col-md-3">
      <label class="form-label text-uppercase small">Status</label>
      <select class="form-select" name="status">
        <option value="">All statuses</option>
        {% for s in statuses %}
        <option value="{{ s }}" {% if s|lower == selected_status|lower %}selected{% endif %}>{{ s }}</option>
        {% endfor %}
      </select>
    </div>
    <div class="col-12 col-md-3">
      <label class="form-label text-uppercase small">Brand</label>
      <select class="form-select" name="brand">
        <option value="">All brands</option>
        {% for b in brands %}
        <option value="{{ b }}" {% if b == selected_brand %}selected{% endif %}>{{ b }}</option>
        {% endfor %}
      </select>
    </div>
    <div class="col-12 col-md-3">
      <label class="form-label text-uppercase small">Search</label>
      <input class="form-control" name="q" value="{{ query }}" placeholder="Ticket, subject, client">
    </div>
    <div class="col-12 col-md-3 d-flex gap-2 justify-content-end">
      <input type="hidden" name="sort" value="{{ sort }}">
      <input type="hidden" name="order" value="{{ order }}">
      <button class="btn btn-primary" type="submit"><i class="bi bi-funnel"></i> Filter</button>
      <a class="btn btn-link text-decoration-none" href="{{ url_for('dashboard') }}">Clear</a>
    </div>
  </form>
</div>

<div class="surface-card p-0 overflow-hidden">
  <div class="p-4 border-bottom">
    <span class="badge text-bg-primary">{{ tickets|length }} Results</span>
  </div>
  <div class="table-responsive p-3">
    <table class="table table-modern align-middle mb-0">
      <thead>
        <tr>
          {% for column, label in columns %}
          {% set next_order = 'asc' if (sort == column and order == 'desc') else 'desc' %}
          <th scope="col">
            <a href="{{ url_for('dashboard', status=selected_status, brand=selected_brand, q=query, sort=column, order=next_order) }}">
              {{ label }}{% if sort == column %} <i class="bi bi-caret-{{ 'down' if order == 'desc' else 'up' }}-fill"></i>{% endif %}
            </a>
          </th>
          {% endfor %}
        </tr>
      </thead>
      <tbody>
        {% for t in tickets %}
        <tr>
          <td>{% if t['ticket_url'] %}<a href="{{ t['ticket_url'] }}" target="_blank" rel="noopener noreferrer">{{ t['ticket_id'] }}</a>{% else %}{{ t['ticket_id'] }}{% endif %}</td>
          <td>{{ t['subject'] or '—' }}</td>
          <td>{{ brand_label(t['brand']) }}</td>
          <td>{{ t['status'] or 'Unknown' }}</td>
          <td>{{ t['assigned_to'] or '—' }}</td>
          <td>{{ format_ts(t['created_at']) }}</td>
          <td>{{ format_ts(t['updated_at']) }}</td>
        </tr>
        {% else %}
        <tr><td colspan="{{ columns|length }}" class="text-secondary">No tickets match these filters.</td></tr>
        {% endfor %}
      </tbody>
    </table>
  </div>
</div>
{% endblock %}
"""


# --------------------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------------------


@app.after_request
def _add_cors_headers(response):
    if request.path.startswith("/api/"):
        response.headers["Access-Control-Allow-Origin"] = "*"
    return response


@app.route("/api/tickets", methods=["OPTIONS"])
def tickets_preflight():
    response = app.response_class(status=204)
    response.headers.update(CORS_HEADERS)
    return response


@app.route("/api/tickets", methods=["POST"], provide_automatic_options=False)
def save_ticket():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _json_error("Request body must be a JSON object.", 400)
    ticket_id = str(data.get("ticket_id") or "").strip()
    if not ticket_id:
        return _json_error("Missing ticket_id", 400)

    now = now_utc()
    session = get_session()
    try:
        ticket = session.query(Ticket).filter(Ticket.ticket_id == ticket_id).one_or_none()
        is_new = ticket is None
        if is_new:
            ticket = Ticket(ticket_id=ticket_id)
            session.add(ticket)
        apply_ticket_payload(ticket, data, now, is_new)

        messages = data.get("messages") or []
        for msg in messages if isinstance(messages, list) else []:
            if not isinstance(msg, dict):
                continue
            ticket.messages.append(
                TicketMessage(
                    author=_text(msg.get("author")),
                    content=_text(msg.get("content")),
                    timestamp=to_storage_timestamp(
                        msg.get("timestamp") or msg.get("created_at"), now=now, tz=LOCAL_TZ
                    ),
                )
            )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        app.logger.exception("Saving ticket %s failed", ticket_id)
        return _json_error(str(exc), 500)
    finally:
        session.close()

    if is_new:
        app.logger.info("New ticket saved: %s", ticket_id)
    else:
        app.logger.info("Ticket updated: %s", ticket_id)
    return jsonify({"success": True, "message": "Ticket saved successfully"})


@app.route("/api/tickets", methods=["GET"], provide_automatic_options=False)
def list_tickets():
    session = get_session()
    try:
        return jsonify(load_recent_tickets(session))
    except SQLAlchemyError as exc:
        app.logger.exception("Listing tickets failed")
        return _json_error(str(exc), 500)
    finally:
        session.close()


@app.route("/api/tickets/<ticket_id>", methods=["GET"])
def ticket_detail(ticket_id: str):
    session = get_session()
    try:
        ticket = session.query(Ticket).filter(Ticket.ticket_id == ticket_id).one_or_none()
        if not ticket:
            return jsonify({"success": False, "message": "No matching ticket found"}), 404
        return jsonify(ticket_to_dict(ticket, include_messages=True))
    except SQLAlchemyError as exc:
        session.rollback()
        app.logger.exception("Loading ticket %s failed", ticket_id)
        return _json_error(str(exc), 500)
    finally:
        session.close()


@app.route("/api/tickets", methods=["DELETE"], provide_automatic_options=False)
def delete_ticket():
    ticket_id = (request.args.get("id") or "").strip()
    if not ticket_id:
        return _json_error("Missing ticket_id parameter", 400)

    session = get_session()
    try:
        ticket = session.query(Ticket).filter(Ticket.ticket_id == ticket_id).one_or_none()
        if not ticket:
            return jsonify({"success": False, "message": "No matching ticket found"}), 404
        session.delete(ticket)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        app.logger.exception("Deleting ticket %s failed", ticket_id)
        return _json_error(str(exc), 500)
    finally:
        session.close()

    app.logger.info("Deleted ticket: %s", ticket_id)
    return jsonify({"success": True, "message": f"Ticket {ticket_id} deleted successfully"})


@app.route("/api/dashboard")
def dashboard_data():
    session = get_session()
    try:
        records = load_recent_tickets(session)
    finally:
        session.close()
    return jsonify(summarize(records, now_utc(), tz=LOCAL_TZ, brand_limit=BRAND_CHART_LIMIT))


@app.route("/")
def dashboard():
    status_filter = (request.args.get("status") or "").strip()
    brand_filter = (request.args.get("brand") or "").strip()
    query = (request.args.get("q") or "").strip()
    sort = (request.args.get("sort") or DEFAULT_SORT).strip()
    if sort not in SORT_COLUMNS:
        sort = DEFAULT_SORT
    order = "asc" if (request.args.get("order") or "").lower() == "asc" else "desc"

    session = get_session()
    try:
        records = load_recent_tickets(session)
    finally:
        session.close()

    stats = summarize(records, now_utc(), tz=LOCAL_TZ, brand_limit=BRAND_CHART_LIMIT)
    statuses = sorted({r["status"] for r in records if r["status"]}, key=str.lower)
    brands = sorted({label for label, _ in group_by_brand(records)}, key=str.lower)
    selected_brand = normalize_brand(brand_filter) if brand_filter else ""

    rows = filter_tickets(records, status=status_filter, brand=brand_filter, query=query)
    rows = sort_tickets(rows, key=sort, descending=order == "desc")

    return render_template_string(
        DASHBOARD_HTML,
        stats=stats,
        tickets=rows,
        statuses=statuses,
        brands=brands,
        columns=TABLE_COLUMNS,
        selected_status=status_filter,
        selected_brand=selected_brand,
        query=query,
        sort=sort,
        order=order,
        brand_label=normalize_brand,
        format_ts=lambda value: format_timestamp(value, tz=LOCAL_TZ),
    )


# --------------------------------------------------------------------------------------
# Jinja loader (since we keep templates inline in this single file)
# --------------------------------------------------------------------------------------
app.jinja_loader = DictLoader({
    "base.html": BASE_HTML,
    "dashboard.html": DASHBOARD_HTML,
})

# --------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    with app.app_context():
        init_db()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
