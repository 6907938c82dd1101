import csv
import io
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

SQLITE_BUSY_TIMEOUT_MS = 5000
SQLITE_CONNECT_TIMEOUT_SECONDS = SQLITE_BUSY_TIMEOUT_MS / 1000

OPENING_HOUR = 9
CLOSING_HOUR = 18
SLOT_STEP_MINUTES = 30

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
APPOINTMENT_STATUSES = {STATUS_PENDING, STATUS_ACCEPTED, STATUS_REJECTED}

MATERIAL_COLUMNS = {
    "Guía": "guide",
    "Tarifas": "rates",
    "Portafolio": "portfolio",
}

CSV_HEADER = ["Nombre", "Email", "Teléfono", "Servicio", "FechaHoraISO", "Estado", "Guía", "Tarifas", "Portafolio"]


CREATE_TABLE_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS clients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT NOT NULL,
        service TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS appointments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        datetime TEXT NOT NULL,
        status TEXT NOT NULL,
        FOREIGN KEY(client_id) REFERENCES clients(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS materials (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        guide INTEGER NOT NULL DEFAULT 0,
        rates INTEGER NOT NULL DEFAULT 0,
        portfolio INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY(client_id) REFERENCES clients(id)
    );
    """,
]

CREATE_INDEX_STATEMENTS = [
    "CREATE INDEX IF NOT EXISTS idx_appointments_datetime ON appointments(datetime);",
]

REQUESTS_QUERY = """
    SELECT a.id AS appointment_id, c.id AS client_id, c.name, c.email, c.phone, c.service,
           a.datetime, a.status, m.guide, m.rates, m.portfolio
    FROM appointments a
    JOIN clients c ON a.client_id = c.id
    LEFT JOIN materials m ON m.client_id = c.id
    ORDER BY a.datetime DESC
"""


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS};")
    conn.execute("PRAGMA journal_mode = WAL;")


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        _apply_pragmas(conn)
        for stmt in CREATE_TABLE_STATEMENTS:
            conn.execute(stmt)
        for stmt in CREATE_INDEX_STATEMENTS:
            conn.execute(stmt)
        conn.commit()


def get_connection(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(
        db_path,
        check_same_thread=False,
        timeout=SQLITE_CONNECT_TIMEOUT_SECONDS,
    )
    _apply_pragmas(conn)
    conn.row_factory = sqlite3.Row
    return conn


def _to_utc_iso(moment: datetime) -> str:
    # Naive values are local wall-clock time.
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_slot(value: str) -> str:
    """Canonical UTC form of a slot timestamp; raises ValueError on garbage."""
    raw = str(value or "").strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return _to_utc_iso(datetime.fromisoformat(raw))


def slot_iso(day: str, time_label: str) -> str:
    return _to_utc_iso(datetime.fromisoformat(f"{day}T{time_label}:00"))


def is_slot_taken(conn: sqlite3.Connection, slot: str) -> bool:
    row = conn.execute(
        "SELECT id FROM appointments WHERE datetime = ? AND status != ?",
        (slot, STATUS_REJECTED),
    ).fetchone()
    return row is not None


def insert_lead(
    conn: sqlite3.Connection,
    *,
    name: str,
    email: str,
    phone: str,
    service: str,
    slot: str,
    materials: Iterable[str] = (),
) -> Dict[str, int]:
    now = _to_utc_iso(datetime.now(timezone.utc))
    flags = {column: 0 for column in MATERIAL_COLUMNS.values()}
    for item in materials:
        column = MATERIAL_COLUMNS.get(item)
        if column:
            flags[column] = 1

    with conn:
        client_id = conn.execute(
            "INSERT INTO clients (name, email, phone, service, created_at) VALUES (?, ?, ?, ?, ?)",
            (name, email, phone, service, now),
        ).lastrowid
        appointment_id = conn.execute(
            "INSERT INTO appointments (client_id, datetime, status) VALUES (?, ?, ?)",
            (client_id, slot, STATUS_PENDING),
        ).lastrowid
        conn.execute(
            "INSERT INTO materials (client_id, guide, rates, portfolio) VALUES (?, ?, ?, ?)",
            (client_id, flags["guide"], flags["rates"], flags["portfolio"]),
        )
    return {"clientId": int(client_id), "appointmentId": int(appointment_id)}


def get_availability(conn: sqlite3.Connection, day: str) -> List[Dict[str, Any]]:
    slots: List[Dict[str, Any]] = []
    for hour in range(OPENING_HOUR, CLOSING_HOUR):
        for minute in range(0, 60, SLOT_STEP_MINUTES):
            label = f"{hour:02d}:{minute:02d}"
            slots.append({"time": label, "available": not is_slot_taken(conn, slot_iso(day, label))})
    return slots


def list_requests(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    return [dict(row) for row in conn.execute(REQUESTS_QUERY).fetchall()]


def update_appointment_status(conn: sqlite3.Connection, appointment_id: int, status: str) -> bool:
    if status not in APPOINTMENT_STATUSES:
        raise ValueError(f"unknown appointment status: {status}")
    cursor = conn.execute("UPDATE appointments SET status = ? WHERE id = ?", (status, appointment_id))
    conn.commit()
    return cursor.rowcount > 0


def generate_requests_csv(conn: sqlite3.Connection) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in list_requests(conn):
        writer.writerow(
            [
                row["name"],
                row["email"],
                row["phone"],
                row["service"],
                row["datetime"],
                row["status"],
                "1" if row["guide"] else "0",
                "1" if row["rates"] else "0",
                "1" if row["portfolio"] else "0",
            ]
        )
    return buffer.getvalue().rstrip("\n")
