"""
database.py — SQLite schema init and CRUD for sessions, karts, lap times
and telemetry.

State is volatile: the default database lives in memory and is rebuilt (and
re-seeded) on every server start. All writers go through ``transaction()``,
which serializes them on one lock and commits once at the outermost level,
so bulk deletes are all-or-nothing and readers holding ``locked()`` never
see half of a reset.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from core.errors import InvalidArgumentError, NotFoundError

DB_PATH = ":memory:"

TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

VALID_STATUSES = ("running", "stopped", "paused")

DEFAULT_COLOR = "#dc2626"
DEFAULT_TARGET_LAPS = 20


def get_connection(db_path: Union[str, Path, None] = None) -> sqlite3.Connection:
    """Return a connection shared between the event loop and worker threads."""
    if db_path is None:
        db_path = DB_PATH
    conn = sqlite3.connect(str(db_path), timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if str(db_path) != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    name                TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'stopped',
    start_time          TEXT,
    end_time            TEXT,
    track_conditions    TEXT NOT NULL DEFAULT '{}',
    target_laps         INTEGER NOT NULL DEFAULT 20,
    created_at          TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS karts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    kart_number     INTEGER NOT NULL UNIQUE,
    driver_name     TEXT NOT NULL,
    transponder_id  TEXT NOT NULL UNIQUE,
    color           TEXT NOT NULL DEFAULT '#dc2626',
    is_active       INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS lap_times (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      INTEGER NOT NULL REFERENCES sessions(id),
    kart_id         INTEGER NOT NULL REFERENCES karts(id),
    lap_number      INTEGER NOT NULL,
    lap_time        INTEGER NOT NULL,
    crossing_time   TEXT NOT NULL,
    is_valid        INTEGER NOT NULL DEFAULT 1,
    UNIQUE(session_id, kart_id, lap_number)
);

CREATE TABLE IF NOT EXISTS telemetry_data (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  INTEGER NOT NULL REFERENCES sessions(id),
    kart_id     INTEGER NOT NULL REFERENCES karts(id),
    lap_number  INTEGER NOT NULL,
    timestamp   TEXT NOT NULL,
    speed       REAL,
    rpm         REAL,
    throttle    REAL,
    brake       REAL,
    g_force     REAL
);

CREATE INDEX IF NOT EXISTS idx_lap_times_session_kart ON lap_times(session_id, kart_id, crossing_time);
CREATE INDEX IF NOT EXISTS idx_lap_times_session_crossing ON lap_times(session_id, crossing_time);
CREATE INDEX IF NOT EXISTS idx_telemetry_session ON telemetry_data(session_id);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


# ======================================================================
# LOCKING / TRANSACTIONS
# ======================================================================

_lock = threading.RLock()
_depth: dict[int, int] = {}


@contextmanager
def locked(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Hold the store lock for a consistent multi-query read."""
    with _lock:
        yield conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Serialize a write and commit it as one unit.

    Re-entrant: nested calls join the outermost transaction, which commits
    on success and rolls back everything on any exception.
    """
    with _lock:
        key = id(conn)
        _depth[key] = _depth.get(key, 0) + 1
        try:
            yield conn
        except BaseException:
            _depth[key] -= 1
            if _depth[key] == 0:
                del _depth[key]
                conn.rollback()
            raise
        else:
            _depth[key] -= 1
            if _depth[key] == 0:
                del _depth[key]
                conn.commit()


# ======================================================================
# TIMESTAMPS
# ======================================================================

def utc_now() -> datetime:
    """Naive UTC now; every stored instant is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def format_timestamp(dt: datetime) -> str:
    """Fixed-width text so that ORDER BY on the column is chronological."""
    return to_utc(dt).strftime(TS_FORMAT)


def parse_timestamp(ts: str) -> datetime:
    """Parse 'YYYY-MM-DD HH:MM:SS.ffffff' to datetime."""
    return datetime.strptime(ts, TS_FORMAT)


# ======================================================================
# ROW CONVERSION
# ======================================================================

def session_to_dict(row: Optional[sqlite3.Row]) -> dict:
    if row is None:
        return {}
    d = dict(row)
    d["track_conditions"] = json.loads(d["track_conditions"] or "{}")
    return d


def kart_to_dict(row: Optional[sqlite3.Row]) -> dict:
    if row is None:
        return {}
    d = dict(row)
    d["is_active"] = bool(d["is_active"])
    return d


def lap_to_dict(row: Optional[sqlite3.Row]) -> dict:
    if row is None:
        return {}
    d = dict(row)
    d["is_valid"] = bool(d["is_valid"])
    return d


# ======================================================================
# SESSIONS
# ======================================================================

def create_session(conn: sqlite3.Connection, name: str,
                   status: str = "stopped",
                   track_conditions: Optional[dict] = None,
                   target_laps: int = DEFAULT_TARGET_LAPS) -> int:
    """Insert a new session and return its id.

    A session created directly in 'running' gets its start_time now.
    """
    if not name or not name.strip():
        raise InvalidArgumentError("Session name is required")
    if status not in VALID_STATUSES:
        raise InvalidArgumentError(f"Invalid status: {status!r}")
    start_time = format_timestamp(utc_now()) if status == "running" else None
    with transaction(conn):
        cur = conn.execute(
            """INSERT INTO sessions (name, status, start_time, track_conditions, target_laps)
               VALUES (?, ?, ?, ?, ?)""",
            (name.strip(), status, start_time,
             json.dumps(track_conditions or {}), target_laps)
        )
    return cur.lastrowid


def get_session(conn: sqlite3.Connection, session_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM sessions WHERE id=?", (session_id,)).fetchone()


def require_session(conn: sqlite3.Connection, session_id: int) -> sqlite3.Row:
    session = get_session(conn, session_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return session


def get_all_sessions(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute("SELECT * FROM sessions ORDER BY id").fetchall()


def get_current_session(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
    """Return the live session.

    The first running session (lowest id) wins; with nothing running, the
    earliest-created session is current. None only when no session exists.
    """
    row = conn.execute(
        "SELECT * FROM sessions WHERE status='running' ORDER BY id ASC LIMIT 1"
    ).fetchone()
    if row is not None:
        return row
    return conn.execute("SELECT * FROM sessions ORDER BY id ASC LIMIT 1").fetchone()


def update_session(conn: sqlite3.Connection, session_id: int, **kwargs) -> None:
    """Update session fields. Pass field=value pairs."""
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [session_id]
    with transaction(conn):
        conn.execute(f"UPDATE sessions SET {sets} WHERE id=?", vals)


# ======================================================================
# KARTS
# ======================================================================

def create_kart(conn: sqlite3.Connection, kart_number: int, driver_name: str,
                transponder_id: str, color: str = DEFAULT_COLOR) -> int:
    """Register a kart and return its id.

    Kart number (1-999) and transponder id must both be unique across the
    whole kart set, inactive karts included.
    """
    if not isinstance(kart_number, int) or not 1 <= kart_number <= 999:
        raise InvalidArgumentError("Kart number must be between 1 and 999")
    if not driver_name or not driver_name.strip():
        raise InvalidArgumentError("Driver name is required")
    if not transponder_id or not transponder_id.strip():
        raise InvalidArgumentError("Transponder ID is required")
    transponder_id = transponder_id.strip()

    with transaction(conn):
        if get_kart_by_number(conn, kart_number) is not None:
            raise InvalidArgumentError(f"Kart number {kart_number} already registered")
        if get_kart_by_transponder(conn, transponder_id) is not None:
            raise InvalidArgumentError(f"Transponder {transponder_id} already registered")
        try:
            cur = conn.execute(
                """INSERT INTO karts (kart_number, driver_name, transponder_id, color)
                   VALUES (?, ?, ?, ?)""",
                (kart_number, driver_name.strip(), transponder_id, color or DEFAULT_COLOR)
            )
        except sqlite3.IntegrityError as e:
            raise InvalidArgumentError(str(e)) from e
    return cur.lastrowid


def get_kart(conn: sqlite3.Connection, kart_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM karts WHERE id=?", (kart_id,)).fetchone()


def get_kart_by_number(conn: sqlite3.Connection,
                       kart_number: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM karts WHERE kart_number=?", (kart_number,)
    ).fetchone()


def get_kart_by_transponder(conn: sqlite3.Connection,
                            transponder_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM karts WHERE transponder_id=?", (transponder_id,)
    ).fetchone()


def get_all_karts(conn: sqlite3.Connection,
                  active_only: bool = False) -> list[sqlite3.Row]:
    if active_only:
        return conn.execute(
            "SELECT * FROM karts WHERE is_active=1 ORDER BY id"
        ).fetchall()
    return conn.execute("SELECT * FROM karts ORDER BY id").fetchall()


def deactivate_kart(conn: sqlite3.Connection, kart_id: int) -> sqlite3.Row:
    """Soft-delete: the kart leaves selection lists but keeps its laps."""
    with transaction(conn):
        if get_kart(conn, kart_id) is None:
            raise NotFoundError(f"Kart {kart_id} not found")
        conn.execute("UPDATE karts SET is_active=0 WHERE id=?", (kart_id,))
        return get_kart(conn, kart_id)


def clear_all_karts(conn: sqlite3.Connection) -> None:
    """Hard reset of the kart set.

    Lap times and telemetry reference kart ids, and the id sequences restart
    at 1, so they go too. Sessions are kept.
    """
    with transaction(conn):
        conn.execute("DELETE FROM telemetry_data")
        conn.execute("DELETE FROM lap_times")
        conn.execute("DELETE FROM karts")
        conn.execute(
            "DELETE FROM sqlite_sequence WHERE name IN ('karts', 'lap_times', 'telemetry_data')"
        )


# ======================================================================
# LAP TIMES
# ======================================================================

def add_lap_time(conn: sqlite3.Connection, session_id: int, kart_id: int,
                 lap_number: int, lap_time: int, crossing_time: datetime,
                 is_valid: bool) -> int:
    with transaction(conn):
        cur = conn.execute(
            """INSERT INTO lap_times
               (session_id, kart_id, lap_number, lap_time, crossing_time, is_valid)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (session_id, kart_id, lap_number, lap_time,
             format_timestamp(crossing_time), int(is_valid))
        )
    return cur.lastrowid


def get_lap_time(conn: sqlite3.Connection, lap_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM lap_times WHERE id=?", (lap_id,)).fetchone()


def get_lap_times(conn: sqlite3.Connection, session_id: int,
                  kart_id: Optional[int] = None,
                  limit: Optional[int] = None) -> list[sqlite3.Row]:
    """Lap times of a session, newest crossing first."""
    query = "SELECT * FROM lap_times WHERE session_id=?"
    params: list = [session_id]
    if kart_id is not None:
        query += " AND kart_id=?"
        params.append(kart_id)
    query += " ORDER BY crossing_time DESC, id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return conn.execute(query, params).fetchall()


def get_last_lap_time(conn: sqlite3.Connection, session_id: int,
                      kart_id: int) -> Optional[sqlite3.Row]:
    rows = get_lap_times(conn, session_id, kart_id, limit=1)
    return rows[0] if rows else None


def get_best_lap_time(conn: sqlite3.Connection, session_id: int,
                      kart_id: Optional[int] = None) -> Optional[sqlite3.Row]:
    """Fastest valid lap of the session (or of one kart in it)."""
    query = "SELECT * FROM lap_times WHERE session_id=? AND is_valid=1"
    params: list = [session_id]
    if kart_id is not None:
        query += " AND kart_id=?"
        params.append(kart_id)
    query += " ORDER BY lap_time ASC, crossing_time DESC, id DESC LIMIT 1"
    return conn.execute(query, params).fetchone()


def delete_session_history(conn: sqlite3.Connection, session_id: int) -> None:
    """Remove every lap time and telemetry row of one session."""
    with transaction(conn):
        conn.execute("DELETE FROM telemetry_data WHERE session_id=?", (session_id,))
        conn.execute("DELETE FROM lap_times WHERE session_id=?", (session_id,))


# ======================================================================
# TELEMETRY
# ======================================================================

TELEMETRY_FIELDS = ("speed", "rpm", "throttle", "brake", "g_force")


def add_telemetry(conn: sqlite3.Connection, session_id: int, kart_id: int,
                  lap_number: int, timestamp: datetime, data: dict) -> int:
    """Write-only record of vehicle metrics captured at a crossing."""
    values = [data.get(f) for f in TELEMETRY_FIELDS]
    with transaction(conn):
        cur = conn.execute(
            f"""INSERT INTO telemetry_data
                (session_id, kart_id, lap_number, timestamp, {", ".join(TELEMETRY_FIELDS)})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (session_id, kart_id, lap_number, format_timestamp(timestamp), *values)
        )
    return cur.lastrowid


def count_telemetry(conn: sqlite3.Connection, session_id: int) -> int:
    return conn.execute(
        "SELECT COUNT(*) AS cnt FROM telemetry_data WHERE session_id=?",
        (session_id,)
    ).fetchone()["cnt"]


# ======================================================================
# DEFAULT DATA
# ======================================================================

DEFAULT_SESSION = {
    "name": "Sessão de Treino",
    "track_conditions": {"weather": "sunny", "temperature": 24, "surface": "dry"},
}

DEFAULT_KARTS = [
    (23, "Marcus Silva", "T001", "#dc2626"),
    (42, "Alex Johnson", "T002", "#3b82f6"),
    (18, "Emma Davis", "T003", "#10b981"),
    (7, "Ryan Chen", "T004", "#f59e0b"),
    (91, "Sofia Rodriguez", "T005", "#8b5cf6"),
    (15, "Carlos Mendes", "T006", "#e11d48"),
    (33, "Isabella Santos", "T007", "#0ea5e9"),
    (44, "Diego Oliveira", "T008", "#22c55e"),
    (88, "Marina Costa", "T009", "#f97316"),
    (12, "Pedro Almeida", "T010", "#a855f7"),
    (77, "Beatriz Lima", "T011", "#ef4444"),
    (21, "Gabriel Rocha", "T012", "#06b6d4"),
    (55, "Camila Ferreira", "T013", "#84cc16"),
    (99, "Lucas Barbosa", "T014", "#f59e0b"),
    (3, "Valentina Ramos", "T015", "#8b5cf6"),
]


def seed_defaults(conn: sqlite3.Connection) -> None:
    """Create the default practice session and kart roster on an empty store."""
    with transaction(conn):
        if get_current_session(conn) is None:
            create_session(conn, DEFAULT_SESSION["name"],
                           track_conditions=DEFAULT_SESSION["track_conditions"])
        if not get_all_karts(conn):
            for number, driver, transponder, color in DEFAULT_KARTS:
                create_kart(conn, number, driver, transponder, color)
