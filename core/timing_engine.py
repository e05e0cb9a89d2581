"""
timing_engine.py — Crossing ingestion, lap classification, leaderboard,
session statistics, recent laps, and the session lifecycle.

Lap times are integer milliseconds. A lap counts toward rankings only when
it is longer than MIN_VALID_LAP_MS; shorter ones are stored for audit and
flagged invalid.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from core.database import (
    VALID_STATUSES,
    add_lap_time, add_telemetry, delete_session_history,
    format_timestamp, get_best_lap_time, get_current_session, get_kart,
    get_kart_by_transponder, get_last_lap_time, get_lap_time, get_session,
    lap_to_dict, locked, parse_timestamp, require_session, session_to_dict,
    to_utc, transaction, update_session, utc_now,
)
from core.errors import InvalidArgumentError, InvalidStateError, NotFoundError

logger = logging.getLogger("karttiming.engine")

# Anything at or below this is a double trigger or a false crossing.
MIN_VALID_LAP_MS = 30000


def format_lap_time(ms: Optional[int]) -> str:
    """Format milliseconds as M:SS.mmm ('' for None)."""
    if ms is None:
        return ""
    neg = ms < 0
    ms = abs(int(ms))
    minutes, rest = divmod(ms, 60000)
    seconds, millis = divmod(rest, 1000)
    text = f"{minutes}:{seconds:02d}.{millis:03d}"
    return f"-{text}" if neg else text


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() * 1000))


# ---------------------------------------------------------------------------
# Crossing ingestion
# ---------------------------------------------------------------------------

def ingest_crossing(conn: sqlite3.Connection, transponder_id: str,
                    crossing_time: Optional[datetime] = None,
                    telemetry: Optional[dict] = None) -> dict:
    """Record one start/finish crossing and return the stored lap.

    Raises NotFoundError for an unregistered transponder, InvalidStateError
    when the current session is not running, and InvalidArgumentError for a
    crossing earlier than the kart's previous one in this session.
    """
    if not transponder_id:
        raise InvalidArgumentError("Transponder ID required")

    with transaction(conn):
        kart = get_kart_by_transponder(conn, transponder_id)
        if kart is None:
            logger.warning("Crossing from unknown transponder %s", transponder_id)
            raise NotFoundError(f"Kart not found for transponder {transponder_id}")

        session = get_current_session(conn)
        if session is None or session["status"] != "running":
            logger.warning("Crossing from %s rejected: no running session", transponder_id)
            raise InvalidStateError("No active session")

        crossing = to_utc(crossing_time) if crossing_time else utc_now()
        last = get_last_lap_time(conn, session["id"], kart["id"])

        if last is None:
            lap_number = 1
            lap_time = 0
        else:
            previous = parse_timestamp(last["crossing_time"])
            if crossing < previous:
                raise InvalidArgumentError(
                    f"Crossing {format_timestamp(crossing)} precedes previous "
                    f"crossing {last['crossing_time']} for kart #{kart['kart_number']}"
                )
            lap_number = last["lap_number"] + 1
            lap_time = _elapsed_ms(previous, crossing)

        is_valid = lap_time > MIN_VALID_LAP_MS
        lap_id = add_lap_time(conn, session["id"], kart["id"], lap_number,
                              lap_time, crossing, is_valid)
        if telemetry:
            add_telemetry(conn, session["id"], kart["id"], lap_number,
                          crossing, telemetry)
        lap = lap_to_dict(get_lap_time(conn, lap_id))

    logger.info("Kart #%d lap %d: %s%s", kart["kart_number"], lap_number,
                format_lap_time(lap_time), "" if is_valid else " (invalid)")
    return lap


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------

def _standing_sort_key(entry: dict) -> tuple:
    # More valid laps first, then fastest best lap; no best lap sorts last.
    best = entry["best_lap"]
    return (-entry["laps"], best is None, best if best is not None else 0)


def get_leaderboard(conn: sqlite3.Connection, session_id: int) -> list[dict]:
    """Ranked standings, one entry per registered kart (inactive included)."""
    with locked(conn):
        require_session(conn, session_id)
        rows = conn.execute(
            """SELECT k.id, k.kart_number, k.driver_name, k.color, k.is_active,
                 (SELECT COUNT(*) FROM lap_times l
                   WHERE l.session_id=? AND l.kart_id=k.id AND l.is_valid=1) AS laps,
                 (SELECT MIN(l.lap_time) FROM lap_times l
                   WHERE l.session_id=? AND l.kart_id=k.id AND l.is_valid=1) AS best_lap,
                 (SELECT l.lap_time FROM lap_times l
                   WHERE l.session_id=? AND l.kart_id=k.id
                   ORDER BY l.crossing_time DESC, l.id DESC LIMIT 1) AS last_lap
               FROM karts k
               ORDER BY k.id""",
            (session_id, session_id, session_id)
        ).fetchall()

    standings = [
        {
            "position": 0,
            "kart_id": r["id"],
            "kart_number": r["kart_number"],
            "driver_name": r["driver_name"],
            "color": r["color"],
            "best_lap": r["best_lap"],
            "last_lap": r["last_lap"],
            "gap": None,
            "laps": r["laps"],
            "is_active": bool(r["is_active"]),
        }
        for r in rows
    ]
    standings.sort(key=_standing_sort_key)

    # The leader is picked on lap count first, so a gap can come out
    # negative when a slower kart leads on laps. Reported as is.
    leader_best = standings[0]["best_lap"] if standings else None
    for index, entry in enumerate(standings):
        entry["position"] = index + 1
        if index > 0 and entry["best_lap"] is not None and leader_best is not None:
            entry["gap"] = entry["best_lap"] - leader_best

    return standings


# ---------------------------------------------------------------------------
# Session statistics
# ---------------------------------------------------------------------------

def get_session_stats(conn: sqlite3.Connection, session_id: int,
                      now: Optional[datetime] = None) -> dict:
    """Point-in-time aggregate snapshot of a session."""
    with locked(conn):
        session = require_session(conn, session_id)
        kart_counts = conn.execute(
            "SELECT COUNT(*) AS total, COALESCE(SUM(is_active), 0) AS active FROM karts"
        ).fetchone()
        total_laps = conn.execute(
            "SELECT COUNT(*) AS cnt FROM lap_times WHERE session_id=? AND is_valid=1",
            (session_id,)
        ).fetchone()["cnt"]
        best = get_best_lap_time(conn, session_id)
        best_kart = get_kart(conn, best["kart_id"]) if best else None

    session_time = 0
    if session["start_time"]:
        now = to_utc(now) if now else utc_now()
        session_time = _elapsed_ms(parse_timestamp(session["start_time"]), now)

    best_lap = None
    if best is not None and best_kart is not None:
        best_lap = {
            "time": best["lap_time"],
            "kart_number": best_kart["kart_number"],
            "driver_name": best_kart["driver_name"],
        }

    return {
        "session_time": session_time,
        "active_karts": kart_counts["active"],
        "total_karts": kart_counts["total"],
        "best_lap": best_lap,
        "total_laps": total_laps,
    }


def get_recent_laps(conn: sqlite3.Connection, session_id: int,
                    limit: int = 10) -> list[dict]:
    """Latest laps (newest first), each flagged as personal best or not and
    given its gap to the session's best valid lap."""
    if limit < 1:
        raise InvalidArgumentError("limit must be at least 1")

    with locked(conn):
        require_session(conn, session_id)
        rows = conn.execute(
            """SELECT l.*, k.kart_number, k.driver_name, k.color
               FROM lap_times l
               JOIN karts k ON k.id = l.kart_id
               WHERE l.session_id=?
               ORDER BY l.crossing_time DESC, l.id DESC
               LIMIT ?""",
            (session_id, limit)
        ).fetchall()
        session_best = get_best_lap_time(conn, session_id)
        personal_best: dict[int, Optional[int]] = {}
        for r in rows:
            if r["kart_id"] not in personal_best:
                pb = get_best_lap_time(conn, session_id, r["kart_id"])
                personal_best[r["kart_id"]] = pb["id"] if pb else None

    recent = []
    for r in rows:
        recent.append({
            "lap_id": r["id"],
            "kart_id": r["kart_id"],
            "kart_number": r["kart_number"],
            "driver_name": r["driver_name"],
            "color": r["color"],
            "lap_number": r["lap_number"],
            "lap_time": r["lap_time"],
            "timestamp": r["crossing_time"],
            "is_valid": bool(r["is_valid"]),
            "is_personal_best": personal_best[r["kart_id"]] == r["id"],
            "gap_to_best": (r["lap_time"] - session_best["lap_time"]
                            if session_best else None),
        })
    return recent


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

def set_session_status(conn: sqlite3.Connection, session_id: int, status: str,
                       end_time: Optional[datetime] = None) -> dict:
    """Move a session to running / stopped / paused.

    start_time is set on the first transition into running and then kept
    across stop/pause/run cycles until reset_session clears it. Stopping
    stamps end_time; any other status clears it.
    """
    if status not in VALID_STATUSES:
        raise InvalidArgumentError(f"Invalid status: {status!r}")

    with transaction(conn):
        session = require_session(conn, session_id)
        now = utc_now()
        fields: dict = {"status": status}
        if status == "running" and not session["start_time"]:
            fields["start_time"] = format_timestamp(now)
        if status == "stopped":
            fields["end_time"] = format_timestamp(end_time or now)
        else:
            fields["end_time"] = None
        update_session(conn, session_id, **fields)
        updated = session_to_dict(get_session(conn, session_id))

    logger.info("Session %d: %s -> %s", session_id, session["status"], status)
    return updated


def reset_session(conn: sqlite3.Connection, session_id: int) -> dict:
    """Wipe a session's laps and telemetry and stop it with a clean clock.

    Runs as one transaction: readers see either the full history or none.
    """
    with transaction(conn):
        require_session(conn, session_id)
        delete_session_history(conn, session_id)
        update_session(conn, session_id, status="stopped",
                       start_time=None, end_time=None)
        updated = session_to_dict(get_session(conn, session_id))

    logger.info("Session %d reset", session_id)
    return updated
