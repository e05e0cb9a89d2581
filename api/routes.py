"""
routes.py — REST API endpoints for KartTiming.

All endpoints under /api/. Wraps the store in core/database.py and the
timing logic in core/timing_engine.py; every successful mutation is pushed
to dashboard clients through api/websocket.py.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from core.database import (
    create_kart, create_session, clear_all_karts, deactivate_kart,
    get_all_karts, get_all_sessions, get_current_session, get_kart,
    kart_to_dict, require_session, session_to_dict,
)
from core.errors import (
    InvalidArgumentError, InvalidStateError, NotFoundError, TimingError,
)
from core.simulator import simulate_crossing
from core.timing_engine import (
    get_leaderboard, get_recent_laps, get_session_stats, ingest_crossing,
    reset_session, set_session_status,
)
from api.websocket import manager as ws_manager

logger = logging.getLogger("karttiming.api")

router = APIRouter()

# Laps included in each lap_completed broadcast
BROADCAST_RECENT_LAPS = 5


# ─── Helper ──────────────────────────────────────────────────────────

def _get_conn(request: Request) -> sqlite3.Connection:
    return request.app.state.conn


def _http_error(e: TimingError) -> HTTPException:
    """Map core errors onto HTTP status codes."""
    if isinstance(e, NotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, InvalidArgumentError):
        return HTTPException(400, str(e))
    if isinstance(e, InvalidStateError):
        return HTTPException(409, str(e))
    return HTTPException(500, str(e))


async def _broadcast_lap(conn: sqlite3.Connection, lap: dict, kart: dict) -> None:
    """Recompute dashboard views for the lap's session and push them."""
    session_id = lap["session_id"]
    await ws_manager.broadcast_lap(
        session_id, lap, kart,
        leaderboard=get_leaderboard(conn, session_id),
        session_stats=get_session_stats(conn, session_id),
        recent_laps=get_recent_laps(conn, session_id, BROADCAST_RECENT_LAPS),
    )


# ─── Pydantic models ─────────────────────────────────────────────────

class SessionCreate(BaseModel):
    name: str
    status: str = "stopped"
    track_conditions: dict = Field(default_factory=dict)
    target_laps: int = Field(default=20, ge=1)

class SessionStatusUpdate(BaseModel):
    status: str

class KartCreate(BaseModel):
    kart_number: int
    driver_name: str
    transponder_id: str
    color: str = "#dc2626"

class TelemetryBody(BaseModel):
    speed: Optional[float] = None
    rpm: Optional[float] = None
    throttle: Optional[float] = None
    brake: Optional[float] = None
    g_force: Optional[float] = None

class CrossingCreate(BaseModel):
    transponder_id: str
    timestamp: Optional[datetime] = None
    telemetry: Optional[TelemetryBody] = None


# ═══════════════════════════════════════════════════════════════════════
# SESSIONS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/sessions")
async def list_sessions(conn: sqlite3.Connection = Depends(_get_conn)):
    return [session_to_dict(s) for s in get_all_sessions(conn)]


@router.post("/sessions")
async def create_session_endpoint(body: SessionCreate,
                                  conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        session_id = create_session(conn, body.name, body.status,
                                    body.track_conditions, body.target_laps)
        session = session_to_dict(require_session(conn, session_id))
    except TimingError as e:
        raise _http_error(e)
    logger.info("Session %d created: %s", session_id, body.name)
    await ws_manager.broadcast_session("session_created", session)
    return session


@router.get("/sessions/current")
async def current_session(conn: sqlite3.Connection = Depends(_get_conn)):
    session = get_current_session(conn)
    if session is None:
        raise HTTPException(404, "No active session found")
    return session_to_dict(session)


@router.get("/sessions/{session_id}")
async def get_session_endpoint(session_id: int,
                               conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        return session_to_dict(require_session(conn, session_id))
    except TimingError as e:
        raise _http_error(e)


@router.put("/sessions/{session_id}")
@router.put("/sessions/{session_id}/status")
@router.patch("/sessions/{session_id}/status")
async def update_session_status(session_id: int, body: SessionStatusUpdate,
                                conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        session = set_session_status(conn, session_id, body.status)
    except TimingError as e:
        raise _http_error(e)
    await ws_manager.broadcast_session("session_status_changed", session)
    return session


@router.post("/sessions/{session_id}/reset")
async def reset_session_endpoint(session_id: int,
                                 conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        session = reset_session(conn, session_id)
    except TimingError as e:
        raise _http_error(e)
    await ws_manager.broadcast_session_reset(session_id)
    await ws_manager.broadcast_session("session_status_changed", session)
    return {"message": "Session reset successfully", "session": session}


# ═══════════════════════════════════════════════════════════════════════
# DASHBOARD VIEWS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/sessions/{session_id}/leaderboard")
async def leaderboard(session_id: int,
                      conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        return get_leaderboard(conn, session_id)
    except TimingError as e:
        raise _http_error(e)


@router.get("/sessions/{session_id}/stats")
async def session_stats(session_id: int,
                        conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        return get_session_stats(conn, session_id)
    except TimingError as e:
        raise _http_error(e)


@router.get("/sessions/{session_id}/recent-laps")
async def recent_laps(session_id: int, limit: int = Query(10, ge=1, le=200),
                      conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        return get_recent_laps(conn, session_id, limit)
    except TimingError as e:
        raise _http_error(e)


# ═══════════════════════════════════════════════════════════════════════
# KARTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/karts")
async def list_karts(active_only: bool = False,
                     conn: sqlite3.Connection = Depends(_get_conn)):
    return [kart_to_dict(k) for k in get_all_karts(conn, active_only)]


@router.post("/karts")
async def create_kart_endpoint(body: KartCreate,
                               conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        kart_id = create_kart(conn, body.kart_number, body.driver_name,
                              body.transponder_id, body.color)
    except TimingError as e:
        raise _http_error(e)
    kart = kart_to_dict(get_kart(conn, kart_id))
    logger.info("Kart #%d registered (%s, %s)", body.kart_number,
                body.driver_name, body.transponder_id)
    await ws_manager.broadcast_kart("kart_added", kart)
    return kart


# Registered before /karts/{kart_id} so "clear" is not parsed as an id
@router.delete("/karts/clear")
async def clear_karts(conn: sqlite3.Connection = Depends(_get_conn)):
    clear_all_karts(conn)
    logger.info("All karts cleared")
    await ws_manager.broadcast_kart("karts_cleared")
    return {"message": "All karts cleared successfully"}


@router.delete("/karts/{kart_id}")
async def remove_kart(kart_id: int,
                      conn: sqlite3.Connection = Depends(_get_conn)):
    try:
        kart = kart_to_dict(deactivate_kart(conn, kart_id))
    except TimingError as e:
        raise _http_error(e)
    logger.info("Kart #%d deactivated", kart["kart_number"])
    await ws_manager.broadcast_kart("kart_removed", kart)
    return {"message": "Kart removed successfully", "kart": kart}


# ═══════════════════════════════════════════════════════════════════════
# TIMING (decoder ingestion)
# ═══════════════════════════════════════════════════════════════════════

@router.post("/timing")
async def record_crossing(body: CrossingCreate,
                          conn: sqlite3.Connection = Depends(_get_conn)):
    """Crossing from an external decoder."""
    telemetry = body.telemetry.model_dump(exclude_none=True) if body.telemetry else None
    try:
        lap = ingest_crossing(conn, body.transponder_id, body.timestamp, telemetry)
    except TimingError as e:
        raise _http_error(e)

    kart = kart_to_dict(get_kart(conn, lap["kart_id"]))
    await _broadcast_lap(conn, lap, kart)
    return {
        "message": "Lap time recorded",
        "lap_time": lap,
        "kart": {"kart_number": kart["kart_number"], "driver_name": kart["driver_name"]},
    }


@router.post("/simulate/lap-crossing")
async def simulate_lap_crossing(conn: sqlite3.Connection = Depends(_get_conn)):
    """Development helper: one random crossing for an active kart."""
    try:
        lap, kart_row = simulate_crossing(conn)
    except TimingError as e:
        raise _http_error(e)

    kart = kart_to_dict(kart_row)
    await _broadcast_lap(conn, lap, kart)
    return {"message": "Simulated lap crossing", "lap_time": lap, "kart": kart}


# ═══════════════════════════════════════════════════════════════════════
# SYSTEM STATUS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/status")
async def system_status(conn: sqlite3.Connection = Depends(_get_conn)):
    current = get_current_session(conn)
    lap_count = 0
    if current is not None:
        lap_count = conn.execute(
            "SELECT COUNT(*) AS cnt FROM lap_times WHERE session_id=?",
            (current["id"],)
        ).fetchone()["cnt"]

    return {
        "server": "KartTiming",
        "version": "1.0",
        "current_session": session_to_dict(current) if current else None,
        "lap_count": lap_count,
        "kart_count": len(get_all_karts(conn)),
        "ws_connections": ws_manager.connection_count,
    }
