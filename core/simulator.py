"""
simulator.py — Demo crossing generator.

Stands in for a transponder decoder: picks a random active kart and feeds a
crossing through the normal ingestion path, so simulated laps obey the same
lap-number and lap-time rules as real ones.
"""

from __future__ import annotations

import logging
import random
import sqlite3
from datetime import timedelta
from typing import Optional

from core.database import (
    get_all_karts, get_current_session, get_last_lap_time,
    parse_timestamp, utc_now,
)
from core.errors import InvalidStateError
from core.timing_engine import ingest_crossing

logger = logging.getLogger("karttiming.sim")

# Realistic rental-kart lap window, ms
LAP_MIN_MS = 42000
LAP_MAX_MS = 50000


def random_telemetry(rng: random.Random) -> dict:
    return {
        "speed": round(45 + rng.random() * 30),        # km/h
        "rpm": round(6000 + rng.random() * 2500),
        "throttle": round(65 + rng.random() * 35),     # %
        "brake": round(rng.random() * 25),             # %
        "g_force": round(1.2 + rng.random() * 2.5, 2),
    }


def simulate_crossing(conn: sqlite3.Connection,
                      rng: Optional[random.Random] = None) -> tuple[dict, sqlite3.Row]:
    """Ingest one simulated crossing. Returns (lap, kart).

    The crossing lands 42-50 s after the chosen kart's previous one, or now
    for its first crossing of the session.
    """
    rng = rng or random.Random()

    session = get_current_session(conn)
    if session is None or session["status"] != "running":
        raise InvalidStateError("No active session")

    karts = get_all_karts(conn, active_only=True)
    if not karts:
        raise InvalidStateError("No active karts")

    kart = rng.choice(karts)
    last = get_last_lap_time(conn, session["id"], kart["id"])
    if last is None:
        crossing = utc_now()
    else:
        lap_ms = rng.randint(LAP_MIN_MS, LAP_MAX_MS)
        crossing = parse_timestamp(last["crossing_time"]) + timedelta(milliseconds=lap_ms)

    lap = ingest_crossing(conn, kart["transponder_id"], crossing,
                          telemetry=random_telemetry(rng))
    logger.debug("Simulated crossing for kart #%d", kart["kart_number"])
    return lap, kart
