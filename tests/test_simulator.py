"""test_simulator.py — Demo crossings go through the normal ingestion rules."""

import random

import pytest

from core import database
from core import simulator
from core.errors import InvalidStateError


def test_simulated_crossings_follow_lap_rules(conn, session_id):
    database.seed_defaults(conn)
    rng = random.Random(7)

    for _ in range(60):
        simulator.simulate_crossing(conn, rng)

    karts = database.get_all_karts(conn)
    for kart in karts:
        laps = sorted(database.get_lap_times(conn, session_id, kart["id"]),
                      key=lambda l: l["lap_number"])
        assert [l["lap_number"] for l in laps] == list(range(1, len(laps) + 1))
        if laps:
            assert laps[0]["lap_time"] == 0
        for lap in laps[1:]:
            assert simulator.LAP_MIN_MS <= lap["lap_time"] <= simulator.LAP_MAX_MS
            assert lap["is_valid"] == 1

    assert database.count_telemetry(conn, session_id) == 60


def test_simulator_skips_inactive_karts(conn, session_id):
    a = database.create_kart(conn, 1, "A", "TA")
    database.create_kart(conn, 2, "B", "TB")
    database.deactivate_kart(conn, a)

    for _ in range(5):
        _, kart = simulator.simulate_crossing(conn, random.Random(1))
        assert kart["kart_number"] == 2


def test_simulator_needs_running_session(conn):
    database.create_session(conn, "Practice")
    database.create_kart(conn, 1, "A", "TA")
    with pytest.raises(InvalidStateError):
        simulator.simulate_crossing(conn)


def test_simulator_needs_active_karts(conn, session_id):
    with pytest.raises(InvalidStateError):
        simulator.simulate_crossing(conn)


def test_random_telemetry_ranges():
    data = simulator.random_telemetry(random.Random(3))
    assert 45 <= data["speed"] <= 75
    assert 6000 <= data["rpm"] <= 8500
    assert 65 <= data["throttle"] <= 100
    assert 0 <= data["brake"] <= 25
    assert 1.2 <= data["g_force"] <= 3.7
    assert set(data) == set(database.TELEMETRY_FIELDS)
