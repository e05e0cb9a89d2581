"""
test_api.py — REST endpoints and WebSocket fan-out against a seeded server
(default session id 1, fifteen karts; transponder T004 is kart #7, id 4).
"""

from core.timing_engine import MIN_VALID_LAP_MS


def start(client, session_id=1):
    r = client.put(f"/api/sessions/{session_id}/status", json={"status": "running"})
    assert r.status_code == 200
    return r.json()


def crossing(client, transponder, timestamp, **extra):
    return client.post("/api/timing", json={
        "transponder_id": transponder, "timestamp": timestamp, **extra,
    })


# ======================================================================
# Sessions
# ======================================================================

def test_current_session_is_seeded(client):
    r = client.get("/api/sessions/current")
    assert r.status_code == 200
    session = r.json()
    assert session["id"] == 1
    assert session["status"] == "stopped"
    assert session["track_conditions"]["weather"] == "sunny"


def test_create_session(client):
    r = client.post("/api/sessions", json={"name": "Race", "target_laps": 15})
    assert r.status_code == 200
    assert r.json()["target_laps"] == 15
    assert client.get(f"/api/sessions/{r.json()['id']}").status_code == 200
    assert len(client.get("/api/sessions").json()) == 2


def test_status_transitions(client):
    running = start(client)
    assert running["start_time"] is not None

    r = client.patch("/api/sessions/1/status", json={"status": "stopped"})
    assert r.status_code == 200
    assert r.json()["end_time"] is not None

    r = client.put("/api/sessions/1", json={"status": "paused"})
    assert r.status_code == 200
    assert r.json()["status"] == "paused"
    assert r.json()["end_time"] is None

    assert client.put("/api/sessions/1/status", json={"status": "bogus"}).status_code == 400
    assert client.put("/api/sessions/1", json={"status": "bogus"}).status_code == 400
    assert client.put("/api/sessions/9/status", json={"status": "running"}).status_code == 404
    assert client.get("/api/sessions/9").status_code == 404


# ======================================================================
# Timing
# ======================================================================

def test_timing_flow(client):
    start(client)

    r = crossing(client, "T004", "2026-06-15T10:00:00")
    assert r.status_code == 200
    body = r.json()
    assert body["lap_time"]["lap_number"] == 1
    assert body["lap_time"]["lap_time"] == 0
    assert body["lap_time"]["is_valid"] is False
    assert body["kart"] == {"kart_number": 7, "driver_name": "Ryan Chen"}

    r = crossing(client, "T004", "2026-06-15T10:00:45", telemetry={"speed": 62.5})
    lap = r.json()["lap_time"]
    assert lap["lap_number"] == 2
    assert lap["lap_time"] == 45000
    assert lap["lap_time"] > MIN_VALID_LAP_MS
    assert lap["is_valid"] is True

    board = client.get("/api/sessions/1/leaderboard").json()
    assert len(board) == 15
    assert board[0]["kart_number"] == 7
    assert board[0]["position"] == 1
    assert board[0]["best_lap"] == 45000
    assert board[0]["gap"] is None
    assert [e["position"] for e in board] == list(range(1, 16))

    stats = client.get("/api/sessions/1/stats").json()
    assert stats["total_laps"] == 1
    assert stats["total_karts"] == 15
    assert stats["best_lap"]["kart_number"] == 7

    recent = client.get("/api/sessions/1/recent-laps", params={"limit": 1}).json()
    assert len(recent) == 1
    assert recent[0]["lap_time"] == 45000
    assert recent[0]["is_personal_best"] is True


def test_timing_errors(client):
    r = crossing(client, "T004", "2026-06-15T10:00:00")
    assert r.status_code == 409

    start(client)
    assert crossing(client, "UNKNOWN", "2026-06-15T10:00:00").status_code == 404
    assert client.post("/api/timing", json={}).status_code == 422

    assert crossing(client, "T004", "2026-06-15T10:01:00").status_code == 200
    assert crossing(client, "T004", "2026-06-15T10:00:30").status_code == 400


def test_paused_session_rejects_crossings(client):
    start(client)
    client.put("/api/sessions/1/status", json={"status": "paused"})
    assert crossing(client, "T004", "2026-06-15T10:00:00").status_code == 409
    start(client)
    assert crossing(client, "T004", "2026-06-15T10:00:00").status_code == 200
    assert client.post("/api/race/pause-ingest").status_code == 404
    assert "race_state" not in client.get("/api/status").json()


def test_reset(client):
    start(client)
    crossing(client, "T001", "2026-06-15T10:00:00")
    crossing(client, "T001", "2026-06-15T10:00:50")

    r = client.post("/api/sessions/1/reset")
    assert r.status_code == 200
    assert r.json()["session"]["status"] == "stopped"
    assert r.json()["session"]["start_time"] is None

    assert all(e["laps"] == 0 for e in client.get("/api/sessions/1/leaderboard").json())
    assert client.get("/api/sessions/1/stats").json()["total_laps"] == 0
    assert client.get("/api/sessions/1/recent-laps").json() == []
    assert client.post("/api/sessions/9/reset").status_code == 404


def test_simulated_crossing(client):
    assert client.post("/api/simulate/lap-crossing").status_code == 409
    start(client)
    r = client.post("/api/simulate/lap-crossing")
    assert r.status_code == 200
    assert r.json()["lap_time"]["lap_number"] == 1


# ======================================================================
# Karts
# ======================================================================

def test_kart_registration(client):
    r = client.post("/api/karts", json={
        "kart_number": 101, "driver_name": "New Driver", "transponder_id": "T101",
    })
    assert r.status_code == 200
    assert r.json()["is_active"] is True
    assert r.json()["id"] == 16

    dup_number = {"kart_number": 101, "driver_name": "X", "transponder_id": "T102"}
    dup_transponder = {"kart_number": 102, "driver_name": "X", "transponder_id": "T101"}
    out_of_range = {"kart_number": 1000, "driver_name": "X", "transponder_id": "T103"}
    for body in (dup_number, dup_transponder, out_of_range):
        assert client.post("/api/karts", json=body).status_code == 400


def test_remove_and_clear_karts(client):
    r = client.delete("/api/karts/4")
    assert r.status_code == 200
    assert r.json()["kart"]["is_active"] is False
    assert client.delete("/api/karts/99").status_code == 404

    active = client.get("/api/karts", params={"active_only": True}).json()
    assert len(active) == 14
    assert len(client.get("/api/karts").json()) == 15

    assert client.delete("/api/karts/clear").status_code == 200
    assert client.get("/api/karts").json() == []
    assert client.get("/api/sessions/1/leaderboard").json() == []


def test_status_endpoint(client):
    status = client.get("/api/status").json()
    assert status["server"] == "KartTiming"
    assert status["current_session"]["id"] == 1
    assert status["kart_count"] == 15
    assert status["lap_count"] == 0


# ======================================================================
# WebSocket
# ======================================================================

def test_lap_broadcast_to_session_subscribers(client):
    start(client)
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "join-session", "session_id": 1})
        assert ws.receive_json() == {"type": "joined", "session_id": 1}

        crossing(client, "T004", "2026-06-15T10:00:00")
        msg = ws.receive_json()
        assert msg["type"] == "lap_completed"
        assert msg["session_id"] == 1
        assert msg["lap"]["lap_number"] == 1
        assert msg["kart"]["kart_number"] == 7
        assert len(msg["leaderboard"]) == 15
        assert msg["session_stats"]["total_laps"] == 0
        assert len(msg["recent_laps"]) == 1

        client.post("/api/sessions/1/reset")
        assert ws.receive_json() == {"type": "session_reset", "session_id": 1}
        changed = ws.receive_json()
        assert changed["type"] == "session_status_changed"
        assert changed["session"]["status"] == "stopped"


def test_kart_events_reach_everyone(client):
    with client.websocket_connect("/ws") as ws:
        client.delete("/api/karts/1")
        msg = ws.receive_json()
        assert msg["type"] == "kart_removed"
        assert msg["kart"]["id"] == 1
