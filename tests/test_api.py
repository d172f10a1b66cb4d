import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import config
from distance_engine import haversine_total_km
from models import iso


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_authentication_required(client):
    response = client.get("/api/tracking/status")
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"

    response = client.get("/api/tracking/status", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_end_to_end_session(client, headers, db):
    h = headers("demo-employee-1")
    start = {"latitude": 12.34, "longitude": 56.78, "accuracy": 5}

    response = client.post("/api/tracking/checkin", json=start, headers=h)
    assert response.status_code == 201
    session_id = response.json()["sessionId"]

    now = datetime.now(timezone.utc)
    trace = [(12.341, 56.78), (12.342, 56.78), (12.343, 56.78)]
    coordinates = [
        {"latitude": lat, "longitude": lon, "accuracy": 5, "timestamp": iso(now + timedelta(milliseconds=i + 1))}
        for i, (lat, lon) in enumerate(trace)
    ]
    response = client.post("/api/tracking/coordinates/batch",
                           json={"sessionId": session_id, "coordinates": coordinates}, headers=h)
    assert response.status_code == 200
    assert response.json()["processed"] == 3

    final_lat, final_lon = trace[-1]
    response = client.post("/api/tracking/checkout",
                           json={"sessionId": session_id, "latitude": final_lat, "longitude": final_lon},
                           headers=h)
    assert response.status_code == 200
    body = response.json()

    points = [{"latitude": lat, "longitude": lon} for lat, lon in [(12.34, 56.78)] + trace + [trace[-1]]]
    expected = haversine_total_km(points)
    assert expected == pytest.approx(0.3, abs=0.05)
    assert body["totalKm"] == pytest.approx(expected, abs=0.01)

    session = asyncio.run(db.tracking_sessions.find_one({"id": session_id}, {"_id": 0}))
    assert session["check_out"] is not None
    assert session["total_distance_km"] == pytest.approx(expected, abs=0.01)

    day = session["check_out"][:10]
    summary = asyncio.run(db.daily_summaries.find_one({"user_id": "demo-employee-1", "date": day}))
    assert summary["total_distance_km"] == pytest.approx(session["total_distance_km"], abs=0.01)

    response = client.post("/api/tracking/checkout", json={"sessionId": session_id}, headers=h)
    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"

    response = client.post("/api/tracking/coordinates",
                           json={"sessionId": session_id, "coordinates": coordinates}, headers=h)
    assert response.status_code == 409


def test_checkout_by_other_user_is_forbidden(client, headers):
    response = client.post("/api/tracking/checkin", json={"latitude": 12.34, "longitude": 56.78},
                           headers=headers("demo-employee-1"))
    session_id = response.json()["sessionId"]

    response = client.post("/api/tracking/checkout", json={"sessionId": session_id},
                           headers=headers("demo-employee-2"))
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_invalid_check_in_is_a_validation_error(client, headers):
    response = client.post("/api/tracking/checkin", json={"latitude": 123, "longitude": 56.78},
                           headers=headers("demo-employee-1"))
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_oversized_batch(client, headers, monkeypatch):
    monkeypatch.setattr(config, "MAX_BATCH_SIZE", 2)
    response = client.post(
        "/api/tracking/coordinates/batch",
        json={"sessionId": "anything", "coordinates": [{"latitude": 1, "longitude": 1}] * 3},
        headers=headers("demo-employee-1"),
    )
    assert response.status_code == 413
    assert response.json()["maxBatchSize"] == 2


def test_status_and_force_close(client, headers):
    h = headers("demo-employee-1")
    session_id = client.post("/api/tracking/checkin", json={"latitude": 12.34, "longitude": 56.78},
                             headers=h).json()["sessionId"]
    assert client.get("/api/tracking/status", headers=h).json()["status"] == "active"

    response = client.patch("/api/tracking/checkout", json={"sessionId": session_id, "reason": "left phone"},
                            headers=headers("demo-lead"))
    assert response.status_code == 200
    assert response.json()["status"] == "force_closed"
    assert client.get("/api/tracking/status", headers=h).json()["status"] == "inactive"


def test_live_view_never_leaks_other_users(client, headers):
    for user_id in ("demo-employee-1", "demo-employee-2", "demo-employee-3"):
        client.post("/api/tracking/checkin", json={"latitude": 12.34, "longitude": 56.78}, headers=headers(user_id))

    lead = client.get("/api/tracking/live", headers=headers("demo-lead")).json()
    assert {s["userId"] for s in lead["activeSessions"]} == {"demo-employee-1", "demo-employee-2"}

    for query in ("", "?user_id=demo-employee-3", "?user_id=demo-employee-2"):
        mine = client.get(f"/api/tracking/live{query}", headers=headers("demo-employee-1")).json()
        assert {s["userId"] for s in mine["activeSessions"]} <= {"demo-employee-1"}

    admin = client.get("/api/tracking/live", headers=headers("demo-admin")).json()
    assert admin["summary"]["activeCount"] == 3


def test_sessions_and_summaries_endpoints(client, headers):
    h = headers("demo-employee-1")
    session_id = client.post("/api/tracking/checkin", json={"latitude": 12.34, "longitude": 56.78},
                             headers=h).json()["sessionId"]
    client.post("/api/tracking/checkout",
                json={"sessionId": session_id, "latitude": 12.35, "longitude": 56.78}, headers=h)

    sessions = client.get("/api/tracking/sessions", headers=headers("demo-lead")).json()
    assert [s["id"] for s in sessions] == [session_id]

    detail = client.get(f"/api/tracking/sessions/{session_id}", headers=h).json()
    assert detail["sample_count"] == 2

    assert client.get(f"/api/tracking/sessions/{session_id}", headers=headers("demo-employee-2")).status_code == 403

    summaries = client.get("/api/tracking/summaries", headers=h).json()
    assert summaries[0]["check_in_count"] == 1
    assert client.get("/api/tracking/summaries", headers=headers("demo-employee-2")).json() == []


def test_recalculation_endpoints(client, headers, monkeypatch):
    monkeypatch.setattr(config, "RECALC_DELAY_SECONDS", 0)
    h = headers("demo-employee-1")
    session_id = client.post("/api/tracking/checkin", json={"latitude": 12.34, "longitude": 56.78},
                             headers=h).json()["sessionId"]
    client.post("/api/tracking/checkout",
                json={"sessionId": session_id, "latitude": 12.35, "longitude": 56.78}, headers=h)

    response = client.post(f"/api/tracking/sessions/{session_id}/recalculate-distance",
                           headers=headers("demo-admin"))
    assert response.status_code == 200
    assert response.json()["newDistance"] == pytest.approx(1.112, abs=0.001)

    assert client.post("/api/tracking/recalculate-all", json={}, headers=h).status_code == 403
    response = client.post("/api/tracking/recalculate-all", json={"force": True, "limit": 10},
                           headers=headers("demo-admin"))
    assert response.status_code == 200
    assert response.json()["results"]["successful"] == 1


def test_error_log_endpoints(client, headers):
    h = headers("demo-employee-1")
    response = client.post("/api/tracking/errors",
                           json={"errorType": "GPS_TIMEOUT", "errorMessage": "timeout"}, headers=h)
    assert response.status_code == 201
    error_id = response.json()["errorId"]

    listed = client.get("/api/tracking/errors", headers=h).json()
    assert listed["stats"]["unresolved"] == 1

    assert client.patch("/api/tracking/errors", json={"errorIds": [error_id]}, headers=h).status_code == 403
    response = client.patch("/api/tracking/errors", json={"errorIds": [error_id]}, headers=headers("demo-admin"))
    assert response.json()["resolvedCount"] == 1
    assert client.patch("/api/tracking/errors", json={"errorIds": []},
                        headers=headers("demo-admin")).status_code == 400


def test_batch_status(client, headers):
    h = headers("demo-employee-1")
    session_id = client.post("/api/tracking/checkin", json={"latitude": 12.34, "longitude": 56.78},
                             headers=h).json()["sessionId"]
    body = client.get(f"/api/tracking/coordinates/batch?sessionId={session_id}", headers=h).json()
    assert body["totalCoordinates"] == 1
    assert body["status"] == "active"


def test_analytics_endpoints(client, headers):
    h = headers("demo-employee-1")
    session_id = client.post("/api/tracking/checkin", json={"latitude": 12.34, "longitude": 56.78},
                             headers=h).json()["sessionId"]
    client.post("/api/tracking/checkout",
                json={"sessionId": session_id, "latitude": 12.35, "longitude": 56.78}, headers=h)

    daily = client.get("/api/tracking/analytics/daily?user_id=demo-employee-1", headers=headers("demo-lead"))
    assert daily.status_code == 200
    assert daily.json()["stats"]["sessions"] == 1

    weekly = client.get("/api/tracking/analytics/weekly?weekStart=2024-04-29", headers=h)
    assert weekly.status_code == 200
    assert weekly.json()["weekEnd"] == "2024-05-05"

    assert client.get("/api/tracking/analytics/monthly", headers=h).json()["stats"]["totalSessions"] >= 1
    assert client.get("/api/tracking/analytics/monthly?month=13", headers=h).status_code == 400
    assert client.get("/api/tracking/analytics/daily?date=soon", headers=h).status_code == 400
    forbidden = client.get("/api/tracking/analytics/weekly?user_id=demo-employee-1", headers=headers("demo-lead-2"))
    assert forbidden.status_code == 403
