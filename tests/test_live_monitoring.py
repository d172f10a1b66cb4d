import asyncio
from datetime import datetime, timedelta, timezone

from access_scope import load_scope
from ingestion import ingest_batch
from live_monitoring import IDLE, MOVING, STALE, classify_movement, get_live_overview
from session_lifecycle import check_in

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _sample(lat, minutes_ago, speed=None):
    return {"latitude": lat, "longitude": 56.78, "timestamp": NOW - timedelta(minutes=minutes_ago), "speed": speed}


def test_two_samples_covering_distance_is_moving():
    # ~0.2 km north within three minutes
    analysis = classify_movement([_sample(12.340, 3), _sample(12.3418, 0)], NOW)
    assert analysis.status == MOVING
    assert analysis.is_moving
    assert analysis.window_distance_km > 0.19
    assert analysis.samples_in_window == 2


def test_single_sample_is_not_moving():
    analysis = classify_movement([_sample(12.34, 1)], NOW)
    assert analysis.status == IDLE
    assert not analysis.is_moving


def test_reported_speed_counts_as_moving():
    samples = [_sample(12.34, 2, speed=0), _sample(12.34, 1, speed=4.5), _sample(12.34, 0, speed=-1)]
    analysis = classify_movement(samples, NOW)
    assert analysis.status == MOVING
    assert analysis.average_speed_kmh == 4.5


def test_stationary_recent_samples_are_idle():
    analysis = classify_movement([_sample(12.34, 2, speed=0.2), _sample(12.34001, 0)], NOW)
    assert analysis.status == IDLE


def test_old_samples_are_stale():
    analysis = classify_movement([_sample(12.34, 40), _sample(12.36, 30)], NOW)
    assert analysis.status == STALE
    assert analysis.last_seen_minutes == 30


def test_no_samples_is_stale():
    assert classify_movement([], NOW).status == STALE


def test_timestamps_may_be_strings():
    samples = [
        {"latitude": 12.340, "longitude": 56.78, "timestamp": (NOW - timedelta(minutes=3)).isoformat()},
        {"latitude": 12.3418, "longitude": 56.78, "timestamp": NOW.isoformat()},
    ]
    assert classify_movement(samples, NOW).status == MOVING


def test_live_overview_scoped_to_team(db, roster, engine):
    async def scenario():
        for user_id in ("demo-employee-1", "demo-employee-2", "demo-employee-3"):
            started = await check_in(db, engine, roster[user_id], 12.34, 56.78, now=NOW - timedelta(hours=11))
            if user_id == "demo-employee-1":
                await ingest_batch(db, engine, roster[user_id], started["sessionId"], [
                    {"latitude": 12.340, "longitude": 56.78, "timestamp": (NOW - timedelta(minutes=3)).isoformat()},
                    {"latitude": 12.3418, "longitude": 56.78, "timestamp": (NOW - timedelta(minutes=1)).isoformat()},
                ], now=NOW)
        lead_view = await get_live_overview(db, await load_scope(db, roster["demo-lead"]), now=NOW)
        employee_view = await get_live_overview(db, await load_scope(db, roster["demo-employee-2"]), now=NOW,
                                                user_id="demo-employee-3")
        return lead_view, employee_view

    lead_view, employee_view = asyncio.run(scenario())

    users = {s["userId"] for s in lead_view["activeSessions"]}
    assert users == {"demo-employee-1", "demo-employee-2"}
    assert employee_view["activeSessions"] == []

    by_user = {s["userId"]: s for s in lead_view["activeSessions"]}
    moving = by_user["demo-employee-1"]
    assert moving["movement"]["status"] == MOVING
    assert moving["last"]["lat"] == 12.3418
    assert [p["lat"] for p in moving["trail"]] == [12.34, 12.340, 12.3418]
    assert moving["start"] == {"lat": 12.34, "lng": 56.78}
    assert moving["durationMinutes"] == 660
    assert by_user["demo-employee-2"]["movement"]["status"] == STALE

    summary = lead_view["summary"]
    assert summary["activeCount"] == 2
    assert summary["byStatus"] == {MOVING: 1, IDLE: 0, STALE: 1}
    assert {s["userId"] for s in summary["longRunning"]} == {"demo-employee-1", "demo-employee-2"}
    assert [s["userId"] for s in summary["noRecentUpdate"]] == ["demo-employee-2"]
    assert len(lead_view["teamLocations"]) == 2
