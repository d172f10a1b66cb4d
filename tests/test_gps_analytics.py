import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

import gps_analytics
from errors import Forbidden, ValidationFailed
from session_lifecycle import check_in, check_out

# A Wednesday
T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def _run(coro):
    return asyncio.run(coro)


def _worked_session(db, engine, user, start, hours=2, end_lat=12.35):
    session_id = _run(check_in(db, engine, user, 12.34, 56.78, now=start))["sessionId"]
    _run(check_out(db, engine, user, session_id, end_lat, 56.78, now=start + timedelta(hours=hours)))
    return session_id


def test_performance_metrics():
    sessions = [
        {"id": "a", "check_in": "2024-05-01T08:00:00+00:00", "check_out": "2024-05-01T10:00:00+00:00",
         "total_distance_km": 10.0},
        {"id": "b", "check_in": "2024-05-01T13:00:00+00:00", "check_out": None, "total_distance_km": 1.0},
    ]
    metrics = gps_analytics.performance_metrics(sessions, {"a": [10.0, 20.0]})

    assert metrics["totalKm"] == 11.0
    assert metrics["totalSessions"] == 2
    assert metrics["activeHours"] == 2.0
    assert metrics["avgSessionDuration"] == 1.0
    assert metrics["avgSpeed"] == 15.0
    assert metrics["maxSpeed"] == 20.0
    assert metrics["efficiency"] == 5.5
    assert gps_analytics.performance_metrics([], {})["totalKm"] == 0


def test_week_and_month_helpers():
    assert gps_analytics.week_start_of(date(2024, 5, 1)) == date(2024, 4, 29)
    assert gps_analytics.month_bounds(2, 2024) == (date(2024, 2, 1), date(2024, 2, 29))
    assert gps_analytics.month_bounds(12, 2024) == (date(2024, 12, 1), date(2024, 12, 31))
    with pytest.raises(ValidationFailed):
        gps_analytics.parse_day("first of may")


def test_daily_report(db, roster, engine):
    user = roster["demo-employee-1"]
    _worked_session(db, engine, user, T0)
    _worked_session(db, engine, user, T0 + timedelta(hours=6), hours=1)

    report = _run(gps_analytics.daily_report(db, user, day="2024-05-01"))

    stats = report["stats"]
    assert report["user"]["name"] == "Jan Jansen"
    assert stats["sessions"] == 2
    assert stats["completedSessions"] == 2
    assert stats["activeHours"] == 3.0
    assert stats["totalKm"] == pytest.approx(2.224, abs=0.002)
    assert stats["periodBreakdown"]["morning"]["sessions"] == 1
    assert stats["periodBreakdown"]["afternoon"]["sessions"] == 1
    assert stats["businessHoursSessions"] == 2
    assert report["sessions"][0]["coordinateCount"] == 2
    assert report["recorded"]["totalKm"] == pytest.approx(stats["totalKm"], abs=0.001)
    assert report["recorded"]["checkIns"] == 2

    empty = _run(gps_analytics.daily_report(db, user, day="2024-05-02"))
    assert empty["stats"]["sessions"] == 0
    assert empty["recorded"]["days"] == 0


def test_weekly_report_compares_with_previous_week(db, roster, engine):
    user = roster["demo-employee-1"]
    _worked_session(db, engine, user, T0)
    _worked_session(db, engine, user, T0 - timedelta(days=7), end_lat=12.345)

    report = _run(gps_analytics.weekly_report(db, user, week_start="2024-04-29"))

    assert report["weekEnd"] == "2024-05-05"
    assert len(report["dailyBreakdown"]) == 7
    assert report["dailyBreakdown"][2]["dayName"] == "Wednesday"
    assert report["bestDay"]["dayName"] == "Wednesday"
    assert report["stats"]["totalKm"] == pytest.approx(1.112, abs=0.001)
    assert report["weekOverWeek"]["kmChange"] == pytest.approx(0.556, abs=0.002)
    assert report["weekOverWeek"]["hoursChange"] == 0


def test_monthly_report(db, roster, engine):
    user = roster["demo-employee-1"]
    _worked_session(db, engine, user, T0)
    # Same week, previous month: shown in the first week but not in the month totals
    _worked_session(db, engine, user, T0 - timedelta(days=1))

    report = _run(gps_analytics.monthly_report(db, user, month=5, year=2024))

    stats = report["stats"]
    assert [w["weekStart"] for w in stats["weeklyStats"]] == [
        "2024-04-29", "2024-05-06", "2024-05-13", "2024-05-20", "2024-05-27",
    ]
    assert stats["weeklyStats"][0]["totalSessions"] == 2
    assert stats["totalSessions"] == 1
    assert stats["totalKm"] == pytest.approx(1.112, abs=0.001)
    assert stats["peakWeek"]["weekStart"] == "2024-04-29"
    assert report["monthOverMonth"]["kmChange"] == pytest.approx(0.0, abs=0.002)


@pytest.mark.parametrize("month, year", [(13, 2024), (0, 2024), (5, 2019)])
def test_monthly_report_rejects_bad_period(db, roster, month, year):
    with pytest.raises(ValidationFailed):
        _run(gps_analytics.monthly_report(db, roster["demo-employee-1"], month=month, year=year))


def test_reports_are_scoped(db, roster, engine):
    _worked_session(db, engine, roster["demo-employee-1"], T0)

    lead_view = _run(gps_analytics.daily_report(db, roster["demo-lead"], "demo-employee-1", "2024-05-01"))
    assert lead_view["stats"]["sessions"] == 1
    admin_view = _run(gps_analytics.weekly_report(db, roster["demo-admin"], "demo-employee-1", "2024-04-29"))
    assert admin_view["stats"]["totalSessions"] == 1

    with pytest.raises(Forbidden):
        _run(gps_analytics.daily_report(db, roster["demo-lead-2"], "demo-employee-1", "2024-05-01"))
    with pytest.raises(Forbidden):
        _run(gps_analytics.monthly_report(db, roster["demo-employee-2"], "demo-employee-1", 5, 2024))
