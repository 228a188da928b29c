from datetime import date, datetime, timedelta, timezone

import pytest

from patrol.core.errors import NotFoundError, ValidationError
from patrol.db.session import SessionLocal
from patrol.models.patrol_session import PatrolSession
from patrol.services.geo import Coordinate
from patrol.services.history import SessionFilters, format_duration, format_km

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _session(guard_id: str, status: str, started_at: datetime, *, duration: float | None = None, distance: float = 0.0, checkpoints: int = 0) -> PatrolSession:
    row = PatrolSession(
        guard_id=guard_id,
        status=status,
        started_at=started_at,
        ended_at=started_at + timedelta(seconds=duration) if duration is not None else None,
        start_latitude=0.0,
        start_longitude=0.0,
        checkpoint_count=checkpoints,
        total_distance=distance,
        duration_seconds=duration,
        version=2 if status != "in_progress" else 1,
    )
    with SessionLocal() as db:
        db.add(row)
        db.commit()
    return row


@pytest.mark.parametrize(
    "seconds, expected",
    [(5445, "1h 30min 45s"), (3600, "1h"), (125, "2min 5s"), (59.9, "59s"), (0, "0s"), (None, "0s")],
)
def test_format_duration(seconds, expected) -> None:
    assert format_duration(seconds) == expected


def test_format_km() -> None:
    assert format_km(1234.5) == "1.23 km"
    assert format_km(None) == "0.00 km"


def test_guard_history_lists_closed_sessions_newest_first(services) -> None:
    old = _session("guard-1", "finalized", NOW - timedelta(days=3), duration=600)
    new = _session("guard-1", "cancelled", NOW - timedelta(days=1), duration=60)
    _session("guard-1", "in_progress", NOW)
    _session("guard-2", "finalized", NOW - timedelta(days=1), duration=60)

    page = services.history.list_guard_history("guard-1")
    assert [s.id for s in page.items] == [new.id, old.id]
    assert page.limit == 10

    ranged = services.history.list_guard_history("guard-1", date_from=(NOW - timedelta(days=3)).date(), date_to=(NOW - timedelta(days=2)).date())
    assert [s.id for s in ranged.items] == [old.id]


def test_admin_listing_filters(services) -> None:
    _session("guard-1", "finalized", NOW - timedelta(days=2), duration=600)
    _session("guard-1", "in_progress", NOW)
    _session("guard-2", "cancelled", NOW - timedelta(days=1), duration=60)

    assert services.history.list_sessions().total == 3
    assert services.history.list_sessions(SessionFilters(guard_id="guard-1")).total == 2
    assert services.history.list_sessions(SessionFilters(status="cancelled")).items[0].guard_id == "guard-2"
    assert services.history.list_sessions(SessionFilters(date_from=NOW.date())).total == 1
    with pytest.raises(ValidationError):
        services.history.list_sessions(SessionFilters(status="paused"))


def test_session_detail_includes_checkpoints_and_ordered_trajectory(services) -> None:
    sid = services.sessions.start_session("guard-1", Coordinate(0.0, 0.0)).session.id
    services.trajectory.append_sample(sid, Coordinate(0.0, 0.002), recorded_at=NOW + timedelta(seconds=60))
    services.trajectory.append_sample(sid, Coordinate(0.0, 0.001), recorded_at=NOW)
    services.checkpoints.record_checkpoint(sid, Coordinate(0.0, 0.002))

    detail = services.history.get_session_detail(sid, guard_id="guard-1")
    assert detail.session.id == sid
    assert [s.longitude for s in detail.trajectory] == [0.001, 0.002]
    assert [c.sequence_number for c in detail.checkpoints] == [1]

    assert services.history.get_session_detail(str(sid)).session.guard_id == "guard-1"
    with pytest.raises(NotFoundError):
        services.history.get_session_detail(sid, guard_id="guard-2")


def test_statistics(services) -> None:
    _session("guard-1", "finalized", NOW - timedelta(days=1), duration=3600, distance=1500.0, checkpoints=4)
    _session("guard-1", "finalized", NOW - timedelta(days=2), duration=1800, distance=500.0, checkpoints=2)
    _session("guard-2", "finalized", NOW - timedelta(days=1), duration=600, distance=250.0, checkpoints=1)
    _session("guard-2", "cancelled", NOW - timedelta(days=20), duration=0)
    _session("guard-3", "in_progress", NOW)

    stats = services.history.statistics(now=NOW)

    totals = stats["totals"]
    assert totals["sessions"] == 5
    assert totals["finalized"] == 3
    assert totals["cancelled"] == 1
    assert totals["in_progress"] == 1
    assert totals["checkpoints"] == 7
    assert totals["guards"] == 3
    assert totals["total_distance"] == pytest.approx(2250.0)
    assert totals["total_distance_km"] == "2.25 km"
    assert totals["duration"] == "1h 40min"
    assert totals["average_duration_seconds"] == pytest.approx(1500.0)

    assert [(g["guard_id"], g["sessions"]) for g in stats["top_guards"]] == [("guard-1", 2), ("guard-2", 1)]
    assert stats["sessions_per_day"] == [
        {"date": "2026-03-08", "total": 1},
        {"date": "2026-03-09", "total": 2},
        {"date": "2026-03-10", "total": 1},
    ]

    ranged = services.history.statistics(date_from=date(2026, 3, 9), date_to=date(2026, 3, 9), now=NOW)
    assert ranged["totals"]["sessions"] == 2
