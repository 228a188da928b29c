import threading

import pytest
from sqlalchemy import select

from patrol.core.errors import ConflictError, NotFoundError, SequenceConflictError, StateError, ValidationError
from patrol.db.session import SessionLocal
from patrol.models.audit import AuditEntry
from patrol.models.patrol_session import PatrolSession
from patrol.services.checkpoints import CheckpointRecorder
from patrol.services.geo import Coordinate

STEP_DEG = 50 / 111_194.93


def _north(n: float) -> Coordinate:
    return Coordinate(10.0 + n * STEP_DEG, 10.0)


def test_patrol_scenario_out_of_range_checkpoint(services, add_control_point) -> None:
    add_control_point("cp-1", _north(3).latitude, _north(3).longitude, radius_meters=30.0, name="Gate")
    sid = services.sessions.start_session("guard-1", Coordinate(10.0, 10.0)).session.id
    for n in range(3):
        services.trajectory.append_sample(sid, _north(n))

    check = services.checkpoints.validate_proximity("cp-1", _north(2))
    visit = services.checkpoints.record_checkpoint(sid, _north(2), control_point_id="cp-1")
    record = services.sessions.finalize_session(sid)

    assert check.valid is False
    assert check.distance == pytest.approx(50.0, rel=1e-3)
    assert check.radius == 30.0
    assert check.remaining == pytest.approx(20.0, rel=1e-2)
    assert visit.distance_to_point == pytest.approx(50.0, rel=1e-3)
    assert visit.within_radius is False
    assert visit.sequence_number == 1
    assert record.session.total_distance == pytest.approx(100.0, rel=1e-3)
    assert record.session.checkpoint_count == 1


def test_in_range_checkpoint_is_flagged_within(services, add_control_point) -> None:
    add_control_point("cp-1", _north(1).latitude, _north(1).longitude, radius_meters=30.0)
    sid = services.sessions.start_session("guard-1", _north(0)).session.id

    assert services.checkpoints.validate_proximity("cp-1", _north(1.2)).valid is True
    visit = services.checkpoints.record_checkpoint(sid, _north(1.2), control_point_id="cp-1")

    assert visit.within_radius is True
    assert visit.distance_to_point == pytest.approx(10.0, rel=1e-2)


def test_sequence_and_elapsed_bookkeeping(services) -> None:
    started = services.sessions.start_session("guard-1", _north(0)).session
    visits = [services.checkpoints.record_checkpoint(started.id, _north(n)) for n in (1, 2, 3)]

    assert [v.sequence_number for v in visits] == [1, 2, 3]
    assert visits[0].elapsed_since_previous == pytest.approx((visits[0].recorded_at - started.started_at).total_seconds())
    for prev, cur in zip(visits, visits[1:]):
        assert cur.elapsed_since_previous == pytest.approx((cur.recorded_at - prev.recorded_at).total_seconds())
        assert cur.elapsed_since_previous >= 0
        assert cur.distance_from_previous == pytest.approx(50.0, rel=1e-3)
    # The first leg is measured from the start position.
    assert visits[0].distance_from_previous == pytest.approx(50.0, rel=1e-3)

    with SessionLocal() as db:
        assert db.get(PatrolSession, started.id).checkpoint_count == 3


def test_free_form_checkpoint_has_no_geofence_result(services, publisher) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id

    visit = services.checkpoints.record_checkpoint(
        sid, _north(1), description="  broken fence  ", photo_url="https://cdn.example.com/p/1.jpg"
    )

    assert visit.control_point_id is None
    assert visit.distance_to_point is None
    assert visit.within_radius is None
    assert visit.description == "broken fence"
    assert publisher.types("patrols")[-1] == "checkpoint:recorded"
    assert publisher.types(f"patrol:{sid}")[-1] == "checkpoint:recorded"
    with SessionLocal() as db:
        entry = db.scalar(select(AuditEntry).where(AuditEntry.event_type == "checkpoint"))
    assert entry.payload["sequence_number"] == 1
    assert entry.payload["description"] == "broken fence"
    assert entry.description == "Checkpoint #1 recorded"


def test_unknown_and_inactive_control_points_are_not_found(services, add_control_point) -> None:
    add_control_point("retired", 10.0, 10.0, active=False)
    sid = services.sessions.start_session("guard-1", _north(0)).session.id

    for point_id in ("missing", "retired"):
        with pytest.raises(NotFoundError) as exc:
            services.checkpoints.record_checkpoint(sid, _north(0), control_point_id=point_id)
        assert exc.value.code == "CONTROL_POINT_NOT_FOUND"
        with pytest.raises(NotFoundError):
            services.checkpoints.validate_proximity(point_id, _north(0))
    assert services.checkpoints.list_visits(sid) == []


def test_checkpoint_on_closed_session_is_rejected(services) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    services.sessions.cancel_session(sid, "shift swap")

    with pytest.raises(StateError):
        services.checkpoints.record_checkpoint(sid, _north(1))


def test_oversized_description_is_rejected(services) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    with pytest.raises(ValidationError):
        services.checkpoints.record_checkpoint(sid, _north(1), description="x" * 501)


def test_concurrent_checkpoints_get_contiguous_sequence(services) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    barrier = threading.Barrier(10)

    def visit(n: int) -> None:
        barrier.wait()
        services.checkpoints.record_checkpoint(sid, _north(n))

    threads = [threading.Thread(target=visit, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    visits = services.checkpoints.list_visits(sid)
    assert [v.sequence_number for v in visits] == list(range(1, 11))
    assert all(v.elapsed_since_previous >= 0 for v in visits)


def test_closed_session_wins_over_unknown_control_point(services, add_control_point) -> None:
    add_control_point("retired", 10.0, 10.0, active=False)
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    services.sessions.cancel_session(sid, "shift swap")

    for point_id in ("missing", "retired"):
        with pytest.raises(StateError) as exc:
            services.checkpoints.record_checkpoint(sid, _north(1), control_point_id=point_id)
        assert exc.value.details["status"] == "cancelled"


def test_sequence_collision_is_retryable_not_session_conflict(services, monkeypatch) -> None:
    sid = services.sessions.start_session("guard-1", _north(0)).session.id
    services.checkpoints.record_checkpoint(sid, _north(1))
    # Simulate a writer in another process that already took the next number.
    monkeypatch.setattr(CheckpointRecorder, "_last_visit", staticmethod(lambda db, session_id: None))

    with pytest.raises(SequenceConflictError) as exc:
        services.checkpoints.record_checkpoint(sid, _north(2))

    assert exc.value.code == "CHECKPOINT_SEQUENCE_CONFLICT"
    assert exc.value.status_code == 409
    assert not isinstance(exc.value, ConflictError)
    assert [v.sequence_number for v in services.checkpoints.list_visits(sid)] == [1]
