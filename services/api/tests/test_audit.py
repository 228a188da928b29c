import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from patrol.core.errors import PersistenceError, ValidationError
from patrol.db.session import SessionLocal
from patrol.services.audit import AuditFilters, AuditTrail, ClientInfo, record_safely


def _seed(trail: AuditTrail) -> uuid.UUID:
    sid = uuid.uuid4()
    trail.append(event_type="started", guard_id="guard-1", session_id=sid, recorded_at=datetime(2026, 3, 1, 8, tzinfo=timezone.utc))
    trail.append(
        event_type="checkpoint",
        guard_id="guard-1",
        session_id=sid,
        payload={"sequence_number": 1},
        recorded_at=datetime(2026, 3, 1, 9, tzinfo=timezone.utc),
    )
    trail.append(event_type="started", guard_id="guard-2", recorded_at=datetime(2026, 3, 3, 8, tzinfo=timezone.utc))
    return sid


def test_query_filters_and_orders_newest_first() -> None:
    trail = AuditTrail(SessionLocal)
    sid = _seed(trail)

    everything = trail.query()
    assert everything.total == 3
    assert [e.guard_id for e in everything.items] == ["guard-2", "guard-1", "guard-1"]

    by_session = trail.query(AuditFilters(session_id=sid))
    assert [e.event_type for e in by_session.items] == ["checkpoint", "started"]
    assert by_session.items[0].payload == {"sequence_number": 1}

    assert trail.query(AuditFilters(event_type="started")).total == 2
    assert trail.query(AuditFilters(guard_id="guard-2")).total == 1
    assert trail.query(AuditFilters(date_from=date(2026, 3, 1), date_to=date(2026, 3, 1))).total == 2


def test_query_paginates() -> None:
    trail = AuditTrail(SessionLocal)
    _seed(trail)

    page = trail.query(page=2, limit=2)
    assert page.total == 3
    assert page.total_pages == 2
    assert len(page.items) == 1
    assert page.meta() == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}


@pytest.mark.parametrize(
    "kwargs",
    [{"page": 0}, {"limit": 0}, {"limit": 101}],
)
def test_query_rejects_bad_paging(kwargs) -> None:
    with pytest.raises(ValidationError):
        AuditTrail(SessionLocal).query(**kwargs)


def test_unknown_event_type_is_rejected() -> None:
    trail = AuditTrail(SessionLocal)
    with pytest.raises(ValidationError):
        trail.append(event_type="deleted", guard_id="guard-1")
    with pytest.raises(ValidationError):
        trail.query(AuditFilters(event_type="deleted"))


def test_inverted_date_range_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AuditTrail(SessionLocal).query(AuditFilters(date_from=date(2026, 3, 2), date_to=date(2026, 3, 1)))


class _DeadSession:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def add(self, _):
        pass

    def commit(self):
        raise OperationalError("INSERT", {}, Exception("database is locked"))


def test_storage_failure_surfaces_as_persistence_error() -> None:
    trail = AuditTrail(_DeadSession)
    with pytest.raises(PersistenceError):
        trail.append(event_type="started", guard_id="guard-1")

    # The best-effort helper swallows it; the caller's mutation already committed.
    record_safely(trail, event_type="started", guard_id="guard-1")


def test_append_stores_description_and_request_origin() -> None:
    trail = AuditTrail(SessionLocal)
    trail.append(
        event_type="checkpoint",
        guard_id="guard-1",
        description="Checkpoint #3 recorded at Gate",
        client=ClientInfo(ip="10.0.0.7", user_agent="PatrolApp/2.1 " + "x" * 400),
    )
    trail.append(event_type="started", guard_id="guard-2")

    first, second = sorted(trail.query().items, key=lambda e: e.guard_id)
    assert first.description == "Checkpoint #3 recorded at Gate"
    assert first.client_ip == "10.0.0.7"
    assert first.user_agent.startswith("PatrolApp/2.1")
    assert len(first.user_agent) == 255
    assert (second.description, second.client_ip, second.user_agent) == (None, None, None)
