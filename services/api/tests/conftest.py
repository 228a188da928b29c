from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Any

_TMP_DIR = Path(tempfile.mkdtemp(prefix="patrol-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'patrol.db'}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["CONTROL_POINTS_SOURCE"] = "db"
os.environ["IDLE_SESSION_TIMEOUT_MINUTES"] = "0"
os.environ.pop("EVENT_WEBHOOK_URL", None)

import pytest  # noqa: E402
from starlette.testclient import TestClient  # noqa: E402

from patrol.core.security import create_access_token  # noqa: E402
from patrol.db.base import Base  # noqa: E402
from patrol.db.session import SessionLocal, engine  # noqa: E402
from patrol.dependencies import PatrolServices, override_services  # noqa: E402
from patrol.main import app  # noqa: E402
from patrol.models.control_point import ControlPoint  # noqa: E402

Base.metadata.create_all(engine)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def publish(self, topic: str, event: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((topic, event))

    def types(self, topic: str | None = None) -> list[str]:
        return [e["type"] for t, e in self.events if topic is None or t == topic]


@pytest.fixture(autouse=True)
def clean_db() -> None:
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def services(publisher: RecordingPublisher) -> PatrolServices:
    return override_services(publisher)


@pytest.fixture
def client(services: PatrolServices) -> TestClient:
    return TestClient(app)


@pytest.fixture
def add_control_point():
    def _add(point_id: str, latitude: float, longitude: float, **fields: Any) -> ControlPoint:
        row = ControlPoint(
            id=point_id,
            name=fields.pop("name", point_id),
            latitude=latitude,
            longitude=longitude,
            radius_meters=fields.pop("radius_meters", 30.0),
            **fields,
        )
        with SessionLocal() as db:
            db.add(row)
            db.commit()
        return row

    return _add


@pytest.fixture
def auth_headers():
    def _headers(subject: str, role: str = "guard") -> dict[str, str]:
        return {"authorization": f"Bearer {create_access_token(subject, role)}"}

    return _headers
