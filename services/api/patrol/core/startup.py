from __future__ import annotations

import logging

from sqlalchemy import text

from patrol.db.session import SessionLocal
from patrol.services.control_points import ControlPointFilters, ControlPointRegistry

logger = logging.getLogger(__name__)


def on_startup(registry: ControlPointRegistry) -> None:
    db = SessionLocal()
    try:
        db.execute(text("select 1"))
        db.commit()
    finally:
        db.close()
    points = registry.list(ControlPointFilters(active=True))
    logger.info("Control-point registry %s ready with %s active point(s)", type(registry).__name__, len(points))
