"""Read-only access to the control-point registry.

Point creation, editing and reordering belong to the administration module;
the patrol services only look points up.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from patrol.models.control_point import ControlPoint
from patrol.services.geo import Coordinate, validate_coordinate
from patrol.services.session_state import db_scope

DEFAULT_RADIUS_M = 30.0


@dataclass(frozen=True)
class ControlPointView:
    id: str
    name: str
    latitude: float
    longitude: float
    radius_meters: float
    mandatory: bool
    active: bool
    order_hint: int
    sector: str | None = None

    @property
    def position(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


@dataclass(frozen=True)
class ControlPointFilters:
    active: bool | None = None
    mandatory: bool | None = None
    sector: str | None = None


class ControlPointRegistry(Protocol):
    """Control-point lookup contract."""

    def get(self, control_point_id: str) -> ControlPointView | None: ...

    def list(self, filters: ControlPointFilters | None = None) -> list[ControlPointView]: ...


def _matches(point: ControlPointView, filters: ControlPointFilters) -> bool:
    if filters.active is not None and point.active != filters.active:
        return False
    if filters.mandatory is not None and point.mandatory != filters.mandatory:
        return False
    if filters.sector and point.sector != filters.sector:
        return False
    return True


class SqlControlPointRegistry:
    """Registry backed by the ``control_points`` table."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get(self, control_point_id: str) -> ControlPointView | None:
        with db_scope(self._session_factory, "control point lookup", control_point_id=control_point_id) as db:
            row = db.get(ControlPoint, str(control_point_id))
            return _row_to_view(row) if row is not None else None

    def list(self, filters: ControlPointFilters | None = None) -> list[ControlPointView]:
        filters = filters or ControlPointFilters()
        stmt = select(ControlPoint)
        if filters.active is not None:
            stmt = stmt.where(ControlPoint.active == filters.active)
        if filters.mandatory is not None:
            stmt = stmt.where(ControlPoint.mandatory == filters.mandatory)
        if filters.sector:
            stmt = stmt.where(ControlPoint.sector == filters.sector)
        stmt = stmt.order_by(ControlPoint.order_hint, ControlPoint.name)
        with db_scope(self._session_factory, "control point listing", filters=filters) as db:
            return [_row_to_view(row) for row in db.scalars(stmt).all()]


class YamlControlPointRegistry:
    """Registry loaded from a YAML file, for sites without the admin module.

    Expected layout::

        control_points:
          - id: gate-north
            name: North gate
            latitude: -23.5505
            longitude: -46.6333
            radius_meters: 30
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._points: dict[str, ControlPointView] | None = None

    def _load(self) -> dict[str, ControlPointView]:
        if self._points is None:
            with self._path.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            points = [_dict_to_view(item) for item in raw.get("control_points", []) or []]
            self._points = {p.id: p for p in points}
        return self._points

    def get(self, control_point_id: str) -> ControlPointView | None:
        return self._load().get(str(control_point_id))

    def list(self, filters: ControlPointFilters | None = None) -> list[ControlPointView]:
        filters = filters or ControlPointFilters()
        out = [p for p in self._load().values() if _matches(p, filters)]
        return sorted(out, key=lambda p: (p.order_hint, p.name))


def _row_to_view(row: ControlPoint) -> ControlPointView:
    return ControlPointView(
        id=row.id,
        name=row.name,
        latitude=row.latitude,
        longitude=row.longitude,
        radius_meters=row.radius_meters,
        mandatory=row.mandatory,
        active=row.active,
        order_hint=row.order_hint,
        sector=row.sector,
    )


def _dict_to_view(item: dict[str, Any]) -> ControlPointView:
    coord = validate_coordinate(item.get("latitude"), item.get("longitude"), field=f"control point {item.get('id')}")
    return ControlPointView(
        id=str(item["id"]),
        name=str(item.get("name") or item["id"]),
        latitude=coord.latitude,
        longitude=coord.longitude,
        radius_meters=float(item.get("radius_meters", DEFAULT_RADIUS_M)),
        mandatory=bool(item.get("mandatory", True)),
        active=bool(item.get("active", True)),
        order_hint=int(item.get("order_hint", 0)),
        sector=item.get("sector"),
    )
