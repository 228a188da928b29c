from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import date
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from patrol.core.config import settings
from patrol.core.errors import PatrolError, ValidationError
from patrol.core.startup import on_startup
from patrol.db.session import SessionLocal
from patrol.dependencies import get_services
from patrol.models.audit import AuditEntry
from patrol.models.checkpoint import CheckpointVisit
from patrol.models.patrol_session import PatrolSession
from patrol.models.position import PositionSample
from patrol.schemas import CancelIn, CheckpointIn, FinalizeIn, ProximityIn, StartSessionIn, TrajectoryPointIn
from patrol.services.audit import AuditFilters, ClientInfo
from patrol.services.auth import OVERSIGHT_ROLES, ROLE_GUARD, get_current_identity, identity_from_token, require_roles
from patrol.services.control_points import ControlPointFilters, ControlPointView
from patrol.services.events import session_topic
from patrol.services.geo import Coordinate
from patrol.services.history import SessionFilters, format_duration, format_km
from patrol.services.pagination import Page
from patrol.services.session_state import SessionFactory, parse_session_id, session_owner
from patrol.services.sessions import SessionRecord
from patrol.services.ws import ws_manager

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("patrol.api")

WS_POLICY_VIOLATION = 1008


# -- serializers ---------------------------------------------------------------


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def session_to_dict(session: PatrolSession) -> dict[str, Any]:
    end = None
    if session.end_latitude is not None and session.end_longitude is not None:
        end = {"latitude": session.end_latitude, "longitude": session.end_longitude}
    return {
        "id": str(session.id),
        "guard_id": session.guard_id,
        "status": session.status,
        "started_at": _iso(session.started_at),
        "ended_at": _iso(session.ended_at),
        "start_position": {"latitude": session.start_latitude, "longitude": session.start_longitude},
        "end_position": end,
        "checkpoint_count": session.checkpoint_count,
        "total_distance": round(session.total_distance or 0.0, 2),
        "total_distance_km": format_km(session.total_distance),
        "duration_seconds": session.duration_seconds,
        "duration": format_duration(session.duration_seconds) if session.duration_seconds is not None else None,
        "notes": session.notes,
        "version": session.version,
    }


def checkpoint_to_dict(visit: CheckpointVisit) -> dict[str, Any]:
    return {
        "id": str(visit.id),
        "session_id": str(visit.session_id),
        "control_point_id": visit.control_point_id,
        "sequence_number": visit.sequence_number,
        "latitude": visit.latitude,
        "longitude": visit.longitude,
        "distance_to_point": visit.distance_to_point,
        "within_radius": visit.within_radius,
        "distance_from_previous": visit.distance_from_previous,
        "description": visit.description,
        "photo_url": visit.photo_url,
        "recorded_at": _iso(visit.recorded_at),
        "elapsed_since_previous": visit.elapsed_since_previous,
        "elapsed": format_duration(visit.elapsed_since_previous),
    }


def sample_to_dict(sample: PositionSample) -> dict[str, Any]:
    return {
        "id": str(sample.id),
        "latitude": sample.latitude,
        "longitude": sample.longitude,
        "accuracy": sample.accuracy,
        "altitude": sample.altitude,
        "speed": sample.speed,
        "recorded_at": _iso(sample.recorded_at),
        "received_at": _iso(sample.received_at),
    }


def audit_to_dict(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "session_id": str(entry.session_id) if entry.session_id else None,
        "guard_id": entry.guard_id,
        "event_type": entry.event_type,
        "description": entry.description,
        "payload": entry.payload,
        "client_ip": entry.client_ip,
        "user_agent": entry.user_agent,
        "recorded_at": _iso(entry.recorded_at),
    }


def control_point_to_dict(point: ControlPointView) -> dict[str, Any]:
    return {
        "id": point.id,
        "name": point.name,
        "sector": point.sector,
        "latitude": point.latitude,
        "longitude": point.longitude,
        "radius_meters": point.radius_meters,
        "mandatory": point.mandatory,
        "active": point.active,
        "order_hint": point.order_hint,
    }


def record_to_dict(record: SessionRecord) -> dict[str, Any]:
    return {
        **session_to_dict(record.session),
        "checkpoints": [checkpoint_to_dict(v) for v in record.checkpoints],
        "trajectory_points": record.trajectory_points,
    }


def page_to_dict(page: Page[Any], serialize) -> dict[str, Any]:
    return {"items": [serialize(item) for item in page.items], "pagination": page.meta()}


# -- request helpers -----------------------------------------------------------


async def _body(request: Request, model: type[BaseModel]) -> Any:
    raw = await request.body()
    if not raw.strip():
        return model.model_validate({})
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return model.model_validate(payload)


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


def _date_param(request: Request, name: str) -> date | None:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a date (YYYY-MM-DD)") from None


def _bool_param(request: Request, name: str) -> bool | None:
    raw = (request.query_params.get(name) or "").strip().lower()
    if not raw:
        return None
    if raw in {"true", "1", "yes"}:
        return True
    if raw in {"false", "0", "no"}:
        return False
    raise ValidationError(f"{name} must be true or false")


# -- handlers ------------------------------------------------------------------


async def health(_: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def start_patrol(request: Request) -> JSONResponse:
    identity = require_roles(request, ROLE_GUARD)
    body = await _body(request, StartSessionIn)
    record = await run_in_threadpool(
        get_services().sessions.start_session,
        identity.subject,
        Coordinate(body.latitude, body.longitude),
        body.notes,
        client=_client_info(request),
    )
    return JSONResponse(record_to_dict(record), status_code=201)


async def active_patrol(request: Request) -> JSONResponse:
    identity = require_roles(request, ROLE_GUARD)
    record = await run_in_threadpool(get_services().sessions.get_active_session, identity.subject)
    return JSONResponse({"session": record_to_dict(record) if record else None})


async def append_trajectory(request: Request) -> JSONResponse:
    identity = require_roles(request, ROLE_GUARD)
    body = await _body(request, TrajectoryPointIn)
    sample = await run_in_threadpool(
        get_services().trajectory.append_sample,
        request.path_params["session_id"],
        Coordinate(body.latitude, body.longitude),
        accuracy=body.accuracy,
        altitude=body.altitude,
        speed=body.speed,
        recorded_at=body.recorded_at,
        guard_id=identity.subject,
        client=_client_info(request),
    )
    return JSONResponse({"ok": True, "sample": sample_to_dict(sample)}, status_code=201)


async def record_checkpoint(request: Request) -> JSONResponse:
    identity = require_roles(request, ROLE_GUARD)
    body = await _body(request, CheckpointIn)
    visit = await run_in_threadpool(
        get_services().checkpoints.record_checkpoint,
        request.path_params["session_id"],
        Coordinate(body.latitude, body.longitude),
        control_point_id=body.control_point_id,
        description=body.description,
        photo_url=body.photo_url,
        guard_id=identity.subject,
        client=_client_info(request),
    )
    return JSONResponse(checkpoint_to_dict(visit), status_code=201)


async def finalize_patrol(request: Request) -> JSONResponse:
    identity = require_roles(request, ROLE_GUARD)
    body = await _body(request, FinalizeIn)
    position = Coordinate(body.latitude, body.longitude) if body.latitude is not None else None
    record = await run_in_threadpool(
        get_services().sessions.finalize_session,
        request.path_params["session_id"],
        position,
        body.notes,
        guard_id=identity.subject,
        client=_client_info(request),
    )
    return JSONResponse(record_to_dict(record))


async def cancel_patrol(request: Request) -> JSONResponse:
    identity = require_roles(request, ROLE_GUARD)
    body = await _body(request, CancelIn)
    session_id = request.path_params["session_id"]
    await run_in_threadpool(
        get_services().sessions.cancel_session,
        session_id,
        body.reason,
        guard_id=identity.subject,
        client=_client_info(request),
    )
    return JSONResponse({"ok": True, "session_id": session_id, "status": "cancelled"})


async def patrol_history(request: Request) -> JSONResponse:
    identity = require_roles(request, ROLE_GUARD)
    page = await run_in_threadpool(
        get_services().history.list_guard_history,
        identity.subject,
        date_from=_date_param(request, "date_from"),
        date_to=_date_param(request, "date_to"),
        page=_int_param(request, "page", 1),
        limit=_int_param(request, "limit", 10),
    )
    return JSONResponse(page_to_dict(page, session_to_dict))


async def patrol_detail(request: Request) -> JSONResponse:
    identity = get_current_identity(request)
    guard_id = None if identity.is_oversight else identity.subject
    detail = await run_in_threadpool(
        get_services().history.get_session_detail,
        request.path_params["session_id"],
        guard_id=guard_id,
    )
    return JSONResponse(
        {
            **session_to_dict(detail.session),
            "checkpoints": [checkpoint_to_dict(v) for v in detail.checkpoints],
            "trajectory": [sample_to_dict(s) for s in detail.trajectory],
        }
    )


async def list_control_points(request: Request) -> JSONResponse:
    get_current_identity(request)
    filters = ControlPointFilters(
        active=_bool_param(request, "active"),
        mandatory=_bool_param(request, "mandatory"),
        sector=(request.query_params.get("sector") or "").strip() or None,
    )
    points = await run_in_threadpool(get_services().registry.list, filters)
    return JSONResponse({"items": [control_point_to_dict(p) for p in points]})


async def validate_proximity(request: Request) -> JSONResponse:
    get_current_identity(request)
    body = await _body(request, ProximityIn)
    result = await run_in_threadpool(
        get_services().checkpoints.validate_proximity,
        request.path_params["control_point_id"],
        Coordinate(body.latitude, body.longitude),
    )
    name = result.control_point.name
    if result.valid:
        message = f"You are within the {name} geofence"
    else:
        message = f"Move {result.remaining:.0f} m closer to {name}"
    return JSONResponse(
        {
            "valid": result.valid,
            "distance": round(result.distance, 2),
            "radius": result.radius,
            "remaining": round(result.remaining, 2),
            "message": message,
            "control_point": control_point_to_dict(result.control_point),
        }
    )


async def admin_patrols(request: Request) -> JSONResponse:
    require_roles(request, *OVERSIGHT_ROLES)
    filters = SessionFilters(
        guard_id=request.query_params.get("guard_id") or None,
        status=request.query_params.get("status") or None,
        date_from=_date_param(request, "date_from"),
        date_to=_date_param(request, "date_to"),
    )
    page = await run_in_threadpool(
        get_services().history.list_sessions,
        filters,
        page=_int_param(request, "page", 1),
        limit=_int_param(request, "limit", 20),
    )
    return JSONResponse(page_to_dict(page, session_to_dict))


async def admin_statistics(request: Request) -> JSONResponse:
    require_roles(request, *OVERSIGHT_ROLES)
    stats = await run_in_threadpool(
        get_services().history.statistics,
        date_from=_date_param(request, "date_from"),
        date_to=_date_param(request, "date_to"),
    )
    return JSONResponse({**stats, "online_guards": ws_manager.online_guards()})


async def admin_audit(request: Request) -> JSONResponse:
    require_roles(request, *OVERSIGHT_ROLES)
    raw_session = request.query_params.get("session_id")
    filters = AuditFilters(
        session_id=parse_session_id(raw_session) if raw_session else None,
        guard_id=request.query_params.get("guard_id") or None,
        event_type=request.query_params.get("event_type") or None,
        date_from=_date_param(request, "date_from"),
        date_to=_date_param(request, "date_to"),
    )
    page = await run_in_threadpool(
        get_services().audit.query,
        filters,
        page=_int_param(request, "page", 1),
        limit=_int_param(request, "limit", 50),
    )
    return JSONResponse(page_to_dict(page, audit_to_dict))


async def ws_patrols(websocket: WebSocket) -> None:
    try:
        identity = identity_from_token(websocket.query_params.get("token"))
        topic = websocket.query_params.get("topic") or settings.broadcast_topic
        await run_in_threadpool(_authorize_topic, SessionLocal, identity.subject, identity.is_oversight, topic)
    except (HTTPException, PatrolError) as exc:
        logger.info("WebSocket subscription refused: %s", exc)
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await ws_manager.connect(websocket, guard_id=identity.subject, topics=[topic])
    await websocket.send_json({"type": "subscribed", "topic": topic})
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket, guard_id=identity.subject)


def _authorize_topic(session_factory: SessionFactory, subject: str, oversight: bool, topic: str) -> None:
    if topic == settings.broadcast_topic:
        if not oversight:
            raise HTTPException(status_code=403, detail="Broadcast topic requires supervisor or admin role")
        return
    prefix = session_topic("")
    if not topic.startswith(prefix):
        raise ValidationError(f"Unknown topic: {topic}")
    sid = parse_session_id(topic[len(prefix):])
    if not oversight:
        session_owner(session_factory, sid, subject)


# -- error handling ------------------------------------------------------------


async def patrol_error_handler(_: Request, exc: PatrolError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc.code)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def schema_error_handler(_: Request, exc: SchemaValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]) or "body", "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        {"detail": "Invalid request body", "code": ValidationError.code, "errors": errors},
        status_code=ValidationError.status_code,
    )


# -- app -----------------------------------------------------------------------


def _log_online(guard_id: str) -> None:
    logger.info("Guard %s connected", guard_id)


def _log_offline(guard_id: str) -> None:
    logger.info("Guard %s disconnected", guard_id)


ws_manager.on_connect(_log_online)
ws_manager.on_disconnect(_log_offline)


@contextlib.asynccontextmanager
async def lifespan(_: Starlette):
    services = get_services()
    await run_in_threadpool(on_startup, services.registry)
    reaper_task = None
    if services.reaper is not None:
        reaper_task = asyncio.create_task(services.reaper.run(settings.idle_reaper_interval_seconds))
    yield
    if reaper_task is not None:
        reaper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper_task


routes = [
    Route("/v1/health", endpoint=health, methods=["GET"]),
    Route("/v1/patrols", endpoint=start_patrol, methods=["POST"]),
    Route("/v1/patrols/active", endpoint=active_patrol, methods=["GET"]),
    Route("/v1/patrols/history", endpoint=patrol_history, methods=["GET"]),
    Route("/v1/patrols/{session_id}", endpoint=patrol_detail, methods=["GET"]),
    Route("/v1/patrols/{session_id}/trajectory", endpoint=append_trajectory, methods=["POST"]),
    Route("/v1/patrols/{session_id}/checkpoints", endpoint=record_checkpoint, methods=["POST"]),
    Route("/v1/patrols/{session_id}/finalize", endpoint=finalize_patrol, methods=["POST"]),
    Route("/v1/patrols/{session_id}/cancel", endpoint=cancel_patrol, methods=["POST"]),
    Route("/v1/control-points", endpoint=list_control_points, methods=["GET"]),
    Route(
        "/v1/control-points/{control_point_id}/validate-proximity",
        endpoint=validate_proximity,
        methods=["POST"],
    ),
    Route("/v1/admin/patrols", endpoint=admin_patrols, methods=["GET"]),
    Route("/v1/admin/patrols/statistics", endpoint=admin_statistics, methods=["GET"]),
    Route("/v1/admin/audit", endpoint=admin_audit, methods=["GET"]),
    WebSocketRoute("/ws/patrols", endpoint=ws_patrols),
]


app = Starlette(
    debug=settings.environment == "dev",
    routes=routes,
    lifespan=lifespan,
    exception_handlers={PatrolError: patrol_error_handler, SchemaValidationError: schema_error_handler},
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
