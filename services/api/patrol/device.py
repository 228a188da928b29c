"""Handheld-side client for the patrol API.

The server makes no timing assumptions; the periodic trajectory push lives
here. ``PatrolSampler`` polls a location provider, pushes each fix and backs
off when the position or the network is unavailable.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0


class UpstreamLocationError(Exception):
    """The device could not acquire a position (permission denied, unavailable, timeout). Retryable."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class DeviceRequestError(Exception):
    def __init__(self, code: str, status_code: int, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.code = code
        self.status_code = status_code
        self.message = message
        self.details = details or {}


@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float
    accuracy: float | None = None
    altitude: float | None = None
    speed: float | None = None
    recorded_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"latitude": self.latitude, "longitude": self.longitude}
        for key in ("accuracy", "altitude", "speed"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.recorded_at is not None:
            payload["recorded_at"] = self.recorded_at.isoformat()
        return payload


LocationProvider = Callable[[], LocationFix]


class PatrolDeviceClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            headers={"authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> "PatrolDeviceClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None, params: dict[str, Any] | None = None) -> Any:
        res = self._client.request(method, path, json=json, params=params)
        if res.status_code >= 400:
            try:
                body = res.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            code = body.pop("code", None) or "HTTP_ERROR"
            message = body.pop("detail", None) or res.reason_phrase
            raise DeviceRequestError(code, res.status_code, str(message), body)
        return res.json()

    def start(self, latitude: float, longitude: float, notes: str | None = None) -> dict[str, Any]:
        return self._request("POST", "/v1/patrols", json={"latitude": latitude, "longitude": longitude, "notes": notes})

    def active(self) -> dict[str, Any] | None:
        return self._request("GET", "/v1/patrols/active")["session"]

    def start_or_resume(self, latitude: float, longitude: float, notes: str | None = None) -> dict[str, Any]:
        """Start a patrol, or pick up the one already open after a reconnect."""

        try:
            return self.start(latitude, longitude, notes)
        except DeviceRequestError as exc:
            if exc.code != "SESSION_ALREADY_ACTIVE":
                raise
        session = self.active()
        if session is None:
            # Closed between the two calls.
            return self.start(latitude, longitude, notes)
        logger.info("Resuming patrol %s", session["id"])
        return session

    def push_point(self, session_id: str, fix: LocationFix) -> dict[str, Any]:
        return self._request("POST", f"/v1/patrols/{session_id}/trajectory", json=fix.to_payload())

    def checkpoint(
        self,
        session_id: str,
        latitude: float,
        longitude: float,
        *,
        control_point_id: str | None = None,
        description: str | None = None,
        photo_url: str | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/patrols/{session_id}/checkpoints",
            json={
                "latitude": latitude,
                "longitude": longitude,
                "control_point_id": control_point_id,
                "description": description,
                "photo_url": photo_url,
            },
        )

    def validate_proximity(self, control_point_id: str, latitude: float, longitude: float) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/control-points/{control_point_id}/validate-proximity",
            json={"latitude": latitude, "longitude": longitude},
        )

    def control_points(self, *, active: bool | None = True) -> list[dict[str, Any]]:
        params = {"active": str(active).lower()} if active is not None else None
        return self._request("GET", "/v1/control-points", params=params)["items"]

    def finalize(
        self,
        session_id: str,
        latitude: float | None = None,
        longitude: float | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/patrols/{session_id}/finalize",
            json={"latitude": latitude, "longitude": longitude, "notes": notes},
        )

    def cancel(self, session_id: str, reason: str | None = None) -> dict[str, Any]:
        return self._request("POST", f"/v1/patrols/{session_id}/cancel", json={"reason": reason})


@dataclass
class SamplerStats:
    sent: int = 0
    location_failures: int = 0
    request_failures: int = 0
    stopped_reason: str | None = None


class PatrolSampler:
    def __init__(
        self,
        client: PatrolDeviceClient,
        session_id: str,
        provider: LocationProvider,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        backoff_base_seconds: float = 5.0,
        max_backoff_seconds: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._session_id = session_id
        self._provider = provider
        self._interval = interval_seconds
        self._backoff_base = backoff_base_seconds
        self._max_backoff = max_backoff_seconds
        self._sleep = sleep
        self._stopped = False
        self.stats = SamplerStats()

    def stop(self) -> None:
        self._stopped = True

    def _backoff(self, failures: int) -> float:
        return min(self._max_backoff, self._backoff_base * 2 ** (failures - 1))

    def tick(self, failures: int) -> tuple[int, float | None]:
        """One sampling attempt. Returns the new failure streak and the delay before the next, or None to stop."""

        try:
            fix = self._provider()
            self._client.push_point(self._session_id, fix)
        except UpstreamLocationError as exc:
            self.stats.location_failures += 1
            logger.warning("Location unavailable: %s", exc.reason)
            return failures + 1, self._backoff(failures + 1)
        except httpx.TransportError as exc:
            self.stats.request_failures += 1
            logger.warning("Trajectory push failed: %s", exc)
            return failures + 1, self._backoff(failures + 1)
        except DeviceRequestError as exc:
            if exc.code in {"SESSION_NOT_ACTIVE", "SESSION_NOT_FOUND"}:
                self.stats.stopped_reason = exc.code
                logger.info("Patrol %s no longer active, sampler stopping", self._session_id)
                return failures, None
            self.stats.request_failures += 1
            if exc.status_code >= 500:
                logger.warning("Server unavailable (%s), backing off", exc.code)
                return failures + 1, self._backoff(failures + 1)
            # A rejected fix is dropped; the next one may be fine.
            logger.warning("Trajectory point rejected: %s", exc.message)
            return 0, self._interval
        self.stats.sent += 1
        return 0, self._interval

    def run(self, max_iterations: int | None = None) -> SamplerStats:
        failures = 0
        iterations = 0
        while not self._stopped:
            if max_iterations is not None and iterations >= max_iterations:
                self.stats.stopped_reason = self.stats.stopped_reason or "max_iterations"
                break
            iterations += 1
            failures, delay = self.tick(failures)
            if delay is None:
                break
            self._sleep(delay)
        else:
            self.stats.stopped_reason = self.stats.stopped_reason or "stopped"
        return self.stats
