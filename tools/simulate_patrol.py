from __future__ import annotations

import argparse
import math
import random
import time
from datetime import datetime, timedelta, timezone

import jwt

from patrol.device import LocationFix, PatrolDeviceClient, PatrolSampler, UpstreamLocationError

METERS_PER_DEGREE_LAT = 111_195.0


def mint_token(secret: str, guard_id: str, algorithm: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": guard_id, "role": "guard", "iat": now, "exp": now + timedelta(hours=8)}
    return jwt.encode(payload, secret, algorithm=algorithm)


class ScriptedWalk:
    """Walks a straight heading from the start point; drops a fix now and then like a real GPS."""

    def __init__(self, latitude: float, longitude: float, *, step_m: float, heading_deg: float, dropout: float) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self._step = step_m
        self._heading = math.radians(heading_deg)
        self._dropout = dropout

    def __call__(self) -> LocationFix:
        if random.random() < self._dropout:
            raise UpstreamLocationError("GPS signal lost")
        self.latitude += self._step * math.cos(self._heading) / METERS_PER_DEGREE_LAT
        self.longitude += (
            self._step * math.sin(self._heading) / (METERS_PER_DEGREE_LAT * math.cos(math.radians(self.latitude)))
        )
        return LocationFix(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy=round(random.uniform(3, 12), 1),
            speed=round(self._step / 30, 2),
            recorded_at=datetime.now(timezone.utc),
        )


def main() -> None:
    p = argparse.ArgumentParser(description="Simulate a guard device walking a patrol")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--guard", default="guard-001")
    p.add_argument("--jwt-secret", required=True, help="Same JWT_SECRET the API runs with")
    p.add_argument("--jwt-algorithm", default="HS256")
    p.add_argument("--lat", type=float, default=-23.5505)
    p.add_argument("--lon", type=float, default=-46.6333)
    p.add_argument("--points", type=int, default=10, help="Trajectory samples to send")
    p.add_argument("--step", type=float, default=25.0, help="Meters walked between samples")
    p.add_argument("--heading", type=float, default=0.0, help="Degrees clockwise from north")
    p.add_argument("--interval", type=float, default=2.0, help="Seconds between samples")
    p.add_argument("--dropout", type=float, default=0.1, help="Probability a fix is unavailable")
    p.add_argument("--checkpoint", default=None, help="Control point id to check in at the end of the walk")
    args = p.parse_args()

    token = mint_token(args.jwt_secret, args.guard, args.jwt_algorithm)
    walk = ScriptedWalk(args.lat, args.lon, step_m=args.step, heading_deg=args.heading, dropout=args.dropout)

    with PatrolDeviceClient(args.api, token) as client:
        session = client.start_or_resume(args.lat, args.lon, notes="simulated patrol")
        session_id = session["id"]
        print(f"Patrol {session_id} running as {args.guard}. Sending {args.points} samples...")

        sampler = PatrolSampler(
            client,
            session_id,
            walk,
            interval_seconds=args.interval,
            backoff_base_seconds=args.interval,
            sleep=time.sleep,
        )
        stats = sampler.run(max_iterations=args.points)
        print(f"sent: {stats.sent}, gps dropouts: {stats.location_failures}, rejected: {stats.request_failures}")

        if args.checkpoint:
            check = client.validate_proximity(args.checkpoint, walk.latitude, walk.longitude)
            print(f"proximity: {check['message']}")
            visit = client.checkpoint(session_id, walk.latitude, walk.longitude, control_point_id=args.checkpoint)
            print(f"checkpoint #{visit['sequence_number']} at {visit['distance_to_point']:.1f} m")

        closed = client.finalize(session_id, walk.latitude, walk.longitude, notes="end of simulated walk")
        print(f"finalized: {closed['total_distance_km']} in {closed['duration']}")


if __name__ == "__main__":
    main()
