from __future__ import annotations

from starlette.testclient import TestClient

from patrol.core.security import create_access_token
from patrol.main import app


def main() -> None:
    guard = {"authorization": f"Bearer {create_access_token('smoke-guard', 'guard')}"}
    admin = {"authorization": f"Bearer {create_access_token('smoke-admin', 'admin')}"}

    with TestClient(app) as client:
        r = client.get("/v1/health")
        assert r.status_code == 200, r.text

        r = client.get("/v1/patrols/active", headers=guard)
        assert r.status_code == 200, r.text
        session = r.json()["session"]
        if session is None:
            r = client.post("/v1/patrols", headers=guard, json={"latitude": -23.5505, "longitude": -46.6333})
            assert r.status_code == 201, r.text
            session = r.json()
        sid = session["id"]

        r = client.post(
            f"/v1/patrols/{sid}/trajectory",
            headers=guard,
            json={"latitude": -23.5509, "longitude": -46.6333, "accuracy": 6.0},
        )
        assert r.status_code == 201, r.text

        r = client.post(f"/v1/patrols/{sid}/checkpoints", headers=guard, json={"latitude": -23.5509, "longitude": -46.6333})
        assert r.status_code == 201, r.text

        r = client.post(f"/v1/patrols/{sid}/finalize", headers=guard, json={"notes": "smoke test"})
        assert r.status_code == 200, r.text
        assert r.json()["status"] == "finalized"

        r = client.get(f"/v1/admin/audit?session_id={sid}", headers=admin)
        assert r.status_code == 200, r.text
        assert len(r.json()["items"]) >= 3

    print("smoke_test: OK")


if __name__ == "__main__":
    main()
