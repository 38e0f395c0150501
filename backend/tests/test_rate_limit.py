from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from slowapi.errors import RateLimitExceeded

from agency_portal.rate_limit import limiter, rate_limit_exceeded_handler


def test_rate_limit_exceeded_returns_429():
    app = FastAPI()
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.get("/limited")
    @limiter.limit("1/minute")
    def limited(request: Request):
        return {"ok": True}

    limiter.reset()
    client = TestClient(app)
    assert client.get("/limited").status_code == 200
    response = client.get("/limited")
    assert response.status_code == 429
    body = response.json()
    assert body["error_code"] == "RATE_LIMIT_EXCEEDED"


def test_public_signing_endpoints_are_limited(client):
    from agency_portal.config import settings

    token = "f" * 64
    statuses = [client.get(f"/contracts/by-token/{token}").status_code for _ in range(35)]
    assert statuses[0] == 404
    assert statuses[-1] == 429
    assert settings.public_rate_limit.startswith("30/")
