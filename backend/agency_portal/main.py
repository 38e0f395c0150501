import logging

import redis
import sentry_sdk
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.orm import Session

from agency_portal.config import settings
from agency_portal.db import get_db
from agency_portal.exceptions import (
    AppException,
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from agency_portal.middleware.body_limit import BodySizeLimitMiddleware
from agency_portal.middleware.request_id import RequestIDMiddleware
from agency_portal.middleware.security_headers import SecurityHeadersMiddleware
from agency_portal.rate_limit import limiter, rate_limit_exceeded_handler
from agency_portal.routers import auth, contract_signing, contract_templates, contracts
from agency_portal.services import audit_log  # noqa: F401  registers the log immutability listeners
from agency_portal.utils.logging import configure_logging

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
    )

configure_logging(logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Agency Portal Contracts",
    description="Contract templates, e-signature and signed artifact delivery",
    version="1.0.0",
)

# Add rate limiting state
app.state.limiter = limiter

# Register exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,
)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.MAX_REQUEST_BODY_BYTES)
app.add_middleware(SecurityHeadersMiddleware)

app.include_router(auth.router)
# Token routes first: /contracts/by-token/... must not fall into /contracts/{id}
app.include_router(contract_signing.router)
app.include_router(contracts.router)
app.include_router(contract_templates.router)


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check with dependency verification"""
    health_status = {"status": "ok", "checks": {}}

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "ok"
    except Exception as e:
        health_status["checks"]["database"] = "error"
        health_status["status"] = "degraded"
        logger.error("Database health check failed: %s", e)

    if settings.REDIS_URL:
        try:
            redis.from_url(settings.REDIS_URL, socket_connect_timeout=2).ping()
            health_status["checks"]["redis"] = "ok"
        except redis.RedisError as e:
            health_status["checks"]["redis"] = "error"
            health_status["status"] = "degraded"
            logger.error("Redis health check failed: %s", e)
    else:
        health_status["checks"]["redis"] = "not_configured"

    return health_status
