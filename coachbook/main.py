import logging
import os
import sys
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from coachbook.api.problems import register_problem_handlers
from coachbook.api.routes_bookings import router as bookings_router
from coachbook.api.routes_disputes import router as disputes_router
from coachbook.api.routes_health import router as health_router
from coachbook.api.routes_metrics import router as metrics_router
from coachbook.api.routes_payments import router as payments_router
from coachbook.api.routes_reviews import router as reviews_router
from coachbook.infra.db import get_session_factory
from coachbook.infra.logging import configure_logging
from coachbook.infra.metrics import configure_metrics, metrics
from coachbook.settings import settings

REQUEST_ID_HEADER = "X-Request-ID"

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("coachbook.request")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        response = await call_next(request)
        if response.status_code >= 500:
            metrics.record_http_5xx(request.method, request.url.path)
        access_logger.info(
            "request",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": round((time.perf_counter() - started) * 1000),
                }
            },
        )
        return response


def _running_under_tests(app_settings) -> bool:
    return bool(app_settings.testing or os.getenv("PYTEST_CURRENT_TEST") or "pytest" in sys.argv[0])


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env == "dev" or _running_under_tests(app_settings):
        return

    required = {
        "STRIPE_SECRET_KEY": app_settings.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": app_settings.stripe_webhook_secret,
    }
    missing = [name for name, value in required.items() if not value]
    if app_settings.auth_secret_key == "dev-auth-secret":
        missing.append("AUTH_SECRET_KEY")

    if missing:
        logger.error("startup_config_error", extra={"extra": {"missing": missing}})
        raise RuntimeError(f"Invalid production configuration: {', '.join(missing)} must be set")


def create_app(app_settings) -> FastAPI:
    configure_logging()
    _validate_prod_config(app_settings)
    app = FastAPI(title="Coachbook", version="1.0.0")

    app.state.app_settings = app_settings
    app.state.db_session_factory = get_session_factory()
    app.state.metrics = configure_metrics(app_settings.metrics_enabled)
    app.state.payment_processor = None

    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIdMiddleware)
    register_problem_handlers(app)

    for router in (
        health_router,
        metrics_router,
        bookings_router,
        disputes_router,
        reviews_router,
        payments_router,
    ):
        app.include_router(router)
    return app


app = create_app(settings)
