import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exception_handlers import http_exception_handler
from sqlalchemy import text

from .config import get_settings
from .db import SessionLocal, init_db
from .logging_config import configure_logging
from .metrics import metrics
from .routers import sessions
from .services.scheduling import SchedulingService, build_scheduling_service


def create_app(scheduling: SchedulingService | None = None) -> FastAPI:
    configure_logging()
    logger = logging.getLogger(__name__)
    try:
        init_db()
    except Exception:
        # Do not block startup if the database is temporarily unavailable.
        logger.exception("init_db_failed_startup_continue")

    app = FastAPI(
        title="Session Calendar Service",
        description="Calendar routing, session events and availability for therapy bookings.",
        version="0.1.0",
    )

    settings = get_settings()
    app.state.scheduling = scheduling or build_scheduling_service(settings)
    # Log only high-level, non-sensitive configuration.
    logger.info(
        "app_config_summary_sanitized",
        extra={
            "admin_calendar_id": settings.calendar.admin_calendar_id,
            "service_account_configured": settings.calendar.has_service_account,
            "admin_api_key_configured": bool(settings.admin_api_key),
        },
    )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        path = request.url.path
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        metrics.total_requests += 1
        start = time.time()
        error = False
        try:
            response = await call_next(request)
        except HTTPException as exc:
            error = True
            response = await http_exception_handler(request, exc)
        except Exception:
            logger.exception("unhandled_request_exception", extra={"path": path})
            error = True
            response = Response(status_code=500, content="Internal Server Error")
        if response.status_code >= 500:
            error = True
        if error:
            metrics.total_errors += 1
        metrics.record_route(path, (time.time() - start) * 1000.0, error)
        response.headers["X-Request-ID"] = rid
        return response

    @app.on_event("startup")
    async def _warm_calendar_credentials() -> None:
        # Never raises; failures are recorded on the gate.
        await app.state.scheduling.gate.ensure_ready()

    app.include_router(sessions.router, prefix="/v1/sessions", tags=["sessions"])

    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok"}

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> dict:
        """Readiness probe covering the database and calendar credentials."""
        db_healthy = False
        session = SessionLocal()
        try:
            session.execute(text("SELECT 1"))
            db_healthy = True
        except Exception:
            db_healthy = False
        finally:
            session.close()

        gate = app.state.scheduling.gate
        calendar_ok = gate.is_ready and gate.setup_succeeded
        status_value = "ok" if db_healthy and calendar_ok else "degraded"
        return {
            "status": status_value,
            "database": {"healthy": db_healthy},
            "calendar": {
                "ready": gate.is_ready,
                "credentials_loaded": gate.setup_succeeded,
                "attempts": gate.attempts,
                "last_error": str(gate.last_error) if gate.last_error else None,
            },
        }

    @app.get("/metrics", tags=["metrics"])
    async def get_metrics() -> dict:
        return metrics.as_dict()

    @app.get("/metrics/prometheus", tags=["metrics"])
    async def get_metrics_prometheus() -> Response:
        """Expose a minimal Prometheus text-format view of the calendar counters."""
        lines: list[str] = []

        def emit(name: str, value: float) -> None:
            lines.append(f"{name} {value}")

        for key, value in metrics.as_dict().items():
            if isinstance(value, (int, float)):
                emit(f"session_calendar_{key}", float(value))
        for provider_id, pm in metrics.by_provider.items():
            lines.append(
                f'session_calendar_provider_delegated_fallbacks{{provider="{provider_id}"}} '
                f"{float(pm.delegated_fallbacks)}"
            )
        return Response(
            content="\n".join(lines) + "\n", media_type="text/plain; version=0.0.4"
        )

    return app


app = create_app()
