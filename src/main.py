"""
AgentPulse - webhook ingestion and event processing for AI agent activity.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("agentpulse")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("AgentPulse starting up (env=%s)", settings.app_env)

    if not settings.admin_api_key:
        logger.warning("ADMIN_API_KEY not set - admin endpoints will answer 503.")
    if not settings.github_api_token:
        logger.warning(
            "GITHUB_API_TOKEN not set - commit stats use unauthenticated GitHub API limits."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []
    if settings.dispatcher_enabled:
        from src.workers.event_dispatcher import run_event_dispatcher
        worker_tasks.append(asyncio.create_task(run_event_dispatcher()))
        logger.info("Event dispatcher started (%d workers)", settings.worker_count)
    else:
        logger.info("Event dispatcher disabled (DISPATCHER_ENABLED=false)")

    yield

    # Graceful shutdown - in-flight events not acked in time are redelivered after their lease
    logger.info("AgentPulse shutting down - stopping %d worker tasks...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        # Wait up to 10 seconds for workers to finish
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from src.utils.dedup import close_redis
    from src.database import dispose_engine
    try:
        await close_redis()
    except Exception as e:
        logger.warning("Redis close failed: %s", str(e))
    await dispose_engine()
    logger.info("AgentPulse shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="AgentPulse",
        description="Webhook ingestion and event processing for AI agent activity",
        version="1.0.0",
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins or [settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "X-Admin-Key", "X-Webhook-Token", "Accept", "Origin",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    # Include all routes
    application.include_router(api_router)

    return application


app = create_app()
