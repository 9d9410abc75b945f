"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from fulfillment.api.deps import ConnectionDep, RedisDep, SessionDep
from fulfillment.api.routes.orders import router as orders_router
from fulfillment.api.routes.payments import router as payments_router
from fulfillment.core.config import get_settings
from fulfillment.core.logging import configure_logging
from fulfillment.messaging.connection import ConnectionManager
from fulfillment.messaging.errors import BrokerUnavailableError, TopologyConflictError
from fulfillment.messaging.publisher import Publisher

settings = get_settings()
logger = structlog.get_logger(__name__)


def _terminate() -> None:
    os.kill(os.getpid(), signal.SIGTERM)


async def watch_broker(connection: ConnectionManager, on_fatal: Callable[[], None]) -> None:
    """Call `on_fatal` if the broker is lost for good. Returns quietly on a clean disconnect."""
    try:
        await connection.wait_closed()
    except (BrokerUnavailableError, TopologyConflictError) as exc:
        logger.critical("rabbitmq_lost_for_good", error=str(exc))
        on_fatal()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the broker connection for the lifetime of the process.

    Startup fails if the broker cannot be reached within the reconnect budget.
    Once running, losing the broker for good sends SIGTERM to the server so
    the supervisor restarts it.
    """
    configure_logging(settings.log_level, settings.log_json)
    connection = ConnectionManager.from_settings(settings)
    await connection.connect()
    app.state.connection = connection
    app.state.publisher = Publisher(connection, timeout=settings.rabbitmq_publish_timeout)
    watcher = asyncio.create_task(watch_broker(connection, lambda: _terminate()))
    logger.info("api_started", app=settings.app_name)
    try:
        yield
    finally:
        await connection.disconnect()
        await watcher


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# CORS for the storefront origins
allowed_origins = [o.strip() for o in settings.api_cors_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders_router)
app.include_router(payments_router)


async def _run_check(check: Callable[[], Awaitable[Any]]) -> str:
    try:
        result = await check()
    except Exception as exc:
        return f"fail: {type(exc).__name__}"
    return "fail" if result is False else "ok"


@app.get("/healthz")
async def healthz(session: SessionDep, redis: RedisDep, connection: ConnectionDep) -> dict[str, Any]:  # type: ignore[type-arg]
    """Readiness of the read-model database, the status cache and the broker connection."""
    checks = {
        "postgres": await _run_check(lambda: session.execute(text("SELECT 1"))),
        "redis": await _run_check(redis.ping),
        "rabbitmq": "ok" if connection.is_healthy() else f"fail: {connection.state.status.value}",
    }
    if any(result != "ok" for result in checks.values()):
        logger.warning("healthcheck_failed", **checks)
        raise HTTPException(status_code=503, detail=checks)
    return {"status": "ok", "detail": checks}
