"""FastAPI application entry point.

This module wires together the API routers, configures middleware and
startup tasks, and exposes the ASGI application object used by the
server.  The recurring pledge scheduler runs as a background task started
here.
"""

import os
import logging
import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.routes import auth, funds, pledges, settings
from app.database import create_db_and_tables, async_session
from app.gateway import get_payment_gateway
from app.notifications import get_notifier
from app.pledge_scheduler import process_due_pledges, retry_failed_pledges

# Basic logging configuration.  The log level can be controlled with an
# environment variable so deployments can adjust verbosity without code
# changes.
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL))
logger = logging.getLogger(__name__)

PLEDGE_SCHEDULER_ENABLED = (
    os.getenv("PLEDGE_SCHEDULER_ENABLED", "true").lower() == "true"
)
PLEDGE_SCHEDULER_INTERVAL_SECONDS = int(
    os.getenv("PLEDGE_SCHEDULER_INTERVAL_SECONDS", "3600")
)

app = FastAPI(title="Pledge Billing")

# CORS setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup():
    """Initialize the database and kick off background tasks."""

    await create_db_and_tables()
    if PLEDGE_SCHEDULER_ENABLED:
        asyncio.create_task(pledge_billing_task())


async def run_pledge_billing() -> None:
    """Run one pass of the due-pledge scheduler followed by the retry sweep."""

    gateway = get_payment_gateway()
    notifier = get_notifier()
    due = await process_due_pledges(async_session, gateway=gateway, notifier=notifier)
    retried = await retry_failed_pledges(
        async_session, gateway=gateway, notifier=notifier
    )
    logger.info(
        "Pledge billing run finished: %s/%s due charged, %s/%s retries charged",
        sum(o.success for o in due),
        len(due),
        sum(o.success for o in retried),
        len(retried),
    )


async def pledge_billing_task():
    """Background coroutine that periodically charges due pledges."""

    logger.info(
        "Starting pledge billing task (every %ss)", PLEDGE_SCHEDULER_INTERVAL_SECONDS
    )
    while True:
        try:
            await run_pledge_billing()
        except Exception as exc:
            logger.exception("Pledge billing task failed: %s", exc)
        await asyncio.sleep(PLEDGE_SCHEDULER_INTERVAL_SECONDS)


app.include_router(auth.router)
app.include_router(funds.router)
app.include_router(pledges.router)
app.include_router(settings.router)


@app.get("/")
async def read_root():
    return {"message": "Pledge Billing API"}


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler that logs the stack trace once."""
    logger.exception("Unhandled error during request %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "code": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )
