"""FastAPI application entry point — wires everything together.

Usage:
    python -m src.main

Starts FastAPI (health check + Telegram webhook) and the Telegram bots, plus
the background sweep that evicts idle sessions and expires sponsor rounds.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request

from src.admin.events import emit, start_event_system, stop_event_system, subscribe
from src.channels.telegram import create_telegram_app, telegram_gateway, telegram_router
from src.config import settings
from src.conversation.engine import SessionWorkflow
from src.conversation.store import SessionStore
from src.db.engine import connect_cache, db_lifespan
from src.denylist.store import deny_list
from src.inspection.pipeline import InspectionPipeline
from src.integrations.identity.service import identity_verifier
from src.integrations.sponsors.client import sponsor_registry
from src.llm.client import llm_client
from src.llm.extractor import text_extractor
from src.schemas.events import EventType, SystemEvent
from src.security.audit import audit_on_event, transcript_auditor

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)


def build_workflow() -> SessionWorkflow:
    """Assemble the workflow from the module-level collaborators."""
    store = SessionStore(auditor=transcript_auditor.record)
    pipeline = InspectionPipeline(text_extractor, deny_list, identity_verifier, sponsor_registry)
    return SessionWorkflow(store, pipeline, telegram_gateway)


async def run_sweeper(workflow: SessionWorkflow, interval: float) -> None:
    """Call workflow.tick() every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await workflow.tick()
        except Exception:
            logger.exception("Periodic sweep failed")


# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting entry bot (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system
        await start_event_system()
        logger.info("Event system started")

        # 3. Audit logging — always active (global subscriber)
        subscribe(audit_on_event)
        logger.info("Audit logging subscriber registered")
        await emit(SystemEvent(
            event_type=EventType.SYSTEM_STARTUP,
            data={"environment": settings.environment},
            source_module="main",
        ))

        # 4. Workflow and its collaborators
        identity_verifier.bind_cache(await connect_cache())
        workflow = build_workflow()
        app.state.workflow = workflow

        # 5. Admin bot (only if token configured) — also the transcript sink
        admin_bot_instance = None
        if settings.telegram.telegram_admin_bot_token:
            from src.admin.bot import admin_bot

            admin_bot.bind_workflow(workflow)
            await admin_bot.start()
            transcript_auditor.add_sink(admin_bot.send_transcript)
            admin_bot_instance = admin_bot
            logger.info("Admin bot started")
        else:
            logger.warning("TELEGRAM_ADMIN_BOT_TOKEN not set — admin bot and log chat disabled")

        # 6. Telegram user bot — webhook when a public URL is configured, polling otherwise
        telegram_app = create_telegram_app(workflow)
        await telegram_app.initialize()
        await telegram_app.start()
        app.state.telegram_app = telegram_app
        webhook_url = settings.telegram.telegram_webhook_url
        if webhook_url:
            await telegram_app.bot.set_webhook(
                url=webhook_url,
                secret_token=settings.telegram.telegram_webhook_secret or None,
                drop_pending_updates=True,
            )
            logger.info("Telegram webhook set to %s", webhook_url)
        else:
            await telegram_app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]
            logger.info("Telegram user bot polling started")

        # 7. Idle sweep + sponsor round expiry
        sweeper = asyncio.create_task(run_sweeper(workflow, settings.workflow.sweep_interval_seconds))

        try:
            yield
        finally:
            # Shutdown in reverse order
            logger.info("Shutting down entry bot...")

            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

            if telegram_app.updater and telegram_app.updater.running:
                await telegram_app.updater.stop()
            await telegram_app.stop()
            await telegram_app.shutdown()
            logger.info("Telegram user bot stopped")

            if admin_bot_instance is not None:
                await admin_bot_instance.stop()
                logger.info("Admin bot stopped")

            await llm_client.close()
            logger.info("LLM client closed")

            await emit(SystemEvent(
                event_type=EventType.SYSTEM_SHUTDOWN,
                data={"active_sessions": workflow.store.count()},
                source_module="main",
            ))
            await stop_event_system()
            logger.info("Event system stopped")

    logger.info("Entry bot shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="Entry Review Bot",
    description="Chat-bot review of temporary entry applications",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(telegram_router)


@app.get("/health")
async def health_check(request: Request) -> dict[str, str | int]:
    """Health check endpoint."""
    workflow: SessionWorkflow | None = getattr(request.app.state, "workflow", None)
    return {
        "status": "ok",
        "environment": settings.environment,
        "active_sessions": workflow.store.count() if workflow is not None else 0,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
