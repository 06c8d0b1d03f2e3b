"""In-process event bus for SystemEvents.

Workflow, pipeline and integrations publish events here; the audit
subscriber persists them and the admin bot forwards the notable ones.
Publishing never blocks on subscribers: events go through an asyncio queue
drained by one background worker.

Usage:
    from src.admin.events import emit

    await emit(SystemEvent(
        event_type=EventType.SESSION_STARTED,
        session_id=session.id,
        data={"thread_id": session.thread_id},
    ))

    # At startup:
    from src.admin.events import subscribe

    subscribe(audit_on_event)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]

# ── Bus state ────────────────────────────────────────────────────────

_global_handlers: list[EventHandler] = []
_typed_handlers: dict[EventType, list[EventHandler]] = {}
_queue: asyncio.Queue[SystemEvent] | None = None
_worker: asyncio.Task[None] | None = None


def subscribe(handler: EventHandler, event_types: Iterable[EventType] | None = None) -> None:
    """Register ``handler`` for every event, or only for ``event_types``."""
    if event_types is None:
        _global_handlers.append(handler)
        logger.info("Subscribed %s to all events", handler.__name__)
        return

    types = list(event_types)
    for event_type in types:
        _typed_handlers.setdefault(event_type, []).append(handler)
    logger.info("Subscribed %s to %s", handler.__name__, [t.value for t in types])


def unsubscribe(handler: EventHandler) -> None:
    """Remove ``handler`` from every subscription list it appears in."""
    if handler in _global_handlers:
        _global_handlers.remove(handler)
    for handlers in _typed_handlers.values():
        if handler in handlers:
            handlers.remove(handler)


async def emit(event: SystemEvent) -> None:
    """Queue ``event`` for delivery to its subscribers."""
    global _queue
    if _queue is None:
        _queue = asyncio.Queue()
    _start_worker()

    await _queue.put(event)
    logger.debug("Event queued: %s (session=%s)", event.event_type.value, event.session_id)


# ── Delivery ─────────────────────────────────────────────────────────


def _start_worker() -> None:
    global _worker
    if _worker is None or _worker.done():
        _worker = asyncio.create_task(_drain_forever())


async def _drain_forever() -> None:
    while _queue is not None:
        try:
            event = await _queue.get()
        except asyncio.CancelledError:
            logger.info("Event worker cancelled")
            break
        try:
            await _deliver(event)
        except Exception:
            logger.exception("Event delivery failed for %s", event.event_type.value)
        finally:
            _queue.task_done()


async def _deliver(event: SystemEvent) -> None:
    """Fan ``event`` out to all matching handlers; one failing handler never affects the others."""
    handlers = [*_global_handlers, *_typed_handlers.get(event.event_type, [])]
    if not handlers:
        return

    results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
    for handler, result in zip(handlers, results):
        if isinstance(result, Exception):
            logger.error(
                "Handler %s failed for %s: %s",
                handler.__name__,
                event.event_type.value,
                result,
            )


# ── Lifecycle ────────────────────────────────────────────────────────


async def start_event_system() -> None:
    """Create the queue and worker. Called from the FastAPI lifespan."""
    global _queue
    _queue = asyncio.Queue()
    _start_worker()
    logger.info(
        "Event system started (%d global, %d typed handlers)",
        len(_global_handlers),
        sum(len(v) for v in _typed_handlers.values()),
    )


async def stop_event_system() -> None:
    """Deliver what is queued, then stop the worker."""
    global _worker, _queue

    if _queue is not None:
        await _queue.join()

    if _worker is not None and not _worker.done():
        _worker.cancel()
        try:
            await _worker
        except asyncio.CancelledError:
            pass

    _worker = None
    _queue = None
    logger.info("Event system stopped")
