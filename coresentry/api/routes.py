"""
Core Sentry - API Routes
========================

Telemetry ingress, configuration API and decision egress.
"""

import asyncio
from typing import Optional
from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from coresentry.api.schemas import (
    AdvisoryConfig,
    AdvisoryConfigUpdate,
    EngineStatus,
    RegisteredActions,
    TelemetrySample,
    ThresholdUpdate,
    Thresholds,
    WebhookHandlerConfig,
)
from coresentry.constants import ActionKind
from coresentry.core.action_dispatcher import WebhookActionHandler
from coresentry.core.decision_engine import DecisionEngine
from coresentry.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _get_engine(request: Request) -> DecisionEngine:
    return request.app.state.engine


def _resolve_kind(kind: str) -> ActionKind:
    try:
        return ActionKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown action kind: {kind}")


# =============================================================================
# TELEMETRY
# =============================================================================

@router.post("/telemetry", tags=["telemetry"])
async def ingest_telemetry(sample: TelemetrySample, request: Request):
    """
    Feed one telemetry sample through the decision engine.

    Samples arriving while a decision is in flight or during the cooldown
    are dropped and answered with ``decision: null``.
    """
    engine = _get_engine(request)
    event = await engine.process(sample)

    return {
        "admitted": event is not None,
        "decision": event.model_dump(mode="json") if event else None,
    }


# =============================================================================
# THRESHOLDS
# =============================================================================

@router.get("/thresholds", response_model=Thresholds, tags=["config"])
async def get_thresholds(request: Request):
    """Get the current thresholds."""
    return _get_engine(request).thresholds.get()


@router.put("/thresholds", response_model=Thresholds, tags=["config"])
async def update_thresholds(update: ThresholdUpdate, request: Request):
    """
    Merge the supplied fields into the current thresholds.

    Sending ``null`` for block, heap, io or criticalFunctions restores its default.
    """
    engine = _get_engine(request)
    try:
        return engine.thresholds.set(update.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/thresholds/reset", response_model=Thresholds, tags=["config"])
async def reset_thresholds(request: Request):
    """Restore the configured default thresholds."""
    return _get_engine(request).thresholds.reset()


# =============================================================================
# ADVISORY
# =============================================================================

@router.get("/advisory", response_model=AdvisoryConfig, tags=["config"])
async def get_advisory_config(request: Request):
    """Get the advisory endpoint and model."""
    advisory = _get_engine(request).advisory
    return AdvisoryConfig(endpoint=advisory.endpoint, model=advisory.model)


@router.put("/advisory", response_model=AdvisoryConfig, tags=["config"])
async def update_advisory_config(update: AdvisoryConfigUpdate, request: Request):
    """Change the advisory endpoint and/or model."""
    advisory = _get_engine(request).advisory
    try:
        advisory.configure(endpoint=update.endpoint, model=update.model)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return AdvisoryConfig(endpoint=advisory.endpoint, model=advisory.model)


# =============================================================================
# ACTION HANDLERS
# =============================================================================

@router.get("/actions", response_model=RegisteredActions, tags=["actions"])
async def list_actions(request: Request):
    """List action kinds with a custom handler."""
    return RegisteredActions(actions=_get_engine(request).dispatcher.list_registered())


@router.put("/actions/{kind}", response_model=RegisteredActions, tags=["actions"])
async def register_webhook(kind: str, config: WebhookHandlerConfig, request: Request):
    """Forward decisions of ``kind`` to a webhook."""
    dispatcher = _get_engine(request).dispatcher
    action = _resolve_kind(kind)

    timeout = config.timeout_seconds or request.app.state.settings.webhook_timeout_seconds

    previous = dispatcher.get_handler(action)
    try:
        dispatcher.register(action, WebhookActionHandler(config.url, timeout_seconds=timeout))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if isinstance(previous, WebhookActionHandler):
        await previous.close()

    return RegisteredActions(actions=dispatcher.list_registered())


@router.delete("/actions/{kind}", response_model=RegisteredActions, tags=["actions"])
async def unregister_action(kind: str, request: Request):
    """Remove the custom handler for ``kind``; the built-in fallback applies again."""
    dispatcher = _get_engine(request).dispatcher
    action = _resolve_kind(kind)

    handler = dispatcher.get_handler(action)
    if not dispatcher.unregister(action):
        raise HTTPException(status_code=404, detail=f"No handler registered for {action.value}")

    if isinstance(handler, WebhookActionHandler):
        await handler.close()

    return RegisteredActions(actions=dispatcher.list_registered())


# =============================================================================
# DECISIONS
# =============================================================================

@router.get("/decisions", tags=["decisions"])
async def get_decisions(
    request: Request,
    limit: int = Query(default=20, ge=1, le=1000),
    action: Optional[str] = None
):
    """Recent decisions, newest first."""
    kind = _resolve_kind(action) if action else None
    decisions = _get_engine(request).history(limit=limit, action=kind)
    return {
        "decisions": [d.model_dump(mode="json") for d in decisions],
        "count": len(decisions),
    }


@router.get("/status", response_model=EngineStatus, tags=["decisions"])
async def get_status(request: Request):
    """Gate state and flow counters."""
    return _get_engine(request).status()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Consume client messages until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/stream")
async def stream_events(websocket: WebSocket):
    """Push telemetry and decision events as JSON messages."""
    engine: DecisionEngine = websocket.app.state.engine
    # Subscribe first so no event published after the handshake is missed
    queue = engine.broadcaster.subscribe()
    disconnect: Optional[asyncio.Task] = None
    next_event: Optional[asyncio.Task] = None

    try:
        await websocket.accept()
        disconnect = asyncio.create_task(_wait_for_disconnect(websocket))
        while True:
            next_event = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait(
                {next_event, disconnect},
                return_when=asyncio.FIRST_COMPLETED
            )
            if disconnect in done:
                logger.debug("Stream client disconnected")
                break

            event = next_event.result()
            await websocket.send_json(event.model_dump(mode="json", by_alias=True))
    except WebSocketDisconnect:
        logger.debug("Stream client disconnected")
    finally:
        for task in (next_event, disconnect):
            if task is not None and not task.done():
                task.cancel()
        engine.broadcaster.unsubscribe(queue)
