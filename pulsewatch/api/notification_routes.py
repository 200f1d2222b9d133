"""Pulsewatch — Real-time Notification Route."""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pulsewatch.models.event_models import PulseEvent
from pulsewatch.orchestrator.notifications import hub
from pulsewatch.core.logging import get_logger

logger = get_logger("api.notifications")

router = APIRouter(tags=["Notifications"])


async def _forward(websocket: WebSocket, queue: "asyncio.Queue[PulseEvent]") -> None:
    while True:
        event = await queue.get()
        await websocket.send_text(event.model_dump_json())


@router.websocket("/ws/pulses")
async def pulse_events(websocket: WebSocket):
    """Stream lifecycle events as JSON. Clients re-fetch the pulse on each one."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[PulseEvent] = asyncio.Queue()

    # Events may be published from worker threads (sync routes, reaper)
    unsubscribe = hub.subscribe(
        lambda event: loop.call_soon_threadsafe(queue.put_nowait, event)
    )
    sender = None
    try:
        # Subscribed before accepting so nothing published after connect is missed
        await websocket.accept()
        sender = asyncio.create_task(_forward(websocket, queue))
        # Clients never send; reading only surfaces the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Notification subscriber disconnected")
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
