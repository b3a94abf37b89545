"""
Rapport: WebSocket bridge for change-feed subscriptions.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from app.services.realtime_service import Subscription

logger = structlog.get_logger("rapport.api.streaming")


async def stream_subscription(websocket: WebSocket, subscription: Subscription) -> None:
    """Forward every event of *subscription* to *websocket* as JSON.

    Runs until the client disconnects (or the subscription is cancelled);
    the subscription is always cancelled on the way out.
    """
    log = logger.bind(subscription=subscription.id)
    await websocket.accept()
    log.info("stream_opened")

    async def _pump() -> None:
        async for event in subscription:
            await websocket.send_json(event.to_dict())

    async def _drain() -> None:
        # Clients only send keep-alives; receive() surfaces the disconnect.
        while True:
            await websocket.receive_text()

    pump = asyncio.create_task(_pump())
    drain = asyncio.create_task(_drain())
    try:
        await asyncio.wait({pump, drain}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        subscription.cancel()
        for task in (pump, drain):
            task.cancel()
        results = await asyncio.gather(pump, drain, return_exceptions=True)
        for result in results:
            if isinstance(result, (WebSocketDisconnect, asyncio.CancelledError)) or result is None:
                continue
            log.warning("stream_error", error=repr(result))
        log.info("stream_closed")
