"""
Event bus: fan-out of job and file events to every connected client.

Each subscriber owns a bounded send queue; publishing never blocks and
never waits for delivery. A subscriber whose queue is full misses the
message, and clients that are not connected at publish time never see it.
Both catch up through a full listing fetch.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from speedshift.models import EventType

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    client_id: str
    queue: asyncio.Queue
    connected_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())


def build_message(event_type: Union[EventType, str], data: Union[BaseModel, dict]) -> dict:
    """Wire form of an event: ``{"type", "data", "timestamp"}``."""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return {
        "type": EventType(event_type).value,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }


class EventBus:
    """Broadcast channel with one bounded queue per subscriber."""

    def __init__(self, send_queue_size: int = 1000):
        self.send_queue_size = send_queue_size
        self.subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, client_id: Optional[str] = None) -> Subscription:
        client_id = client_id or f"client-{uuid.uuid4().hex[:8]}"
        subscription = Subscription(
            client_id=client_id, queue=asyncio.Queue(maxsize=self.send_queue_size)
        )
        self.subscriptions[client_id] = subscription
        logger.info(
            "Client connected (ID: %s). Total connections: %d",
            client_id, len(self.subscriptions),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self.subscriptions.pop(subscription.client_id, None)
        logger.info(
            "Client disconnected (ID: %s). Total connections: %d",
            subscription.client_id, len(self.subscriptions),
        )

    def broadcast(self, event_type: Union[EventType, str], data: Union[BaseModel, dict]) -> int:
        """Queue an event for every subscriber. Returns how many received it."""
        message = build_message(event_type, data)
        if not self.subscriptions:
            logger.debug("No active connections for %s", message["type"])
            return 0

        payload = json.dumps(message)
        queued = 0
        for subscription in list(self.subscriptions.values()):
            try:
                subscription.queue.put_nowait(payload)
                queued += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Send queue full for client %s, dropping %s",
                    subscription.client_id, message["type"],
                )
        logger.debug("Queued %s to %d clients", message["type"], queued)
        return queued

    def close(self) -> None:
        self.subscriptions.clear()

    async def serve_websocket(self, websocket: WebSocket, client_id: Optional[str] = None) -> None:
        """Stream events to ``websocket`` until the client disconnects."""
        await websocket.accept()
        subscription = self.subscribe(client_id)
        subscription.queue.put_nowait(json.dumps(build_message(
            EventType.CONNECTION,
            {"status": "connected", "clientId": subscription.client_id},
        )))
        sender = asyncio.create_task(self._sender_loop(websocket, subscription))
        try:
            while True:
                # Clients only listen; incoming frames are drained and ignored.
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            self.unsubscribe(subscription)

    async def _sender_loop(self, websocket: WebSocket, subscription: Subscription) -> None:
        try:
            while True:
                message = await subscription.queue.get()
                await websocket.send_text(message)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Failed to send to client %s: %s", subscription.client_id, e)
