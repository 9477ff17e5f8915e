"""WebSocket manager for real-time analysis updates."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """WebSocket event types."""

    # Connection events
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    PONG = "pong"

    # Analysis events
    PROGRESS = "progress"
    IOC_FOUND = "ioc_found"
    TECHNIQUE_MAPPED = "technique_mapped"
    COMPLETED = "completed"
    ERROR = "error"


def analysis_topic(analysis_id: str) -> str:
    return f"analysis:{analysis_id}"


@dataclass
class WebSocketMessage:
    """WebSocket message structure."""

    event_type: EventType
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    message_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.message_id,
            "type": self.event_type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class Connection:
    """WebSocket connection with its topic subscriptions."""

    websocket: WebSocket
    subscriptions: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ConnectionManager:
    """Manages WebSocket connections and topic broadcasting."""

    def __init__(self):
        # connection_id -> Connection
        self.active_connections: dict[str, Connection] = {}
        # topic -> set of connection_ids
        self.topic_subscriptions: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        connection_id = str(uuid4())

        async with self._lock:
            self.active_connections[connection_id] = Connection(websocket=websocket)

        logger.info("WebSocket connected: %s", connection_id)

        await self.send_personal(
            connection_id,
            WebSocketMessage(
                event_type=EventType.CONNECTED,
                data={"connection_id": connection_id},
            ),
        )
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection and all of its subscriptions."""
        async with self._lock:
            connection = self.active_connections.pop(connection_id, None)
            if connection is None:
                return

            for topic in connection.subscriptions:
                subscribers = self.topic_subscriptions.get(topic)
                if subscribers is not None:
                    subscribers.discard(connection_id)
                    if not subscribers:
                        del self.topic_subscriptions[topic]

        logger.info("WebSocket disconnected: %s", connection_id)

    async def subscribe(self, connection_id: str, topic: str) -> None:
        async with self._lock:
            if connection_id not in self.active_connections:
                return
            self.active_connections[connection_id].subscriptions.add(topic)
            self.topic_subscriptions.setdefault(topic, set()).add(connection_id)

        logger.debug("Connection %s subscribed to %s", connection_id, topic)

    async def send_personal(self, connection_id: str, message: WebSocketMessage) -> bool:
        """Send a message to a specific connection."""
        connection = self.active_connections.get(connection_id)
        if connection is None:
            return False

        try:
            await connection.websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.warning("Failed to send message to %s: %s", connection_id, e)
            await self.disconnect(connection_id)
            return False

    async def broadcast_to_topic(self, topic: str, message: WebSocketMessage) -> int:
        """Broadcast a message to all subscribers of a topic."""
        sent_count = 0
        for connection_id in list(self.topic_subscriptions.get(topic, set())):
            if await self.send_personal(connection_id, message):
                sent_count += 1
        return sent_count

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    def get_subscriber_count(self, topic: str) -> int:
        return len(self.topic_subscriptions.get(topic, set()))


# =============================================================================
# Analysis notifiers
# =============================================================================


class Notifier(Protocol):
    async def publish(self, analysis_id: str, kind: EventType, data: dict[str, Any]) -> None:
        ...


class AnalysisNotifier:
    """Publishes analysis lifecycle events to the analysis topic.

    Delivery failures are logged and never reach the caller.
    """

    def __init__(self, connection_manager: ConnectionManager | None = None):
        self.manager = connection_manager or ConnectionManager()

    async def publish(self, analysis_id: str, kind: EventType, data: dict[str, Any]) -> None:
        message = WebSocketMessage(
            event_type=kind,
            data={"analysis_id": analysis_id, **data},
        )
        try:
            await self.manager.broadcast_to_topic(analysis_topic(analysis_id), message)
        except Exception as e:
            logger.warning("Failed to publish %s for analysis %s: %s", kind.value, analysis_id, e)


class RecordingNotifier:
    """Notifier that keeps every published message in memory."""

    def __init__(self):
        self.messages: list[tuple[str, EventType, dict[str, Any]]] = []

    async def publish(self, analysis_id: str, kind: EventType, data: dict[str, Any]) -> None:
        self.messages.append((analysis_id, kind, dict(data)))

    def kinds(self, analysis_id: str | None = None) -> list[EventType]:
        return [k for a, k, _ in self.messages if analysis_id is None or a == analysis_id]
