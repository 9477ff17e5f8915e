"""WebSocket endpoint for live analysis progress."""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from evidentia.api.deps import get_connection_manager
from evidentia.websocket import EventType, WebSocketMessage, analysis_topic

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws/analyses/{analysis_id}")
async def analysis_updates(websocket: WebSocket, analysis_id: str):
    """Stream progress for one analysis.

    Messages sent to the client:
    {
        "id": "uuid",
        "type": "connected" | "subscribed" | "progress" | "ioc_found" |
                "technique_mapped" | "completed" | "error" | "pong",
        "data": {...},
        "timestamp": "ISO8601"
    }

    Clients may send {"action": "ping"} at any time.
    """
    manager = get_connection_manager(websocket)
    connection_id = await manager.connect(websocket)
    topic = analysis_topic(analysis_id)
    await manager.subscribe(connection_id, topic)

    snapshot: dict = {"analysis_id": analysis_id, "topic": topic}
    pipeline = getattr(websocket.app.state, "pipeline", None)
    if pipeline is not None:
        record = await pipeline.store.get(analysis_id)
        if record is not None:
            snapshot.update(status=record.status.value, progress=record.progress)

    await manager.send_personal(
        connection_id,
        WebSocketMessage(event_type=EventType.SUBSCRIBED, data=snapshot),
    )

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Invalid JSON received: %s", data[:100])
                continue

            if isinstance(message, dict) and message.get("action") == "ping":
                await manager.send_personal(
                    connection_id,
                    WebSocketMessage(event_type=EventType.PONG, data={}),
                )
            else:
                logger.debug("Unknown websocket message: %s", data[:100])

    except WebSocketDisconnect:
        await manager.disconnect(connection_id)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        await manager.disconnect(connection_id)
