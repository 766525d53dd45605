import asyncio
import logging
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from config import settings
from services.broadcast import QueueConnection, hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _pump(websocket: WebSocket, connection: QueueConnection):
    try:
        while True:
            message = await connection.queue.get()
            await websocket.send_json(message)
    except Exception as exc:
        logger.warning("Realtime send failed, dropping connection: %s", exc)
        hub.unsubscribe(connection)


@router.websocket("/v1/ws")
async def campaign_events(websocket: WebSocket, key: str = Query(...)):
    """
    Stream campaign events to one client.

    Browsers cannot set headers on a WebSocket handshake, so the engine key
    travels as the ``key`` query parameter. Clients filter by ``campaign_id``
    and refetch state after reconnecting.
    """
    if key != settings.ENGINE_KEY:
        await websocket.close(code=1008)
        return

    connection = QueueConnection(asyncio.get_running_loop())
    hub.subscribe(connection)
    await websocket.accept()
    pump = asyncio.create_task(_pump(websocket, connection))

    try:
        while True:
            data = await websocket.receive_json()
            # Replies go through the queue so the pump stays the only writer.
            if isinstance(data, dict) and data.get("type") == "ping":
                connection.queue.put_nowait({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(connection)
        pump.cancel()
