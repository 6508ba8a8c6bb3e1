"""WebSocket channel for payment/registration results."""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.services.realtime import ConnectionManager

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    """
    Clients connect before starting an STK push. The first message carries the session_id
    to send with the push; payment results arrive later as {"event", "data"} messages.
    """
    manager: ConnectionManager = websocket.app.state.notifier
    session_id = await manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(session_id, websocket)
