"""WebSocket endpoint for real-time dashboard updates."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ...utils.logger import get_app_logger

router = APIRouter(tags=["websocket"])

logger = get_app_logger()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for dashboard clients.

    Clients send ``subscribe``/``unsubscribe`` (with ``channel``), ``ping``,
    ``pong`` and ``refresh_request`` messages; the server pushes
    notifications on the channels the client subscribed to.

    Args:
        websocket: WebSocket connection
    """
    dashboard = getattr(websocket.app.state, "dashboard", None)
    if dashboard is None:
        await websocket.close(code=1011)
        return

    server = dashboard.websocket_server
    client = await server.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            if client.client_id not in server.clients:
                logger.info(f"WebSocket client {client.client_id} was dropped by the server, closing")
                break
            await server.handle_message(client.client_id, data)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {client.client_id}")

    except Exception as e:
        logger.error(f"WebSocket error for client {client.client_id}: {e}")

    finally:
        await server.disconnect(client.client_id)
