# carequeue/routers/realtime.py
# Broadcast channel endpoint: /ws?token=<jwt>. Whatever a session sends as
# {type, data} is passed on unchanged to every other open session.
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..broadcast import make_event
from ..models import EventType
from ..security import user_from_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


@router.websocket("/ws")
async def broadcast_channel(websocket: WebSocket):
    app_state = websocket.app.state
    user = user_from_token(websocket.query_params.get("token"), app_state.settings, app_state.storage)
    if user is None or not user.is_active:
        logger.warning("Rejected websocket connection with missing or invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub = app_state.hub
    await websocket.accept()
    connection = hub.connect(websocket, user_id=user.id)
    try:
        # The first message tells the client its id; it echoes it as X-Connection-Id
        # on HTTP calls so server events skip the session that caused them.
        await connection.send(make_event(EventType.connected, {"connection_id": connection.id}))
        # the hub closes and drops a session it failed to reach
        while hub.is_subscribed(connection):
            message = await websocket.receive_json()
            if not isinstance(message, dict) or not isinstance(message.get("type"), str):
                logger.warning("Dropping malformed message from connection %s", connection.id)
                continue
            await hub.publish(message, sender=connection)
    except WebSocketDisconnect:
        pass
    except ValueError:
        # receive_json raises on frames that are not JSON
        logger.warning("Closing connection %s after a non-JSON frame", connection.id)
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        hub.disconnect(connection)
