# carequeue/broadcast.py
# Realtime fan-out. Events are cache-invalidation hints: clients re-read the
# store when one arrives and never treat the payload as the record of truth.
# Nothing is persisted, acknowledged or replayed.
import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import status
from fastapi.encoders import jsonable_encoder

from .models import EventType

logger = structlog.get_logger(__name__)

_connection_ids = itertools.count(1)


@dataclass(eq=False)
class Connection:
    """One subscribed dashboard session. `socket` needs async send_json() and close()."""
    socket: Any
    user_id: Optional[int] = None
    id: int = field(default_factory=lambda: next(_connection_ids))

    async def send(self, message: Dict[str, Any]):
        await self.socket.send_json(message)

    async def close(self):
        # the client sees the close, reconnects and re-fetches
        try:
            await self.socket.close(code=status.WS_1011_INTERNAL_ERROR)
        except Exception as e:
            logger.debug("subscriber_close_failed", connection_id=self.id, error=repr(e))


def make_event(event_type: EventType, data: Any) -> Dict[str, Any]:
    """Build the {type, data, timestamp} envelope for a server-side event."""
    return {
        "type": event_type.value,
        "data": jsonable_encoder(data),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class BroadcastHub:
    def __init__(self):
        self._connections: Dict[int, Connection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def register(self, connection: Connection) -> Connection:
        self._connections[connection.id] = connection
        logger.info("subscriber_connected", connection_id=connection.id, user_id=connection.user_id,
                    subscribers=len(self._connections))
        return connection

    def connect(self, socket: Any, user_id: Optional[int] = None) -> Connection:
        return self.register(Connection(socket=socket, user_id=user_id))

    def disconnect(self, connection: Connection):
        if self._connections.pop(connection.id, None) is not None:
            logger.info("subscriber_disconnected", connection_id=connection.id,
                        subscribers=len(self._connections))

    def is_subscribed(self, connection: Connection) -> bool:
        return connection.id in self._connections

    def origin(self, connection_id: Optional[int], user_id: int) -> Optional[Connection]:
        """The session a request came from, if `connection_id` names one of the user's own."""
        connection = self._connections.get(connection_id) if connection_id is not None else None
        if connection is None or connection.user_id != user_id:
            return None
        return connection

    async def publish(self, message: Dict[str, Any], sender: Optional[Connection] = None) -> int:
        """
        Send `message` to every subscriber except the sender.

        Each send is independent: a failing subscriber is logged, dropped and
        closed so its client reconnects; the others still receive the message
        and the publisher never sees the error. Returns the number of
        successful deliveries.
        """
        targets = [connection for connection in list(self._connections.values()) if connection is not sender]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(connection.send(message) for connection in targets),
            return_exceptions=True,
        )
        delivered = 0
        failed = []
        for connection, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("broadcast_delivery_failed", connection_id=connection.id,
                               event_type=message.get("type"), error=repr(result))
                self.disconnect(connection)
                failed.append(connection)
            else:
                delivered += 1
        if failed:
            await asyncio.gather(*(connection.close() for connection in failed))
        return delivered

    async def notify(self, event_type: EventType, data: Any, origin: Optional[Connection] = None) -> int:
        """Server-side event to every session; `origin`, the session that caused it, is skipped."""
        return await self.publish(make_event(event_type, data), sender=origin)
