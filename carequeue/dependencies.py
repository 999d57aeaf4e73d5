# carequeue/dependencies.py
# FastAPI dependencies handing out the per-app singletons kept on app.state.
from typing import Optional

from fastapi import Header, Request

from .broadcast import BroadcastHub
from .config import Settings
from .services.queue_service import QueueService
from .storage import Storage


def get_settings_from_app(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_queue_service(request: Request) -> QueueService:
    return request.app.state.queue_service


def get_connection_id(x_connection_id: Optional[int] = Header(None)) -> Optional[int]:
    """Broadcast session the caller is on, echoed from the channel's `connected` message."""
    return x_connection_id
