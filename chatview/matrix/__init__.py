"""Matrix (matrix-nio) implementation of the protocol client contract."""

from typing import Optional

from nio import AsyncClient

from chatview.core.config import Settings, get_settings
from chatview.matrix.nio_client import (
    LocalRoom,
    LocalTimeline,
    NioProtocolClient,
    timeline_event_from_source,
)
from chatview.matrix.room_filter import RoomAllowlist


def create_nio_protocol_client(
    settings: Optional[Settings] = None,
    client: Optional[AsyncClient] = None,
) -> NioProtocolClient:
    """Wrap an AsyncClient (built from settings when not given) and start listening.

    Login and the sync loop stay with the caller's connection management.
    """
    settings = settings or get_settings()
    if client is None:
        client = AsyncClient(settings.MATRIX_HOMESERVER_URL, settings.MATRIX_USER)
    protocol_client = NioProtocolClient(
        client,
        max_timeline_events=settings.MATRIX_TIMELINE_MAX_EVENTS,
        allowlist=RoomAllowlist.from_settings(settings),
    )
    protocol_client.start()
    return protocol_client


__all__ = [
    "LocalRoom",
    "LocalTimeline",
    "NioProtocolClient",
    "RoomAllowlist",
    "create_nio_protocol_client",
    "timeline_event_from_source",
]
