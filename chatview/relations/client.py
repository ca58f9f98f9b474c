"""Protocol client contract consumed by the view engine.

The engine never talks to the network itself. It reads live timelines and
sends events through an object satisfying ProtocolClient; see
chatview.matrix.nio_client for the matrix-nio implementation.

Notification handler signatures:
    Room.timeline       handler(event, room_id)
    Room.redaction      handler(redaction_event, room_id)
    Room.timelineReset  handler(room_id)
    Room.timelineTrim   handler(dropped_events, room_id)
"""

from typing import (
    Any,
    Callable,
    Dict,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from chatview.relations.constants import EVENT_TYPE_MESSAGE

Handler = Callable[..., None]


@runtime_checkable
class EventLike(Protocol):
    """Minimum surface the engine reads from a timeline event."""

    event_id: str
    sender: str
    origin_server_ts: int
    content: Mapping[str, Any]


@runtime_checkable
class LiveTimeline(Protocol):
    def get_events(self) -> Sequence[Any]: ...


@runtime_checkable
class RoomHandle(Protocol):
    room_id: str

    def get_live_timeline(self) -> LiveTimeline: ...


@runtime_checkable
class ProtocolClient(Protocol):
    """Protocol client (runtime-checkable)."""

    def get_room(self, room_id: str) -> Optional[RoomHandle]: ...

    def get_user_id(self) -> Optional[str]: ...

    async def send_message(
        self,
        room_id: str,
        content: Dict[str, Any],
        message_type: str = EVENT_TYPE_MESSAGE,
    ) -> str: ...

    async def redact_event(
        self, room_id: str, event_id: str, reason: Optional[str] = None
    ) -> str: ...

    def on(self, name: str, handler: Handler) -> None: ...

    def off(self, name: str, handler: Handler) -> None: ...


def room_id_of(room: Any) -> str:
    """Accept either a room id string or a room handle."""
    if isinstance(room, str):
        return room
    room_id = getattr(room, "room_id", "")
    return room_id if isinstance(room_id, str) else ""


def read_timeline(client: ProtocolClient, room_id: str) -> Optional[Sequence[Any]]:
    """Return the room's live timeline events, or None if the room is unknown."""
    room = client.get_room(room_id)
    if room is None:
        return None
    return list(room.get_live_timeline().get_events())


def current_user_id(client: ProtocolClient) -> Optional[str]:
    user_id = client.get_user_id()
    return user_id if isinstance(user_id, str) and user_id else None
