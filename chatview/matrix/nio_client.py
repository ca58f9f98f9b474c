"""Protocol client backed by matrix-nio.

nio does not keep room timelines, so NioProtocolClient records every room
event delivered through nio callbacks into a bounded LocalTimeline per room
and re-emits them as the notifications the view engine subscribes to:

    Room.timeline       handler(event, room_id)
    Room.redaction      handler(redaction_event, room_id)
    Room.timelineReset  handler(room_id)
    Room.timelineTrim   handler(dropped_events, room_id)

Timeline entries are replaced, never mutated, when a later redaction or
edit supersedes them. The replacement happens before notifications fire.
"""

import logging
from collections import defaultdict
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from nio import AsyncClient, Event, RoomRedactResponse, RoomSendResponse

from chatview.core.exceptions import TransportError
from chatview.matrix.room_filter import RoomAllowlist
from chatview.relations.client import Handler
from chatview.relations.constants import (
    EVENT_TYPE_MESSAGE,
    EVENT_TYPE_REDACTION,
    NOTIFY_REDACTION,
    NOTIFY_TIMELINE,
    NOTIFY_TIMELINE_RESET,
    NOTIFY_TIMELINE_TRIM,
)
from chatview.relations.models import TimelineEvent
from chatview.relations.parser import get_replaced_event_id

logger = logging.getLogger(__name__)


def timeline_event_from_source(source: Any) -> Optional[TimelineEvent]:
    """Convert a raw event dict (nio ``event.source``) into a TimelineEvent.

    Returns None for sources without an event_id (e.g. ephemeral events).
    """
    if not isinstance(source, Mapping):
        return None

    event_id = source.get("event_id")
    if not isinstance(event_id, str) or not event_id:
        return None

    content = source.get("content")
    content = dict(content) if isinstance(content, Mapping) else {}
    unsigned = source.get("unsigned")
    unsigned = dict(unsigned) if isinstance(unsigned, Mapping) else {}
    sender = source.get("sender")
    ts = source.get("origin_server_ts")
    event_type = source.get("type")

    # Room v11 moved "redacts" into content
    redacts = source.get("redacts") or content.get("redacts")

    return TimelineEvent(
        event_id=event_id,
        sender=sender if isinstance(sender, str) else "",
        origin_server_ts=ts if isinstance(ts, int) and not isinstance(ts, bool) else 0,
        type=event_type if isinstance(event_type, str) else "",
        content=content,
        unsigned=unsigned,
        redacted=bool(unsigned.get("redacted_because")),
        redacts=redacts if isinstance(redacts, str) and redacts else None,
    )


class LocalTimeline:
    """Bounded, ordered live timeline of one room."""

    def __init__(self, max_events: int = 2000):
        self.max_events = max_events
        self._events: List[TimelineEvent] = []
        self._event_ids: set = set()
        self._dropped: List[TimelineEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def get_events(self) -> List[TimelineEvent]:
        return list(self._events)

    def append(self, event: TimelineEvent) -> bool:
        """Append event; returns False for an already observed event_id.

        Events pushed out of the window are kept until take_dropped().
        """
        if event.event_id in self._event_ids:
            return False
        self._events.append(event)
        self._event_ids.add(event.event_id)
        while len(self._events) > self.max_events:
            dropped = self._events.pop(0)
            self._event_ids.discard(dropped.event_id)
            self._dropped.append(dropped)
        return True

    def take_dropped(self) -> List[TimelineEvent]:
        """Return and forget events evicted since the last call."""
        dropped, self._dropped = self._dropped, []
        return dropped

    def find(self, event_id: str) -> Optional[TimelineEvent]:
        for event in reversed(self._events):
            if event.event_id == event_id:
                return event
        return None

    def supersede(self, event_id: str, **changes: Any) -> Optional[TimelineEvent]:
        """Replace the stored event with a copy carrying changes."""
        for position in range(len(self._events) - 1, -1, -1):
            if self._events[position].event_id == event_id:
                updated = replace(self._events[position], **changes)
                self._events[position] = updated
                return updated
        return None

    def clear(self) -> None:
        self._events.clear()
        self._event_ids.clear()
        self._dropped.clear()


class LocalRoom:
    """Room handle exposing the live timeline."""

    def __init__(self, room_id: str, timeline: LocalTimeline):
        self.room_id = room_id
        self._timeline = timeline

    def get_live_timeline(self) -> LocalTimeline:
        return self._timeline


class NioProtocolClient:
    """ProtocolClient implementation wrapping a nio AsyncClient.

    Attributes:
        client: Logged-in nio AsyncClient
        max_timeline_events: Events kept per room timeline
        allowlist: Rooms to track; empty means every joined room
    """

    def __init__(
        self,
        client: AsyncClient,
        max_timeline_events: int = 2000,
        allowlist: Optional[RoomAllowlist] = None,
    ):
        self.client = client
        self.max_timeline_events = max_timeline_events
        self.allowlist = allowlist or RoomAllowlist()
        self._rooms: Dict[str, LocalRoom] = {}
        self._listeners: Dict[str, List[Handler]] = defaultdict(list)
        self._callback_registered = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Register the nio callback feeding local timelines."""
        if self._callback_registered:
            return
        self.client.add_event_callback(self._on_nio_event, Event)
        self._callback_registered = True
        logger.info("Matrix timeline listener started")

    def stop(self) -> None:
        if self._callback_registered and hasattr(self.client, "remove_event_callback"):
            self.client.remove_event_callback(self._on_nio_event)
            self._callback_registered = False
            logger.info("Matrix timeline listener stopped")

    # =========================================================================
    # ProtocolClient
    # =========================================================================

    def get_room(self, room_id: str) -> Optional[LocalRoom]:
        room = self._rooms.get(room_id)
        if room is not None:
            return room
        joined = getattr(self.client, "rooms", None) or {}
        if room_id in joined and self.allowlist.allows(room_id):
            return self._room(room_id)
        return None

    def get_user_id(self) -> Optional[str]:
        user_id = str(getattr(self.client, "user_id", "") or "").strip()
        return user_id or None

    async def send_message(
        self,
        room_id: str,
        content: Dict[str, Any],
        message_type: str = EVENT_TYPE_MESSAGE,
    ) -> str:
        """Send an event; returns its event_id.

        Raises:
            TransportError: If the homeserver rejects the send
        """
        response = await self.client.room_send(
            room_id=room_id,
            message_type=message_type,
            content=content,
        )
        if isinstance(response, RoomSendResponse):
            logger.debug("Sent %s to %s as %s", message_type, room_id, response.event_id)
            return response.event_id

        detail = getattr(response, "message", None) or str(response)
        logger.error("Failed to send %s to %s: %s", message_type, room_id, detail)
        raise TransportError("send", detail)

    async def redact_event(
        self, room_id: str, event_id: str, reason: Optional[str] = None
    ) -> str:
        """Redact an event; returns the redaction's event_id.

        Raises:
            TransportError: If the homeserver rejects the redaction
        """
        response = await self.client.room_redact(room_id, event_id, reason=reason)
        if isinstance(response, RoomRedactResponse):
            return response.event_id

        detail = getattr(response, "message", None) or str(response)
        logger.error("Failed to redact %s in %s: %s", event_id, room_id, detail)
        raise TransportError("redact", detail)

    def on(self, name: str, handler: Handler) -> None:
        if handler not in self._listeners[name]:
            self._listeners[name].append(handler)

    def off(self, name: str, handler: Handler) -> None:
        listeners = self._listeners.get(name)
        if listeners and handler in listeners:
            listeners.remove(handler)

    # =========================================================================
    # Timeline maintenance
    # =========================================================================

    def ingest(self, room_id: str, source: Any) -> Optional[TimelineEvent]:
        """Record one raw event and notify listeners.

        Returns:
            The recorded event, or None if it was dropped (untracked room,
            no event_id, or already observed).
        """
        if not self.allowlist.allows(room_id):
            return None

        event = timeline_event_from_source(source)
        if event is None:
            return None

        timeline = self._room(room_id).get_live_timeline()
        if not timeline.append(event):
            return None

        is_redaction = event.type == EVENT_TYPE_REDACTION and event.redacts is not None
        if is_redaction:
            timeline.supersede(event.redacts, redacted=True)
        else:
            replaced_event_id = get_replaced_event_id(event)
            if replaced_event_id is not None:
                timeline.supersede(replaced_event_id, edited=True)

        # Views built over evicted events must go before the new event is seen
        dropped = timeline.take_dropped()
        if dropped:
            logger.debug("Trimmed %d events from %s", len(dropped), room_id)
            self._emit(NOTIFY_TIMELINE_TRIM, dropped, room_id)
        self._emit(NOTIFY_TIMELINE, event, room_id)
        if is_redaction:
            self._emit(NOTIFY_REDACTION, event, room_id)
        return event

    def reset_timeline(self, room_id: str) -> None:
        """Drop a room's timeline (e.g. after a limited sync gap)."""
        room = self._rooms.get(room_id)
        if room is not None:
            room.get_live_timeline().clear()
        self._emit(NOTIFY_TIMELINE_RESET, room_id)

    async def _on_nio_event(self, room: Any, event: Any) -> None:
        room_id = str(getattr(room, "room_id", "") or "").strip()
        try:
            self.ingest(room_id, getattr(event, "source", None))
        except Exception:
            logger.exception(
                "Error recording Matrix event: %s", getattr(event, "event_id", "unknown")
            )

    def _room(self, room_id: str) -> LocalRoom:
        room = self._rooms.get(room_id)
        if room is None:
            room = LocalRoom(room_id, LocalTimeline(self.max_timeline_events))
            self._rooms[room_id] = room
        return room

    def _emit(self, name: str, *args: Any) -> None:
        for handler in list(self._listeners.get(name, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("Listener for %s failed", name)
