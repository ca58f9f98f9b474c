"""
Pytest configuration and shared fixtures for the chatview test suite.

This module provides:
- Test settings with deterministic defaults
- An in-memory protocol client whose timeline accessor is a spy
- Event factories for messages, thread replies, reactions and redactions
- A started RelationViewEngine bound to the fake client
"""

from collections import defaultdict
from dataclasses import replace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from chatview.core.config import Settings
from chatview.relations.constants import (
    EVENT_TYPE_MESSAGE,
    EVENT_TYPE_REACTION,
    EVENT_TYPE_REDACTION,
    NOTIFY_REDACTION,
    NOTIFY_TIMELINE,
    NOTIFY_TIMELINE_RESET,
    NOTIFY_TIMELINE_TRIM,
)
from chatview.relations.engine import RelationViewEngine
from chatview.relations.models import TimelineEvent

ROOM_ID = "!room:server"
ALICE = "@alice:server"
BOB = "@bob:server"
CAROL = "@carol:server"
THUMBS_UP = "\U0001f44d"
PARTY = "\U0001f389"


# =============================================================================
# Fake protocol client
# =============================================================================


class FakeTimeline:
    """Live timeline whose get_events accessor records every call."""

    def __init__(self) -> None:
        self.events: List[Any] = []
        self.get_events = MagicMock(side_effect=lambda: list(self.events))

    def supersede(self, event_id: str, **changes: Any) -> None:
        for position, event in enumerate(self.events):
            if event.event_id == event_id:
                self.events[position] = replace(event, **changes)


class FakeRoom:
    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.timeline = FakeTimeline()

    def get_live_timeline(self) -> FakeTimeline:
        return self.timeline


class FakeProtocolClient:
    """In-memory ProtocolClient with AsyncMock send/redact calls."""

    def __init__(self, user_id: Optional[str] = ALICE) -> None:
        self.user_id = user_id
        self.rooms: Dict[str, FakeRoom] = {}
        self.listeners: Dict[str, List[Any]] = defaultdict(list)
        self.send_message = AsyncMock(return_value="$sent:server")
        self.redact_event = AsyncMock(return_value="$redaction:server")

    def add_room(self, room_id: str = ROOM_ID, events: Optional[List[Any]] = None) -> FakeRoom:
        room = FakeRoom(room_id)
        room.timeline.events.extend(events or [])
        self.rooms[room_id] = room
        return room

    def get_room(self, room_id: str) -> Optional[FakeRoom]:
        return self.rooms.get(room_id)

    def get_user_id(self) -> Optional[str]:
        return self.user_id

    def on(self, name: str, handler: Any) -> None:
        self.listeners[name].append(handler)

    def off(self, name: str, handler: Any) -> None:
        self.listeners[name].remove(handler)

    def deliver(self, event: TimelineEvent, room_id: str = ROOM_ID) -> None:
        """Append an event and emit notifications like a syncing client."""
        timeline = self.rooms[room_id].timeline
        timeline.events.append(event)
        if event.type == EVENT_TYPE_REDACTION and event.redacts:
            timeline.supersede(event.redacts, redacted=True)
        for handler in list(self.listeners[NOTIFY_TIMELINE]):
            handler(event, room_id)
        if event.type == EVENT_TYPE_REDACTION:
            for handler in list(self.listeners[NOTIFY_REDACTION]):
                handler(event, room_id)

    def reset(self, room_id: str = ROOM_ID) -> None:
        self.rooms[room_id].timeline.events.clear()
        for handler in list(self.listeners[NOTIFY_TIMELINE_RESET]):
            handler(room_id)

    def trim(self, count: int, room_id: str = ROOM_ID) -> List[Any]:
        """Evict the oldest events the way a bounded live window does."""
        timeline = self.rooms[room_id].timeline
        dropped = timeline.events[:count]
        del timeline.events[:count]
        for handler in list(self.listeners[NOTIFY_TIMELINE_TRIM]):
            handler(dropped, room_id)
        return dropped


# =============================================================================
# Event factories
# =============================================================================


class EventFactory:
    """Builds TimelineEvents with Matrix-shaped content."""

    def message(
        self, event_id: str, sender: str = ALICE, ts: int = 1000, body: str = "hello"
    ) -> TimelineEvent:
        return TimelineEvent(
            event_id=event_id,
            sender=sender,
            origin_server_ts=ts,
            type=EVENT_TYPE_MESSAGE,
            content={"msgtype": "m.text", "body": body},
        )

    def thread_reply(
        self,
        event_id: str,
        root_event_id: str,
        sender: str = BOB,
        ts: int = 2000,
        body: str = "reply",
        **flags: Any,
    ) -> TimelineEvent:
        return TimelineEvent(
            event_id=event_id,
            sender=sender,
            origin_server_ts=ts,
            type=EVENT_TYPE_MESSAGE,
            content={
                "msgtype": "m.text",
                "body": body,
                "m.relates_to": {"rel_type": "m.thread", "event_id": root_event_id},
            },
            **flags,
        )

    def reaction(
        self,
        event_id: str,
        target_event_id: str,
        key: str = THUMBS_UP,
        sender: str = BOB,
        ts: int = 3000,
        redacted: bool = False,
    ) -> TimelineEvent:
        return TimelineEvent(
            event_id=event_id,
            sender=sender,
            origin_server_ts=ts,
            type=EVENT_TYPE_REACTION,
            content={
                "m.relates_to": {
                    "rel_type": "m.annotation",
                    "event_id": target_event_id,
                    "key": key,
                }
            },
            redacted=redacted,
        )

    def redaction(
        self, event_id: str, redacts: str, sender: str = BOB, ts: int = 4000
    ) -> TimelineEvent:
        return TimelineEvent(
            event_id=event_id,
            sender=sender,
            origin_server_ts=ts,
            type=EVENT_TYPE_REDACTION,
            content={},
            redacts=redacts,
        )

    def edit(
        self, event_id: str, replaces: str, sender: str = BOB, ts: int = 5000
    ) -> TimelineEvent:
        return TimelineEvent(
            event_id=event_id,
            sender=sender,
            origin_server_ts=ts,
            type=EVENT_TYPE_MESSAGE,
            content={
                "msgtype": "m.text",
                "body": "* edited",
                "m.new_content": {"msgtype": "m.text", "body": "edited"},
                "m.relates_to": {"rel_type": "m.replace", "event_id": replaces},
            },
        )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings with defaults pinned for tests (no .env influence)."""
    return Settings(
        _env_file=None,
        DEBUG=True,
        RELATIONS_CACHE_MAX_ENTRIES=500,
        THREAD_SUMMARY_MAX_REPLIES=10,
        TOP_REACTIONS_LIMIT=10,
        ENABLE_INCREMENTAL_REACTIONS=True,
    )


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


@pytest.fixture
def fake_client() -> FakeProtocolClient:
    return FakeProtocolClient()


@pytest.fixture
def room(fake_client: FakeProtocolClient) -> FakeRoom:
    return fake_client.add_room(ROOM_ID)


@pytest.fixture
def engine(fake_client: FakeProtocolClient, room: FakeRoom, test_settings: Settings):
    """Started engine bound to fake_client; stopped after the test."""
    engine = RelationViewEngine(fake_client, settings=test_settings)
    engine.start()
    yield engine
    engine.stop()
