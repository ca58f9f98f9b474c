"""Thread index built from a room's live timeline.

Thread views are never patched incrementally: an invalidated entry is
recomputed in full on the next read.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chatview.core.exceptions import ValidationError
from chatview.relations.cache import THREAD_VIEWS, CacheKey, RelationCache, ViewKind
from chatview.relations.client import ProtocolClient, current_user_id, read_timeline
from chatview.relations.constants import (
    EVENT_TYPE_MESSAGE,
    MSGTYPE_TEXT,
    REL_TYPE_THREAD,
    RELATES_TO,
)
from chatview.relations.metrics import relation_sends_total, timeline_scans_total
from chatview.relations.models import (
    ThreadCreateResult,
    ThreadMetadata,
    ThreadOptions,
    ThreadReply,
    ThreadRelation,
    ThreadSummary,
)
from chatview.relations.parser import (
    event_body,
    event_id_of,
    event_sender,
    event_timestamp,
    is_event_edited,
    is_event_redacted,
    parse_relation,
)

logger = logging.getLogger(__name__)

EMPTY_CONTENT_ERROR = "Content cannot be empty"

# Per-room directory: (metadata, replies in scan order), newest thread first
_ThreadGroup = Tuple[ThreadMetadata, List[ThreadReply]]


def build_thread_reply_content(root_event_id: str, body: str) -> Dict[str, Any]:
    """Build the m.room.message content for a thread reply."""
    return {
        "msgtype": MSGTYPE_TEXT,
        "body": body,
        RELATES_TO: {
            "rel_type": REL_TYPE_THREAD,
            "event_id": root_event_id,
        },
    }


def to_thread_reply(event: Any) -> ThreadReply:
    """Extract display fields; missing fields fall back to empty defaults."""
    return ThreadReply(
        event=event,
        event_id=event_id_of(event),
        sender=event_sender(event),
        content=event_body(event),
        timestamp=event_timestamp(event),
        is_edited=is_event_edited(event),
        is_redacted=is_event_redacted(event),
    )


def build_thread_metadata(
    room_id: str,
    root_event_id: str,
    reply_events: Sequence[Any],
    user_id: Optional[str],
) -> Optional[ThreadMetadata]:
    """Summarise reply events of one root; None when there are no replies.

    The root author is a participant only if they also replied.
    """
    if not reply_events:
        return None

    participants = set()
    latest_reply_ts = 0
    for event in reply_events:
        sender = event_sender(event)
        if sender:
            participants.add(sender)
        latest_reply_ts = max(latest_reply_ts, event_timestamp(event))

    return ThreadMetadata(
        root_event_id=root_event_id,
        room_id=room_id,
        reply_count=len(reply_events),
        latest_reply_ts=latest_reply_ts,
        participants=frozenset(participants),
        user_participated=user_id is not None and user_id in participants,
    )


def filter_replies(
    replies: Sequence[ThreadReply], options: Optional[ThreadOptions]
) -> List[ThreadReply]:
    """Apply ThreadOptions; max_replies is a prefix cut after filtering."""
    filtered = list(replies)
    if options is None:
        return filtered

    if not options.include_edited:
        filtered = [reply for reply in filtered if not reply.is_edited]
    if not options.include_redacted:
        filtered = [reply for reply in filtered if not reply.is_redacted]
    if options.filter_by_sender:
        filtered = [
            reply for reply in filtered if reply.sender == options.filter_by_sender
        ]
    if options.max_replies:
        filtered = filtered[: options.max_replies]
    return filtered


class ThreadIndex:
    """Per-root thread metadata, reply lists and a room thread directory."""

    def __init__(
        self,
        client: ProtocolClient,
        cache: RelationCache,
        summary_max_replies: int = 10,
    ):
        self.client = client
        self.cache = cache
        self.summary_max_replies = summary_max_replies

    # =========================================================================
    # Reads
    # =========================================================================

    def get_thread_metadata(
        self, room_id: str, root_event_id: str
    ) -> Optional[ThreadMetadata]:
        """Return metadata for a thread root, or None if nothing replied to it.

        Results (including None for a known room) are cached by reference
        until the thread is invalidated.
        """
        key = CacheKey(room_id, root_event_id, ViewKind.THREAD_METADATA)
        entry = self.cache.lookup(key)
        if entry is not None:
            return entry.value

        version = self.cache.version(key)
        events = read_timeline(self.client, room_id)
        if events is None:
            return None

        timeline_scans_total.labels(view=key.view.value).inc()
        metadata = build_thread_metadata(
            room_id,
            root_event_id,
            self._reply_events(events, root_event_id),
            current_user_id(self.client),
        )
        self.cache.store(key, metadata, version)
        return metadata

    def get_thread_replies(
        self,
        room_id: str,
        root_event_id: str,
        options: Optional[ThreadOptions] = None,
    ) -> List[ThreadReply]:
        """Return replies to a root in timeline order; empty if the room is unknown."""
        key = CacheKey(room_id, root_event_id, ViewKind.THREAD_REPLIES)
        entry = self.cache.lookup(key)
        if entry is not None:
            return filter_replies(entry.value, options)

        version = self.cache.version(key)
        events = read_timeline(self.client, room_id)
        if events is None:
            return []

        timeline_scans_total.labels(view=key.view.value).inc()
        replies = [
            to_thread_reply(event)
            for event in self._reply_events(events, root_event_id)
        ]
        self.cache.store(key, replies, version)
        return filter_replies(replies, options)

    def get_thread_summary(
        self,
        room_id: str,
        root_event_id: str,
        options: Optional[ThreadOptions] = None,
    ) -> Optional[ThreadSummary]:
        """Metadata plus the newest replies, newest first."""
        metadata = self.get_thread_metadata(room_id, root_event_id)
        if metadata is None:
            return None

        replies = self.get_thread_replies(
            room_id, root_event_id, self._without_limit(options)
        )
        return self._summarize(metadata, replies, options)

    def get_room_threads(
        self, room_id: str, options: Optional[ThreadOptions] = None
    ) -> List[ThreadSummary]:
        """Return every thread in the room, most recently active first.

        Ties on latest_reply_ts keep the order in which roots were first
        referenced on the timeline.
        """
        key = CacheKey(room_id, None, ViewKind.ROOM_THREADS)
        entry = self.cache.lookup(key)
        if entry is not None:
            groups = entry.value
        else:
            version = self.cache.version(key)
            events = read_timeline(self.client, room_id)
            if events is None:
                return []
            timeline_scans_total.labels(view=key.view.value).inc()
            groups = self._group_threads(room_id, events)
            self.cache.store(key, groups, version)

        filter_options = self._without_limit(options)
        return [
            self._summarize(metadata, filter_replies(replies, filter_options), options)
            for metadata, replies in groups
        ]

    def find_thread_roots(self, room_id: str) -> List[str]:
        return [summary.metadata.root_event_id for summary in self.get_room_threads(room_id)]

    # =========================================================================
    # Mutations
    # =========================================================================

    async def send_thread_reply(
        self, room_id: str, root_event_id: str, content: str
    ) -> ThreadCreateResult:
        """Send a text reply into a thread.

        Empty content is rejected before any network call. Transport
        failures are returned, never raised; there is no retry.
        """
        try:
            body = self._validate_content(content)
        except ValidationError as e:
            return ThreadCreateResult(success=False, error=e.detail)

        try:
            event_id = await self.client.send_message(
                room_id,
                build_thread_reply_content(root_event_id, body),
                EVENT_TYPE_MESSAGE,
            )
        except Exception as e:
            logger.error(
                "Failed to send thread reply to %s in %s: %s", root_event_id, room_id, e
            )
            relation_sends_total.labels(operation="thread_reply", result="failure").inc()
            return ThreadCreateResult(success=False, error=str(e) or "Unknown error")

        relation_sends_total.labels(operation="thread_reply", result="success").inc()
        self.invalidate_thread_cache(room_id, root_event_id)
        return ThreadCreateResult(success=True, event_id=event_id)

    # =========================================================================
    # Cache management
    # =========================================================================

    def clear_cache(self) -> None:
        self.cache.clear()

    def invalidate_thread_cache(self, room_id: str, root_event_id: str) -> None:
        """Invalidate one thread and the room directory. Safe if nothing is cached."""
        self.cache.invalidate_anchor(room_id, root_event_id, THREAD_VIEWS)
        self.cache.invalidate(CacheKey(room_id, None, ViewKind.ROOM_THREADS))

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _validate_content(content: Any) -> str:
        body = content.strip() if isinstance(content, str) else ""
        if not body:
            raise ValidationError(EMPTY_CONTENT_ERROR, field="content")
        return body

    @staticmethod
    def _reply_events(events: Sequence[Any], root_event_id: str) -> List[Any]:
        replies = []
        for event in events:
            relation = parse_relation(event)
            if (
                isinstance(relation, ThreadRelation)
                and relation.root_event_id == root_event_id
            ):
                replies.append(event)
        return replies

    def _group_threads(self, room_id: str, events: Sequence[Any]) -> List[_ThreadGroup]:
        by_root: "OrderedDict[str, List[Any]]" = OrderedDict()
        for event in events:
            relation = parse_relation(event)
            if isinstance(relation, ThreadRelation):
                by_root.setdefault(relation.root_event_id, []).append(event)

        user_id = current_user_id(self.client)
        groups: List[_ThreadGroup] = []
        for root_event_id, reply_events in by_root.items():
            metadata = build_thread_metadata(
                room_id, root_event_id, reply_events, user_id
            )
            if metadata is None:
                continue
            groups.append((metadata, [to_thread_reply(e) for e in reply_events]))

        # sorted() is stable, so equal timestamps keep first-reference order
        return sorted(groups, key=lambda group: group[0].latest_reply_ts, reverse=True)

    @staticmethod
    def _without_limit(options: Optional[ThreadOptions]) -> Optional[ThreadOptions]:
        if options is None or options.max_replies is None:
            return options
        return options.model_copy(update={"max_replies": None})

    def _summarize(
        self,
        metadata: ThreadMetadata,
        replies: Sequence[ThreadReply],
        options: Optional[ThreadOptions],
    ) -> ThreadSummary:
        max_replies = (
            options.max_replies
            if options is not None and options.max_replies
            else self.summary_max_replies
        )
        newest_first = sorted(replies, key=lambda reply: reply.timestamp, reverse=True)
        return ThreadSummary(
            metadata=metadata,
            recent_replies=newest_first[:max_replies],
            has_more_replies=len(replies) > max_replies,
        )
