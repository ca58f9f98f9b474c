"""RelationViewEngine: facade over thread and reaction views.

Binds one protocol client, owns the RelationCache shared by ThreadIndex and
ReactionAggregator, and turns the client's live notifications into cache
invalidations (or incremental reaction patches).

Public operations never raise: reads degrade to None/empty values and
mutations report failures in their result objects.
"""

import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from chatview.core.config import Settings, get_settings
from chatview.relations.cache import CacheKey, CacheState, RelationCache
from chatview.relations.client import ProtocolClient, read_timeline, room_id_of
from chatview.relations.constants import (
    NOTIFY_REDACTION,
    NOTIFY_TIMELINE,
    NOTIFY_TIMELINE_RESET,
    NOTIFY_TIMELINE_TRIM,
)
from chatview.relations.models import (
    AnnotationRelation,
    MessageReactions,
    ReactionOptions,
    ReactionResult,
    Relation,
    ThreadCreateResult,
    ThreadMetadata,
    ThreadOptions,
    ThreadRelation,
    ThreadReply,
    ThreadSummary,
    TopReaction,
)
from chatview.relations.parser import (
    event_id_of,
    get_replaced_event_id,
    get_thread_root_id,
    is_thread_reply,
    parse_relation,
)
from chatview.relations.reactions import ReactionAggregator
from chatview.relations.threads import ThreadIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RelationViewEngine:
    """Read/mutate facade for thread indexes and reaction aggregates.

    Lifecycle: construct, start() to subscribe to the client's notifications,
    stop() on teardown to deregister and drop all derived state.
    """

    def __init__(
        self,
        client: ProtocolClient,
        cache: Optional[RelationCache] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.client = client
        self.cache = (
            cache
            if cache is not None
            else RelationCache(max_entries=settings.RELATIONS_CACHE_MAX_ENTRIES)
        )
        self.threads = ThreadIndex(
            client, self.cache, summary_max_replies=settings.THREAD_SUMMARY_MAX_REPLIES
        )
        self.reactions = ReactionAggregator(
            client, self.cache, incremental=settings.ENABLE_INCREMENTAL_REACTIONS
        )
        self.top_reactions_limit = settings.TOP_REACTIONS_LIMIT
        self._max_tracked_relations = settings.RELATION_INDEX_MAX_SIZE
        # (room_id, event_id) -> relation of delivered relation events (bounded)
        self._relations: OrderedDict[Tuple[str, str], Relation] = OrderedDict()
        self._subscribed = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._subscribed

    def start(self) -> None:
        """Subscribe to timeline, redaction, reset and trim notifications."""
        if self._subscribed:
            return
        self.client.on(NOTIFY_TIMELINE, self._on_timeline_event)
        self.client.on(NOTIFY_REDACTION, self._on_redaction)
        self.client.on(NOTIFY_TIMELINE_RESET, self._on_timeline_reset)
        self.client.on(NOTIFY_TIMELINE_TRIM, self._on_timeline_trim)
        self._subscribed = True
        logger.info("Relation view engine started")

    def stop(self) -> None:
        """Deregister notifications and discard derived state. Idempotent."""
        if not self._subscribed:
            return
        self.client.off(NOTIFY_TIMELINE, self._on_timeline_event)
        self.client.off(NOTIFY_REDACTION, self._on_redaction)
        self.client.off(NOTIFY_TIMELINE_RESET, self._on_timeline_reset)
        self.client.off(NOTIFY_TIMELINE_TRIM, self._on_timeline_trim)
        self._subscribed = False
        self._relations.clear()
        self.cache.clear()
        logger.info("Relation view engine stopped")

    # =========================================================================
    # Relation parsing
    # =========================================================================

    @staticmethod
    def is_thread_reply(event: Any) -> bool:
        return is_thread_reply(event)

    @staticmethod
    def get_thread_root_id(event: Any) -> Optional[str]:
        return get_thread_root_id(event)

    # =========================================================================
    # Thread views
    # =========================================================================

    def get_thread_metadata(
        self, room_id: str, root_event_id: str
    ) -> Optional[ThreadMetadata]:
        return self._safe_read(
            lambda: None, self.threads.get_thread_metadata, room_id, root_event_id
        )

    def get_thread_replies(
        self,
        room_id: str,
        root_event_id: str,
        options: Optional[ThreadOptions] = None,
    ) -> List[ThreadReply]:
        return self._safe_read(
            list, self.threads.get_thread_replies, room_id, root_event_id, options
        )

    def get_thread_summary(
        self,
        room_id: str,
        root_event_id: str,
        options: Optional[ThreadOptions] = None,
    ) -> Optional[ThreadSummary]:
        return self._safe_read(
            lambda: None, self.threads.get_thread_summary, room_id, root_event_id, options
        )

    def get_room_threads(
        self, room_id: str, options: Optional[ThreadOptions] = None
    ) -> List[ThreadSummary]:
        return self._safe_read(list, self.threads.get_room_threads, room_id, options)

    def find_thread_roots(self, room_id: str) -> List[str]:
        return self._safe_read(list, self.threads.find_thread_roots, room_id)

    async def send_thread_reply(
        self, room_id: str, root_event_id: str, content: str
    ) -> ThreadCreateResult:
        try:
            return await self.threads.send_thread_reply(room_id, root_event_id, content)
        except Exception as e:
            logger.exception("Unexpected error sending thread reply in %s", room_id)
            return ThreadCreateResult(success=False, error=str(e) or "Unknown error")

    # =========================================================================
    # Reaction views
    # =========================================================================

    def get_message_reactions(
        self,
        room_id: str,
        event_id: str,
        options: Optional[ReactionOptions] = None,
    ) -> MessageReactions:
        return self._safe_read(
            lambda: MessageReactions.empty(event_id),
            self.reactions.aggregate,
            room_id,
            event_id,
            options,
        )

    def get_multiple_message_reactions(
        self,
        room_id: str,
        event_ids: List[str],
        options: Optional[ReactionOptions] = None,
    ) -> Dict[str, MessageReactions]:
        return {
            event_id: self.get_message_reactions(room_id, event_id, options)
            for event_id in event_ids
        }

    def get_top_reactions(
        self, room_id: str, limit: Optional[int] = None
    ) -> List[TopReaction]:
        return self._safe_read(
            list,
            self.reactions.get_top_reactions,
            room_id,
            limit or self.top_reactions_limit,
        )

    def get_common_emoji(self) -> List[str]:
        return self.reactions.get_common_emoji()

    def has_user_reacted(
        self, room_id: str, event_id: str, emoji: Optional[str] = None
    ) -> bool:
        return self._safe_read(
            lambda: False, self.reactions.has_user_reacted, room_id, event_id, emoji
        )

    async def toggle_reaction(
        self, room_id: str, event_id: str, emoji: str
    ) -> ReactionResult:
        return await self._safe_mutation(
            self.reactions.toggle_reaction, room_id, event_id, emoji
        )

    async def add_reaction(
        self, room_id: str, event_id: str, emoji: str
    ) -> ReactionResult:
        return await self._safe_mutation(
            self.reactions.add_reaction, room_id, event_id, emoji
        )

    async def remove_reaction(
        self, room_id: str, event_id: str, emoji: str
    ) -> ReactionResult:
        return await self._safe_mutation(
            self.reactions.remove_reaction, room_id, event_id, emoji
        )

    # =========================================================================
    # Cache management (testing/debugging)
    # =========================================================================

    def clear_cache(self) -> None:
        self.cache.clear()

    def invalidate_thread_cache(self, room_id: str, root_event_id: str) -> None:
        self.threads.invalidate_thread_cache(room_id, root_event_id)

    def invalidate_reaction_cache(self, room_id: str, event_id: str) -> None:
        self.reactions.invalidate(room_id, event_id)

    def invalidate_room(self, room_id: str) -> None:
        self.cache.invalidate_room(room_id)

    def cache_state(self, key: CacheKey) -> CacheState:
        return self.cache.state(key)

    def get_cache_stats(self) -> Dict[str, int]:
        stats = self.cache.get_stats()
        stats["tracked_relations"] = len(self._relations)
        return stats

    # =========================================================================
    # Notification handlers
    # =========================================================================

    def _on_timeline_event(self, event: Any, room: Any = None) -> None:
        """Handle a new timeline event; never raises into the client's emitter."""
        room_id = room_id_of(room)
        if not room_id:
            return
        try:
            self._route_new_event(room_id, event)
        except Exception:
            logger.exception(
                "Error routing timeline event %s; invalidating room %s",
                event_id_of(event) or "<unknown>",
                room_id,
            )
            self.cache.invalidate_room(room_id)

    def _on_redaction(self, redaction_event: Any, room: Any = None) -> None:
        room_id = room_id_of(room)
        if not room_id:
            return
        try:
            self._route_redaction(room_id, redaction_event)
        except Exception:
            logger.exception(
                "Error routing redaction %s; invalidating room %s",
                event_id_of(redaction_event) or "<unknown>",
                room_id,
            )
            self.cache.invalidate_room(room_id)

    def _on_timeline_reset(self, room: Any = None) -> None:
        room_id = room_id_of(room)
        if not room_id:
            return
        self.cache.invalidate_room(room_id)
        for tracked in [k for k in self._relations if k[0] == room_id]:
            del self._relations[tracked]
        logger.debug("Timeline reset for %s; room views invalidated", room_id)

    def _on_timeline_trim(self, dropped_events: Any, room: Any = None) -> None:
        """Invalidate views that counted events evicted from the live window."""
        room_id = room_id_of(room)
        if not room_id:
            return
        try:
            for event in dropped_events or ():
                self._route_dropped_event(room_id, event)
        except Exception:
            logger.exception(
                "Error routing trimmed events; invalidating room %s", room_id
            )
            self.cache.invalidate_room(room_id)

    def _route_new_event(self, room_id: str, event: Any) -> None:
        relation = parse_relation(event)
        if isinstance(relation, ThreadRelation):
            self._remember(room_id, event, relation)
            self.threads.invalidate_thread_cache(room_id, relation.root_event_id)
        elif isinstance(relation, AnnotationRelation):
            self._remember(room_id, event, relation)
            self.reactions.apply_annotation(room_id, event)
        else:
            replaced_event_id = get_replaced_event_id(event)
            if replaced_event_id is not None:
                # Edits change is_edited of a thread reply
                self._invalidate_for(
                    room_id,
                    replaced_event_id,
                    self._resolve_relation(room_id, replaced_event_id),
                )

    def _route_redaction(self, room_id: str, redaction_event: Any) -> None:
        redacted_event_id = self._redacted_event_id(redaction_event)
        if redacted_event_id is None:
            return

        relation = self._resolve_relation(room_id, redacted_event_id)
        self._relations.pop((room_id, redacted_event_id), None)
        if isinstance(relation, AnnotationRelation):
            self.reactions.apply_redaction(
                room_id, relation.target_event_id, redacted_event_id
            )
        else:
            self._invalidate_for(room_id, redacted_event_id, relation)

    def _route_dropped_event(self, room_id: str, event: Any) -> None:
        event_id = event_id_of(event)
        tracked = self._relations.pop((room_id, event_id), None) if event_id else None
        relation = parse_relation(event)
        if not isinstance(relation, (ThreadRelation, AnnotationRelation)):
            relation = tracked
        if relation is not None:
            self._invalidate_for(room_id, event_id or "<unknown>", relation)
        if event_id:
            # The evicted event may itself be a thread root
            self.threads.invalidate_thread_cache(room_id, event_id)

    def _invalidate_for(
        self, room_id: str, event_id: str, relation: Optional[Relation]
    ) -> None:
        if relation is None:
            logger.debug(
                "Unresolved relation for %s; invalidating room %s", event_id, room_id
            )
            self.cache.invalidate_room(room_id)
        elif isinstance(relation, ThreadRelation):
            self.threads.invalidate_thread_cache(room_id, relation.root_event_id)
        elif isinstance(relation, AnnotationRelation):
            self.reactions.invalidate(room_id, relation.target_event_id)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _redacted_event_id(redaction_event: Any) -> Optional[str]:
        redacts = getattr(redaction_event, "redacts", None)
        if isinstance(redacts, str) and redacts:
            return redacts
        content = getattr(redaction_event, "content", None)
        if isinstance(content, Mapping):
            redacts = content.get("redacts")
            if isinstance(redacts, str) and redacts:
                return redacts
        return None

    def _remember(self, room_id: str, event: Any, relation: Relation) -> None:
        event_id = event_id_of(event)
        if not event_id:
            return
        self._relations[(room_id, event_id)] = relation
        self._relations.move_to_end((room_id, event_id))
        # Evict oldest entries if over limit
        while len(self._relations) > self._max_tracked_relations:
            self._relations.popitem(last=False)

    def _resolve_relation(self, room_id: str, event_id: str) -> Optional[Relation]:
        """Prior relation of an event, or None if it cannot be determined.

        Looks at relations seen on delivery, then cached reaction aggregates,
        then the live timeline. A timeline event whose content is gone (already
        redacted) cannot be resolved.
        """
        relation = self._relations.get((room_id, event_id))
        if relation is not None:
            return relation

        annotation = self.reactions.lookup_annotation(room_id, event_id)
        if annotation is not None:
            return annotation

        events = read_timeline(self.client, room_id) or []
        for event in events:
            if event_id_of(event) != event_id:
                continue
            content = getattr(event, "content", None)
            if not content:
                return None
            return parse_relation(event)
        return None

    def _safe_read(self, fallback: Callable[[], T], func: Callable[..., T], *args) -> T:
        try:
            return func(*args)
        except Exception:
            logger.exception(
                "Relation view read %s failed", getattr(func, "__name__", func)
            )
            return fallback()

    async def _safe_mutation(self, func, *args) -> ReactionResult:
        try:
            return await func(*args)
        except Exception as e:
            logger.exception("Unexpected error in %s", getattr(func, "__name__", func))
            return ReactionResult(success=False, error=str(e) or "Unknown error")


def create_relation_view_engine(
    client: ProtocolClient,
    settings: Optional[Settings] = None,
    cache: Optional[RelationCache] = None,
) -> RelationViewEngine:
    """Create a relation view engine already subscribed to client notifications."""
    engine = RelationViewEngine(client, cache=cache, settings=settings)
    engine.start()
    return engine
