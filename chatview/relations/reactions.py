"""Per-message emoji reaction aggregates.

Provides:
- ReactionAggregator: builds, caches and incrementally patches aggregates
- toggle/add/remove mutations through the protocol client

An incremental patch (apply_annotation / apply_redaction) must always
produce the same MessageReactions as a full recompute over the live
timeline after the event was delivered. Both paths therefore go through
the same _ReactionState operations.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from chatview.core.exceptions import (
    ReactionNotFoundError,
    RoomNotFoundError,
    ValidationError,
)
from chatview.relations.cache import REACTION_VIEWS, CacheKey, RelationCache, ViewKind
from chatview.relations.client import ProtocolClient, current_user_id, read_timeline
from chatview.relations.constants import (
    COMMON_EMOJI,
    EVENT_TYPE_REACTION,
    REL_TYPE_ANNOTATION,
    RELATES_TO,
)
from chatview.relations.metrics import (
    reaction_incremental_updates_total,
    relation_sends_total,
    timeline_scans_total,
)
from chatview.relations.models import (
    AnnotationRelation,
    MessageReaction,
    MessageReactions,
    ReactionOptions,
    ReactionResult,
    TopReaction,
)
from chatview.relations.parser import (
    event_id_of,
    event_sender,
    is_event_redacted,
    parse_relation,
)

logger = logging.getLogger(__name__)

EMPTY_EMOJI_ERROR = "Emoji cannot be empty"
ALREADY_REACTED_ERROR = "You have already reacted with this emoji"


def build_reaction_content(target_event_id: str, key: str) -> Dict[str, Any]:
    """Build the m.reaction content annotating target_event_id with key."""
    return {
        RELATES_TO: {
            "rel_type": REL_TYPE_ANNOTATION,
            "event_id": target_event_id,
            "key": key,
        }
    }


@dataclass
class _ReactionState:
    """Live annotations on one target: key -> sender -> reaction event ids."""

    events_by_key: Dict[str, Dict[str, Set[str]]] = field(default_factory=dict)
    annotations: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    def copy(self) -> "_ReactionState":
        return copy.deepcopy(self)

    def add(self, reaction_event_id: str, key: str, sender: str) -> None:
        if reaction_event_id in self.annotations:
            return
        self.annotations[reaction_event_id] = (key, sender)
        self.events_by_key.setdefault(key, {}).setdefault(sender, set()).add(
            reaction_event_id
        )

    def remove(self, reaction_event_id: str) -> bool:
        annotation = self.annotations.pop(reaction_event_id, None)
        if annotation is None:
            return False

        key, sender = annotation
        senders = self.events_by_key[key]
        senders[sender].discard(reaction_event_id)
        if not senders[sender]:
            del senders[sender]
        if not senders:
            del self.events_by_key[key]
        return True

    def find_event(self, key: str, sender: str) -> Optional[str]:
        """Earliest live reaction event of sender with key."""
        for reaction_event_id, annotation in self.annotations.items():
            if annotation == (key, sender):
                return reaction_event_id
        return None

    def to_reactions(
        self, target_event_id: str, user_id: Optional[str]
    ) -> MessageReactions:
        # Keys ordered by their earliest live annotation, as a timeline scan sees them
        ordered_keys = dict.fromkeys(key for key, _ in self.annotations.values())
        return MessageReactions.build(
            target_event_id,
            {
                key: MessageReaction.from_users(
                    key, frozenset(self.events_by_key[key]), user_id
                )
                for key in ordered_keys
            },
        )


@dataclass(frozen=True)
class _ReactionView:
    state: _ReactionState
    reactions: MessageReactions


def _collect_state(
    events: Sequence[Any], target_event_id: str, include_redacted: bool
) -> _ReactionState:
    state = _ReactionState()
    for position, event in enumerate(events):
        relation = parse_relation(event)
        if not isinstance(relation, AnnotationRelation):
            continue
        if relation.target_event_id != target_event_id:
            continue
        if not include_redacted and is_event_redacted(event):
            continue
        sender = event_sender(event)
        if not sender:
            continue
        # Events without an id still count; they just cannot be redacted by id
        state.add(event_id_of(event) or f"#{position}", relation.key, sender)
    return state


class ReactionAggregator:
    """Builds and maintains reaction aggregates per (room, target event)."""

    def __init__(
        self,
        client: ProtocolClient,
        cache: RelationCache,
        incremental: bool = True,
    ):
        self.client = client
        self.cache = cache
        self.incremental = incremental

    # =========================================================================
    # Reads
    # =========================================================================

    def aggregate(
        self,
        room_id: str,
        event_id: str,
        options: Optional[ReactionOptions] = None,
    ) -> MessageReactions:
        """Return reactions on event_id; empty if the room is unknown.

        Without filtering options the cached aggregate is returned by
        reference. Filters never mutate the cached aggregate.
        """
        include_redacted = bool(options is not None and options.include_redacted)
        view = self._get_view(room_id, event_id, include_redacted)
        if view is None:
            return MessageReactions.empty(event_id)
        return self._apply_options(view.reactions, options)

    get_message_reactions = aggregate

    def get_multiple_message_reactions(
        self,
        room_id: str,
        event_ids: Iterable[str],
        options: Optional[ReactionOptions] = None,
    ) -> Dict[str, MessageReactions]:
        return {
            event_id: self.aggregate(room_id, event_id, options)
            for event_id in event_ids
        }

    def get_top_reactions(self, room_id: str, limit: int = 10) -> List[TopReaction]:
        """Most used emoji in the room by number of unique reacting users."""
        events = read_timeline(self.client, room_id)
        if events is None:
            return []

        timeline_scans_total.labels(view="top_reactions").inc()
        users_by_emoji: Dict[str, Set[str]] = {}
        for event in events:
            relation = parse_relation(event)
            if not isinstance(relation, AnnotationRelation):
                continue
            sender = event_sender(event)
            if not sender or is_event_redacted(event):
                continue
            users_by_emoji.setdefault(relation.key, set()).add(sender)

        ranked = sorted(
            users_by_emoji.items(), key=lambda item: len(item[1]), reverse=True
        )
        return [
            TopReaction(emoji=emoji, count=len(users), users=sorted(users))
            for emoji, users in ranked[:limit]
        ]

    @staticmethod
    def get_common_emoji() -> List[str]:
        """Quick-reaction palette, most used first."""
        return list(COMMON_EMOJI)

    def has_user_reacted(
        self, room_id: str, event_id: str, emoji: Optional[str] = None
    ) -> bool:
        reactions = self.aggregate(room_id, event_id)
        if emoji is not None:
            reaction = reactions.reactions.get(emoji)
            return reaction is not None and reaction.current_user_reacted
        return any(r.current_user_reacted for r in reactions.reactions.values())

    # =========================================================================
    # Mutations
    # =========================================================================

    async def toggle_reaction(
        self, room_id: str, event_id: str, emoji: str
    ) -> ReactionResult:
        """Redact the user's reaction with emoji if present, else add one."""
        try:
            emoji = self._validate_emoji(emoji)
        except ValidationError as e:
            return ReactionResult(success=False, error=e.detail)

        if self.has_user_reacted(room_id, event_id, emoji):
            return await self.remove_reaction(room_id, event_id, emoji)
        return await self.add_reaction(room_id, event_id, emoji)

    async def add_reaction(
        self, room_id: str, event_id: str, emoji: str
    ) -> ReactionResult:
        try:
            key = self._validate_emoji(emoji)
        except ValidationError as e:
            return ReactionResult(success=False, error=e.detail)

        if self.has_user_reacted(room_id, event_id, key):
            return ReactionResult(success=False, error=ALREADY_REACTED_ERROR)

        try:
            reaction_event_id = await self.client.send_message(
                room_id, build_reaction_content(event_id, key), EVENT_TYPE_REACTION
            )
        except Exception as e:
            logger.error("Failed to add reaction %s to %s: %s", key, event_id, e)
            relation_sends_total.labels(operation="reaction_add", result="failure").inc()
            return ReactionResult(success=False, error=str(e) or "Unknown error")

        relation_sends_total.labels(operation="reaction_add", result="success").inc()
        self.invalidate(room_id, event_id)
        return ReactionResult(success=True, event_id=reaction_event_id)

    async def remove_reaction(
        self, room_id: str, event_id: str, emoji: str
    ) -> ReactionResult:
        """Redact the current user's reaction; event_id of the result is the
        redacted reaction event."""
        try:
            key = self._validate_emoji(emoji)
            reaction_event_id = self._find_user_reaction_event(room_id, event_id, key)
        except (ValidationError, RoomNotFoundError, ReactionNotFoundError) as e:
            return ReactionResult(success=False, error=e.detail)

        try:
            await self.client.redact_event(room_id, reaction_event_id)
        except Exception as e:
            logger.error(
                "Failed to remove reaction %s from %s: %s", key, event_id, e
            )
            relation_sends_total.labels(
                operation="reaction_remove", result="failure"
            ).inc()
            return ReactionResult(success=False, error=str(e) or "Unknown error")

        relation_sends_total.labels(operation="reaction_remove", result="success").inc()
        self.invalidate(room_id, event_id)
        return ReactionResult(success=True, event_id=reaction_event_id)

    # =========================================================================
    # Incremental updates
    # =========================================================================

    def apply_annotation(self, room_id: str, event: Any) -> bool:
        """Fold one newly delivered annotation event into the cached aggregate.

        Returns:
            True if a current cached aggregate was patched; False if the
            target was only invalidated (nothing cached, or not patchable).
        """
        relation = parse_relation(event)
        if not isinstance(relation, AnnotationRelation):
            return False

        target_event_id = relation.target_event_id
        entry = self._take_patchable(room_id, target_event_id)
        reaction_event_id = event_id_of(event)
        if entry is None or not reaction_event_id:
            reaction_incremental_updates_total.labels(
                kind="annotation", result="skipped"
            ).inc()
            return False

        state = entry.value.state.copy()
        sender = event_sender(event)
        if sender and not is_event_redacted(event):
            state.add(reaction_event_id, relation.key, sender)
        return self._store_patch(room_id, target_event_id, state, "annotation")

    def apply_redaction(
        self, room_id: str, target_event_id: str, redacted_event_id: str
    ) -> bool:
        """Drop one redacted reaction event from the cached aggregate."""
        entry = self._take_patchable(room_id, target_event_id)
        if entry is None:
            reaction_incremental_updates_total.labels(
                kind="redaction", result="skipped"
            ).inc()
            return False

        state = entry.value.state.copy()
        state.remove(redacted_event_id)
        return self._store_patch(room_id, target_event_id, state, "redaction")

    def lookup_annotation(
        self, room_id: str, reaction_event_id: str
    ) -> Optional[AnnotationRelation]:
        """Resolve a reaction event id against cached aggregates of a room."""
        for entry in self.cache.current_entries(room_id, ViewKind.REACTIONS):
            annotation = entry.value.state.annotations.get(reaction_event_id)
            if annotation is not None and entry.key.anchor_event_id:
                return AnnotationRelation(
                    target_event_id=entry.key.anchor_event_id, key=annotation[0]
                )
        return None

    # =========================================================================
    # Cache management
    # =========================================================================

    def invalidate(self, room_id: str, event_id: str) -> None:
        self.cache.invalidate_anchor(room_id, event_id, REACTION_VIEWS)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _validate_emoji(emoji: Any) -> str:
        if not isinstance(emoji, str) or not emoji.strip():
            raise ValidationError(EMPTY_EMOJI_ERROR, field="emoji")
        return emoji

    def _get_view(
        self, room_id: str, event_id: str, include_redacted: bool
    ) -> Optional[_ReactionView]:
        view_kind = (
            ViewKind.REACTIONS_WITH_REDACTED if include_redacted else ViewKind.REACTIONS
        )
        key = CacheKey(room_id, event_id, view_kind)
        entry = self.cache.lookup(key)
        if entry is not None:
            return entry.value

        version = self.cache.version(key)
        events = read_timeline(self.client, room_id)
        if events is None:
            return None

        timeline_scans_total.labels(view=view_kind.value).inc()
        state = _collect_state(events, event_id, include_redacted)
        view = _ReactionView(
            state=state,
            reactions=state.to_reactions(event_id, current_user_id(self.client)),
        )
        self.cache.store(key, view, version)
        return view

    def _find_user_reaction_event(
        self, room_id: str, event_id: str, key: str
    ) -> str:
        if self.client.get_room(room_id) is None:
            raise RoomNotFoundError(room_id)

        user_id = current_user_id(self.client)
        view = self._get_view(room_id, event_id, include_redacted=False)
        reaction_event_id = (
            view.state.find_event(key, user_id)
            if view is not None and user_id is not None
            else None
        )
        if reaction_event_id is None or reaction_event_id.startswith("#"):
            raise ReactionNotFoundError(event_id, key)
        return reaction_event_id

    def _take_patchable(self, room_id: str, target_event_id: str):
        """Invalidate the target's views, returning the prior current entry."""
        key = CacheKey(room_id, target_event_id, ViewKind.REACTIONS)
        entry = self.cache.peek(key) if self.incremental else None
        self.invalidate(room_id, target_event_id)
        return entry

    def _store_patch(
        self, room_id: str, target_event_id: str, state: _ReactionState, kind: str
    ) -> bool:
        key = CacheKey(room_id, target_event_id, ViewKind.REACTIONS)
        view = _ReactionView(
            state=state,
            reactions=state.to_reactions(target_event_id, current_user_id(self.client)),
        )
        stored = self.cache.store(key, view, self.cache.version(key))
        reaction_incremental_updates_total.labels(
            kind=kind, result="applied" if stored else "skipped"
        ).inc()
        return stored

    def _apply_options(
        self, reactions: MessageReactions, options: Optional[ReactionOptions]
    ) -> MessageReactions:
        if options is None or not (
            options.max_reactions or options.filter_by_users or options.exclude_emoji
        ):
            return reactions

        user_id = current_user_id(self.client)
        excluded = set(options.exclude_emoji or ())
        allowed_users = set(options.filter_by_users or ())
        filtered: Dict[str, MessageReaction] = {}
        for key, reaction in reactions.reactions.items():
            if key in excluded:
                continue
            if allowed_users:
                users = reaction.users & allowed_users
                if not users:
                    continue
                reaction = MessageReaction.from_users(key, users, user_id)
            filtered[key] = reaction
            if options.max_reactions and len(filtered) >= options.max_reactions:
                break

        return MessageReactions.build(reactions.event_id, filtered)
