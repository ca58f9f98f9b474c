"""Relation-derived views: thread indexes and reaction aggregates."""

from chatview.relations.cache import (
    CacheEntry,
    CacheKey,
    CacheState,
    RelationCache,
    ViewKind,
)
from chatview.relations.client import ProtocolClient, RoomHandle
from chatview.relations.engine import RelationViewEngine, create_relation_view_engine
from chatview.relations.models import (
    AnnotationRelation,
    MessageReaction,
    MessageReactions,
    NoRelation,
    ReactionOptions,
    ReactionResult,
    ThreadCreateResult,
    ThreadMetadata,
    ThreadOptions,
    ThreadRelation,
    ThreadReply,
    ThreadSummary,
    TimelineEvent,
    TopReaction,
    deserialize_reactions,
    serialize_reactions,
)
from chatview.relations.parser import (
    classify_annotation,
    get_thread_root_id,
    is_thread_reply,
    parse_relation,
)
from chatview.relations.reactions import ReactionAggregator
from chatview.relations.threads import ThreadIndex

__all__ = [
    "AnnotationRelation",
    "CacheEntry",
    "CacheKey",
    "CacheState",
    "MessageReaction",
    "MessageReactions",
    "NoRelation",
    "ProtocolClient",
    "ReactionAggregator",
    "ReactionOptions",
    "ReactionResult",
    "RelationCache",
    "RelationViewEngine",
    "RoomHandle",
    "ThreadCreateResult",
    "ThreadIndex",
    "ThreadMetadata",
    "ThreadOptions",
    "ThreadRelation",
    "ThreadReply",
    "ThreadSummary",
    "TimelineEvent",
    "TopReaction",
    "ViewKind",
    "classify_annotation",
    "create_relation_view_engine",
    "deserialize_reactions",
    "get_thread_root_id",
    "is_thread_reply",
    "parse_relation",
    "serialize_reactions",
]
