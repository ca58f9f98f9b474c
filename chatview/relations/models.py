"""Data model for relation-derived views.

Provides:
- TimelineEvent: immutable snapshot of one observed protocol event
- NoRelation / ThreadRelation / AnnotationRelation: tagged relation variant
- ThreadMetadata, ThreadReply, ThreadSummary: thread views
- MessageReaction, MessageReactions, TopReaction: reaction views
- ThreadOptions, ReactionOptions: read-side filters
- ThreadCreateResult, ReactionResult: mutation outcomes
- serialize_reactions / deserialize_reactions: set <-> list conversion
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chatview.relations.constants import EVENT_TYPE_MESSAGE

# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class TimelineEvent:
    """One event as observed on a room's live timeline.

    Never mutated in place: a redaction or edit supersedes the stored
    instance with a copy carrying the updated flag.
    """

    event_id: str
    sender: str
    origin_server_ts: int
    type: str = EVENT_TYPE_MESSAGE
    content: Mapping[str, Any] = field(default_factory=dict)
    unsigned: Mapping[str, Any] = field(default_factory=dict)
    redacted: bool = False
    edited: bool = False
    redacts: Optional[str] = None


# =============================================================================
# Relations
# =============================================================================


@dataclass(frozen=True)
class NoRelation:
    """Event carries no (valid) relation."""


@dataclass(frozen=True)
class ThreadRelation:
    root_event_id: str


@dataclass(frozen=True)
class AnnotationRelation:
    target_event_id: str
    key: str


Relation = Union[NoRelation, ThreadRelation, AnnotationRelation]

NO_RELATION = NoRelation()


# =============================================================================
# Thread views
# =============================================================================


class ThreadMetadata(BaseModel):
    """Aggregate information about one thread root."""

    model_config = ConfigDict(frozen=True)

    root_event_id: str = Field(..., description="Event that anchors the thread")
    room_id: str = Field(..., description="Room containing the thread")
    reply_count: int = Field(..., ge=1, description="Number of reply events")
    latest_reply_ts: int = Field(..., description="Newest reply timestamp (ms)")
    participants: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Reply senders; the root author only if they replied",
    )
    user_participated: bool = Field(
        default=False, description="Whether the session user replied"
    )


class ThreadReply(BaseModel):
    """A reply event with the fields thread views display."""

    model_config = ConfigDict(frozen=True)

    event: Any = Field(default=None, exclude=True, repr=False)
    event_id: str = ""
    sender: str = ""
    content: str = ""
    timestamp: int = 0
    is_edited: bool = False
    is_redacted: bool = False


class ThreadSummary(BaseModel):
    """Thread metadata plus the most recent replies."""

    model_config = ConfigDict(frozen=True)

    metadata: ThreadMetadata
    recent_replies: List[ThreadReply] = Field(default_factory=list)
    has_more_replies: bool = False


class ThreadOptions(BaseModel):
    """Filters applied when reading thread replies."""

    max_replies: Optional[int] = Field(default=None, ge=1)
    include_edited: bool = True
    include_redacted: bool = True
    filter_by_sender: Optional[str] = None


class ThreadCreateResult(BaseModel):
    success: bool
    event_id: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Reaction views
# =============================================================================


class MessageReaction(BaseModel):
    """All users who reacted to one message with one key."""

    model_config = ConfigDict(frozen=True)

    key: str
    users: FrozenSet[str] = Field(default_factory=frozenset)
    count: int = 0
    current_user_reacted: bool = False

    @model_validator(mode="after")
    def validate_count(self) -> "MessageReaction":
        if self.count != len(self.users):
            raise ValueError(
                f"count {self.count} does not match {len(self.users)} users"
            )
        return self

    @classmethod
    def from_users(
        cls, key: str, users: FrozenSet[str], current_user_id: Optional[str]
    ) -> "MessageReaction":
        users = frozenset(users)
        return cls(
            key=key,
            users=users,
            count=len(users),
            current_user_reacted=bool(current_user_id) and current_user_id in users,
        )


class MessageReactions(BaseModel):
    """Reactions on one message, keyed by emoji."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    reactions: Dict[str, MessageReaction] = Field(default_factory=dict)
    total_count: int = 0

    @classmethod
    def build(
        cls, event_id: str, reactions: Dict[str, MessageReaction]
    ) -> "MessageReactions":
        return cls(
            event_id=event_id,
            reactions=reactions,
            total_count=sum(r.count for r in reactions.values()),
        )

    @classmethod
    def empty(cls, event_id: str) -> "MessageReactions":
        return cls(event_id=event_id)


class TopReaction(BaseModel):
    emoji: str
    count: int
    users: List[str] = Field(default_factory=list)


class ReactionOptions(BaseModel):
    """Filters applied when reading reaction aggregates."""

    max_reactions: Optional[int] = Field(default=None, ge=1)
    filter_by_users: Optional[List[str]] = None
    exclude_emoji: Optional[List[str]] = None
    include_redacted: bool = False


class ReactionResult(BaseModel):
    success: bool
    event_id: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Serialization
# =============================================================================


class SerializedReaction(BaseModel):
    key: str
    users: List[str]
    count: int
    current_user_reacted: bool


class SerializedMessageReactions(BaseModel):
    """List-based wire/storage form of MessageReactions."""

    event_id: str
    reactions: List[SerializedReaction] = Field(default_factory=list)
    total_count: int = 0


def serialize_reactions(reactions: MessageReactions) -> Dict[str, Any]:
    """Convert MessageReactions into a JSON-compatible dict.

    User sets become sorted lists; reaction order is preserved.
    """
    return SerializedMessageReactions(
        event_id=reactions.event_id,
        reactions=[
            SerializedReaction(
                key=reaction.key,
                users=sorted(reaction.users),
                count=reaction.count,
                current_user_reacted=reaction.current_user_reacted,
            )
            for reaction in reactions.reactions.values()
        ],
        total_count=reactions.total_count,
    ).model_dump()


def deserialize_reactions(data: Mapping[str, Any]) -> MessageReactions:
    """Rebuild MessageReactions from serialize_reactions() output.

    Counts are recomputed from the user lists, so duplicated users in the
    serialized form collapse back to set semantics.
    """
    serialized = SerializedMessageReactions.model_validate(data)
    reactions: Dict[str, MessageReaction] = {}
    for item in serialized.reactions:
        users = frozenset(item.users)
        reactions[item.key] = MessageReaction(
            key=item.key,
            users=users,
            count=len(users),
            current_user_reacted=item.current_user_reacted,
        )
    return MessageReactions(
        event_id=serialized.event_id,
        reactions=reactions,
        total_count=sum(r.count for r in reactions.values()),
    )
