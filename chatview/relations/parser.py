"""Defensive parsing of relation metadata from timeline events.

Every consumer goes through parse_relation() and matches on the returned
variant. Malformed or partially populated relation objects are never errors;
they parse as NO_RELATION.
"""

from __future__ import annotations

from typing import Any, Mapping

from chatview.relations.constants import (
    REL_TYPE_ANNOTATION,
    REL_TYPE_REPLACE,
    RELATES_TO,
    THREAD_REL_TYPES,
)
from chatview.relations.models import (
    NO_RELATION,
    AnnotationRelation,
    Relation,
    ThreadRelation,
)


def _content_of(event_or_content: Any) -> Mapping[str, Any] | None:
    if isinstance(event_or_content, Mapping):
        return event_or_content
    content = getattr(event_or_content, "content", None)
    if isinstance(content, Mapping):
        return content
    return None


def _relates_to(content: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    if content is None:
        return None
    relates_to = content.get(RELATES_TO)
    if isinstance(relates_to, Mapping):
        return relates_to
    return None


def _non_empty_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def classify_annotation(content: Any) -> AnnotationRelation | None:
    """Validate reaction content and return its annotation, or None.

    Expected shape:
        {"m.relates_to": {"rel_type": "m.annotation", "event_id": str, "key": str}}
    """
    relates_to = _relates_to(content if isinstance(content, Mapping) else None)
    if relates_to is None or relates_to.get("rel_type") != REL_TYPE_ANNOTATION:
        return None

    target_event_id = _non_empty_str(relates_to.get("event_id"))
    key = _non_empty_str(relates_to.get("key"))
    if target_event_id is None or key is None:
        return None
    return AnnotationRelation(target_event_id=target_event_id, key=key)


def is_reaction_content(content: Any) -> bool:
    return classify_annotation(content) is not None


def parse_relation(event_or_content: Any) -> Relation:
    """Parse an event (or its content mapping) into a Relation variant."""
    content = _content_of(event_or_content)
    relates_to = _relates_to(content)
    if relates_to is None:
        return NO_RELATION

    rel_type = relates_to.get("rel_type")
    if rel_type in THREAD_REL_TYPES:
        root_event_id = _non_empty_str(relates_to.get("event_id"))
        if root_event_id is None:
            return NO_RELATION
        return ThreadRelation(root_event_id=root_event_id)

    if rel_type == REL_TYPE_ANNOTATION:
        annotation = classify_annotation(content)
        return annotation if annotation is not None else NO_RELATION

    return NO_RELATION


def is_thread_reply(event: Any) -> bool:
    return isinstance(parse_relation(event), ThreadRelation)


def get_thread_root_id(event: Any) -> str | None:
    relation = parse_relation(event)
    if isinstance(relation, ThreadRelation):
        return relation.root_event_id
    return None


def get_replaced_event_id(event: Any) -> str | None:
    """Return the event an m.replace edit targets, if any."""
    relates_to = _relates_to(_content_of(event))
    if relates_to is None or relates_to.get("rel_type") != REL_TYPE_REPLACE:
        return None
    return _non_empty_str(relates_to.get("event_id"))


# =============================================================================
# Field accessors
# =============================================================================


def event_id_of(event: Any) -> str:
    return _non_empty_str(getattr(event, "event_id", None)) or ""


def event_sender(event: Any) -> str:
    return _non_empty_str(getattr(event, "sender", None)) or ""


def event_timestamp(event: Any) -> int:
    ts = getattr(event, "origin_server_ts", None)
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return 0
    return int(ts)


def event_body(event: Any) -> str:
    content = _content_of(event)
    if content is None:
        return ""
    body = content.get("body", "")
    return body if isinstance(body, str) else ""


def is_event_redacted(event: Any) -> bool:
    """True if the event is flagged redacted or carries redacted_because."""
    if getattr(event, "redacted", False) is True:
        return True
    unsigned = getattr(event, "unsigned", None)
    return isinstance(unsigned, Mapping) and bool(unsigned.get("redacted_because"))


def is_event_edited(event: Any) -> bool:
    """True if the event is flagged edited or bundles an m.replace relation."""
    if getattr(event, "edited", False) is True:
        return True
    unsigned = getattr(event, "unsigned", None)
    if not isinstance(unsigned, Mapping):
        return False
    relations = unsigned.get("m.relations")
    return isinstance(relations, Mapping) and bool(relations.get(REL_TYPE_REPLACE))
