"""Relation-derived view engine for a Matrix-backed chat client.

This package provides:
- Relation parsing: tagged thread/annotation relations from raw events
- RelationCache: versioned cache with per-key invalidation
- ThreadIndex: thread metadata, reply lists and room thread directory
- ReactionAggregator: per-message emoji reaction aggregates
- RelationViewEngine: facade binding a protocol client and its notifications

Example usage:
    from chatview import create_relation_view_engine

    engine = create_relation_view_engine(client)
    metadata = engine.get_thread_metadata("!room:server", "$root:server")
    result = await engine.toggle_reaction("!room:server", "$msg:server", "\U0001f44d")
    engine.stop()
"""

from chatview.relations.engine import RelationViewEngine, create_relation_view_engine

__all__ = [
    "RelationViewEngine",
    "create_relation_view_engine",
]
