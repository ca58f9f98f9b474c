"""Prometheus metrics for relation view caching and mutations."""

from prometheus_client import Counter

# Cache metrics
relation_cache_lookups_total = Counter(
    "chatview_relation_cache_lookups_total",
    "Total relation cache lookups by view kind",
    ["view", "result"],  # result: hit, miss
)

relation_cache_invalidations_total = Counter(
    "chatview_relation_cache_invalidations_total",
    "Total relation cache invalidations by scope",
    ["scope"],  # key, room, all
)

relation_cache_evictions_total = Counter(
    "chatview_relation_cache_evictions_total",
    "Total relation cache entries evicted by the LRU bound",
)

reaction_incremental_updates_total = Counter(
    "chatview_reaction_incremental_updates_total",
    "Total incremental reaction aggregate patches",
    ["kind", "result"],  # kind: annotation, redaction; result: applied, skipped
)

# Timeline metrics
timeline_scans_total = Counter(
    "chatview_timeline_scans_total",
    "Total full timeline scans by view kind",
    ["view"],
)

# Mutation metrics
relation_sends_total = Counter(
    "chatview_relation_sends_total",
    "Total relation mutations sent through the protocol client",
    ["operation", "result"],  # operation: thread_reply, reaction_add, reaction_remove
)
