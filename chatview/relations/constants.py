"""Matrix event, relation and notification identifiers."""

# Event types
EVENT_TYPE_MESSAGE = "m.room.message"
EVENT_TYPE_REACTION = "m.reaction"
EVENT_TYPE_REDACTION = "m.room.redaction"

# Message types
MSGTYPE_TEXT = "m.text"

# Relation types
RELATES_TO = "m.relates_to"
REL_TYPE_THREAD = "m.thread"
REL_TYPE_THREAD_UNSTABLE = "io.element.thread"
REL_TYPE_ANNOTATION = "m.annotation"
REL_TYPE_REPLACE = "m.replace"

THREAD_REL_TYPES = frozenset({REL_TYPE_THREAD, REL_TYPE_THREAD_UNSTABLE})

# Notifications emitted by the protocol client
NOTIFY_TIMELINE = "Room.timeline"
NOTIFY_REDACTION = "Room.redaction"
NOTIFY_TIMELINE_RESET = "Room.timelineReset"
NOTIFY_TIMELINE_TRIM = "Room.timelineTrim"

# Quick-reaction palette offered by the UI
COMMON_EMOJI = (
    "\U0001f44d",  # thumbs up
    "\U0001f44e",  # thumbs down
    "❤️",  # heart
    "\U0001f604",  # smile
    "\U0001f622",  # crying
    "\U0001f621",  # angry
    "\U0001f62e",  # surprised
    "\U0001f44f",  # clap
    "\U0001f389",  # party popper
    "\U0001f525",  # fire
    "\U0001f4af",  # hundred
    "⚡",  # lightning
    "⭐",  # star
    "✅",  # check mark
    "❌",  # cross mark
    "❓",  # question mark
)
