"""Notification type constants.

Learn: centralizing types as constants prevents typos and makes it easy
to discover everything the consumer accepts. Upstream services publish
on their own routing keys; ROUTING_KEYS maps those onto our types so a
bridge (or the CLI) can translate either spelling.
"""

FOLLOW = "follow"
LIKE = "like"
COMMENT = "comment"
MENTION = "mention"
SHARE = "share"
EVENT_RSVP = "event_rsvp"
MESSAGE = "message"

NOTIFICATION_TYPES = frozenset(
    {FOLLOW, LIKE, COMMENT, MENTION, SHARE, EVENT_RSVP, MESSAGE}
)

ROUTING_KEYS = {
    "user.followed": FOLLOW,
    "post.liked": LIKE,
    "post.commented": COMMENT,
    "post.mentioned": MENTION,
    "post.shared": SHARE,
    "event.rsvp.added": EVENT_RSVP,
    "message.sent": MESSAGE,
}

# Priorities
LOW = "LOW"
MEDIUM = "MEDIUM"
HIGH = "HIGH"


def normalize_type(raw: str) -> str:
    """Map a routing key or type name onto a notification type."""
    value = raw.strip()
    return ROUTING_KEYS.get(value, value.lower())
