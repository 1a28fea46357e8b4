"""Per-type notification text.

Learn: the client renders `title` + `message` as-is, so the wording lives
here next to the priority each type gets. The actor's display name comes
from the event payload; upstream services include it so we never have to
call the user service on the hot path. Each upstream event names its actor
field after the role (follower, commenter, sender...), so every type says
where to look before falling back to `actor_username`.
"""

from dataclasses import dataclass

from pulse_notify.errors import PoisonMessage
from pulse_notify.events import types as t


@dataclass(frozen=True)
class Rendered:
    title: str
    message: str
    priority: str


_TEMPLATES = {
    t.FOLLOW: ("New Follower", "{actor} started following you", t.MEDIUM, "follower_username"),
    t.LIKE: ("Post Liked", "{actor} liked your post", t.LOW, "user_username"),
    t.COMMENT: ("New Comment", "{actor} commented on your post", t.HIGH, "commenter_username"),
    t.MENTION: ("You were mentioned", "{actor} mentioned you in a post", t.HIGH, "mentioner_username"),
    t.SHARE: ("Post Shared", "{actor} shared your post", t.MEDIUM, "user_username"),
    t.EVENT_RSVP: ("Event RSVP", "{actor} is {status} to your event", t.MEDIUM, "user_username"),
    t.MESSAGE: ("New Message", "{actor} sent you a message", t.HIGH, "sender_username"),
}


def render(notification_type: str, payload: dict) -> Rendered:
    """Build title/message/priority for a notification type."""
    try:
        title, template, priority, name_field = _TEMPLATES[notification_type]
    except KeyError:
        raise PoisonMessage(f"Unknown notification type: {notification_type!r}")

    actor = (
        payload.get(name_field)
        or payload.get("actor_username")
        or "Someone"
    )
    message = template.format(
        actor=actor,
        status=str(payload.get("status", "")).lower(),
    )
    return Rendered(title=title, message=message, priority=priority)
