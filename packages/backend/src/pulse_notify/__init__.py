"""Pulse Notify — real-time notification delivery core.

Consumes domain events published by the Pulse services (follow, like,
comment, mention...), persists them as per-recipient notifications and
pushes them to every connected device across stateless service instances.
"""

__version__ = "0.1.0"
