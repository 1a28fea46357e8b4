"""Authentication.

Learn: one verifier, two entry points:
1. WebSocket upgrade → bearer header, ?token= or first `auth` frame
2. Notification API → Authorization: Bearer header

Both resolve to the recipient id the notifications are addressed to.
"""
