"""Real-time delivery — WebSocket sessions on this instance.

Learn: notifications reach a browser through two hops:
1. Dispatcher → ConnectionManager.push (local) or Redis relay (remote)
2. ConnectionManager → the recipient's sockets, one delivery loop each

Sockets are never shared between instances; only presence is.
"""
