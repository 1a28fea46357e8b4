"""WebSocket endpoint — live notification stream for one user.

Learn: clients connect to /ws/notifications and authenticate with one of:
1. Authorization: Bearer <jwt> header (server-side clients)
2. ?token=<jwt> query param (browsers cannot set WS headers)
3. A first frame {"type": "auth", "token": "<jwt>"} (keeps the token
   out of URLs and access logs)

The socket is accepted before the token is checked so that a rejected
client still sees the close code: 4001 invalid token, 4002 expired.
Everything after that is owned by the ConnectionManager.
"""

from typing import Optional

from fastapi import APIRouter, WebSocket

router = APIRouter()


def extract_token(websocket: WebSocket) -> Optional[str]:
    authorization = websocket.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:]
    return websocket.query_params.get("token")


@router.websocket("/ws/notifications")
async def notifications_websocket(websocket: WebSocket):
    """Stream the caller's notifications: backlog first, then live pushes."""
    runtime = websocket.app.state.runtime
    await runtime.connections.handle(websocket, token=extract_token(websocket))
