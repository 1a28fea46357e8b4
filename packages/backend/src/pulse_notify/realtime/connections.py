"""Connection Manager — this instance's table of live WebSocket sessions.

Learn: each session walks a small state machine:

    CONNECTING → AUTHENTICATED → OPEN → CLOSING → CLOSED
         └──────── auth failure ─────────────────→ CLOSED (4001 / 4002)

Once authenticated, four tasks run per connection:
1. Delivery loop — replays the backlog, then drains the live outbox
2. Reader — client acks, ping/pong, token refresh frames
3. Ticker — idle check, presence heartbeat, server ping
4. Re-validator — re-checks the token, force-closes when it expires

When any of them finishes (client left, idle, auth expired, socket
broken) the rest are cancelled and the session closes. The presence entry
is removed *before* the close completes so no relay is routed to a
socket that is already gone.

Ordering: the connection joins the local table before the backlog query,
so live pushes that race with the replay are queued behind it, and
anything already sent by the replay is not sent again.
"""

import asyncio
import json
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from pulse_notify.auth.jwt import TokenValidator
from pulse_notify.errors import (
    CLOSE_NORMAL,
    AuthError,
    InvalidTokenError,
    RegistryUnavailable,
    TransientStoreError,
    TransportError,
)
from pulse_notify.metrics import open_connections, pushes_total
from pulse_notify.presence.registry import PresenceRegistry
from pulse_notify.schemas.notification import (
    PING_FRAME,
    PONG_FRAME,
    AckFrame,
    NotificationRead,
    notification_frame,
)
from pulse_notify.store.notifications import NotificationStore

logger = structlog.get_logger()

CLOSE_INTERNAL_ERROR = 1011

# Per-socket memory of ids already written, for backlog/live dedup.
SENT_IDS_LIMIT = 10_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class CloseReason:
    code: int
    reason: str


class Connection:
    """One live socket. Owned by exactly one ConnectionManager."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.token: Optional[str] = None
        self.recipient_id: Optional[str] = None
        self.state = ConnectionState.CONNECTING
        self.connected_at = utcnow()
        self.last_seen_at = self.connected_at
        self.presence_refreshed_at: Optional[datetime] = None
        self.outbox: asyncio.Queue[NotificationRead] = asyncio.Queue()
        self.sent_ids: dict[uuid.UUID, None] = {}
        self.pending_writes: set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

    @property
    def is_closing(self) -> bool:
        return self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED)

    def touch(self) -> None:
        self.last_seen_at = utcnow()

    def idle_seconds(self) -> float:
        return (utcnow() - self.last_seen_at).total_seconds()

    def enqueue(self, notification: NotificationRead) -> bool:
        if self.is_closing:
            return False
        self.outbox.put_nowait(notification)
        return True

    def remember_sent(self, notification_id: uuid.UUID) -> None:
        self.sent_ids[notification_id] = None
        if len(self.sent_ids) > SENT_IDS_LIMIT:
            self.sent_ids.pop(next(iter(self.sent_ids)))

    async def send_json(self, data: dict[str, Any]) -> None:
        """Write one frame; returns once the transport accepted it."""
        async with self._send_lock:
            try:
                await self.websocket.send_text(json.dumps(data, default=str))
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                raise TransportError(f"Socket write failed: {e}") from e


class ConnectionManager:
    """Accepts sockets, tracks them per recipient, and pushes notifications."""

    def __init__(
        self,
        *,
        instance_id: str,
        validator: TokenValidator,
        store: NotificationStore,
        registry: PresenceRegistry,
        presence_ttl: int = 30,
        heartbeat_interval: float = 10.0,
        idle_timeout: float = 60.0,
        revalidate_interval: float = 60.0,
        handshake_timeout: float = 10.0,
    ):
        self.instance_id = instance_id
        self.validator = validator
        self.store = store
        self.registry = registry
        self.presence_ttl = presence_ttl
        self.heartbeat_interval = heartbeat_interval
        self.idle_timeout = idle_timeout
        self.revalidate_interval = revalidate_interval
        self.handshake_timeout = handshake_timeout
        self._connections: dict[str, set[Connection]] = {}
        self._presence_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ─── Local table ──────────────────────────────────────

    def has_local(self, recipient_id: str) -> bool:
        return bool(self._connections.get(recipient_id))

    def connections_for(self, recipient_id: str) -> list[Connection]:
        return list(self._connections.get(recipient_id, ()))

    @property
    def connection_count(self) -> int:
        return sum(len(c) for c in self._connections.values())

    def push(self, recipient_id: str, notification: NotificationRead) -> int:
        """Queue a notification on every local socket of the recipient.

        Returns how many sockets it was queued on. The actual write (and
        the delivered_at update) happens in each connection's delivery loop.
        """
        queued = 0
        for conn in self.connections_for(recipient_id):
            if conn.enqueue(notification):
                queued += 1
        return queued

    # ─── Session lifecycle ────────────────────────────────

    async def handle(self, websocket: WebSocket, token: Optional[str] = None) -> None:
        """Run one WebSocket session to completion."""
        conn = Connection(websocket)
        await websocket.accept()

        try:
            if token is None:
                token = await self._await_handshake(conn)
            claims = self.validator.validate(token)
        except AuthError as e:
            logger.info("connection.auth_failed", code=e.close_code, error=str(e))
            await self._close_socket(conn, e.close_code, str(e))
            conn.state = ConnectionState.CLOSED
            return

        conn.token = token
        conn.recipient_id = claims.recipient_id
        conn.state = ConnectionState.AUTHENTICATED

        with structlog.contextvars.bound_contextvars(
            recipient_id=conn.recipient_id, connection_id=conn.id
        ):
            await self._run_session(conn)

    async def _run_session(self, conn: Connection) -> None:
        await self._attach(conn)
        logger.info("connection.authenticated", instance_id=self.instance_id)

        tasks = [
            asyncio.create_task(self._delivery_loop(conn)),
            asyncio.create_task(self._reader(conn)),
            asyncio.create_task(self._ticker(conn)),
            asyncio.create_task(self._revalidator(conn)),
        ]
        close = CloseReason(CLOSE_NORMAL, "closed")
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            close = self._close_reason(done)
        finally:
            # Cleanup must finish even if the server cancels this handler
            await asyncio.shield(self._shutdown(conn, tasks, close))

    async def _await_handshake(self, conn: Connection) -> str:
        """Read the first-frame `auth` handshake."""
        try:
            raw = await asyncio.wait_for(
                conn.websocket.receive_text(), timeout=self.handshake_timeout
            )
        except asyncio.TimeoutError:
            raise InvalidTokenError("Authentication handshake timed out")
        except WebSocketDisconnect:
            raise InvalidTokenError("Client left before authenticating")
        except KeyError:
            raise InvalidTokenError("Handshake must be a text frame")

        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            raise InvalidTokenError("Malformed handshake frame")
        if not isinstance(frame, dict) or frame.get("type") != "auth":
            raise InvalidTokenError("Authentication required")
        return frame.get("token") or ""

    def _close_reason(self, done: set[asyncio.Task]) -> CloseReason:
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                return task.result()
            if isinstance(exc, AuthError):
                logger.info("connection.auth_revoked", code=exc.close_code, error=str(exc))
                return CloseReason(exc.close_code, str(exc))
            if isinstance(exc, TransportError):
                logger.info("connection.transport_error", error=str(exc))
                return CloseReason(CLOSE_INTERNAL_ERROR, "transport error")
            logger.error(
                "connection.task_failed", error=str(exc), exc_info=exc
            )
            return CloseReason(CLOSE_INTERNAL_ERROR, "internal error")
        return CloseReason(CLOSE_NORMAL, "closed")

    async def _shutdown(
        self, conn: Connection, tasks: list[asyncio.Task], close: CloseReason
    ) -> None:
        conn.state = ConnectionState.CLOSING
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._detach(conn)
        await self._close_socket(conn, close.code, close.reason)
        conn.state = ConnectionState.CLOSED
        logger.info("connection.closed", code=close.code, reason=close.reason)

    async def _close_socket(self, conn: Connection, code: int, reason: str) -> None:
        ws = conn.websocket
        if (
            ws.application_state == WebSocketState.CONNECTED
            and ws.client_state == WebSocketState.CONNECTED
        ):
            try:
                await ws.close(code=code, reason=reason)
            except Exception as e:
                # Peer already gone; nothing left to tell it
                logger.debug("connection.close_failed", error=str(e))

    # ─── Presence ─────────────────────────────────────────

    def _presence_lock(self, recipient_id: str) -> asyncio.Lock:
        lock = self._presence_locks.get(recipient_id)
        if lock is None:
            lock = asyncio.Lock()
            self._presence_locks[recipient_id] = lock
        return lock

    async def _attach(self, conn: Connection) -> None:
        rid = conn.recipient_id
        lock = self._presence_lock(rid)
        async with lock:
            conns = self._connections.setdefault(rid, set())
            first = not conns
            conns.add(conn)
            open_connections.inc()
            if first:
                try:
                    await self.registry.register(rid, self.instance_id, self.presence_ttl)
                    conn.presence_refreshed_at = utcnow()
                except RegistryUnavailable as e:
                    # Next heartbeat recreates the entry.
                    logger.warning("presence.register_failed", error=str(e))

    async def _detach(self, conn: Connection) -> None:
        rid = conn.recipient_id
        lock = self._presence_lock(rid)
        async with lock:
            conns = self._connections.get(rid)
            if conns is None or conn not in conns:
                return
            conns.discard(conn)
            open_connections.dec()
            if conns:
                return
            del self._connections[rid]
            try:
                await self.registry.unregister(rid, self.instance_id)
            except RegistryUnavailable as e:
                # Entry expires on its own within one TTL.
                logger.warning("presence.unregister_failed", error=str(e))

    async def _refresh_presence(self, conn: Connection) -> None:
        refreshed = conn.presence_refreshed_at
        if refreshed and (utcnow() - refreshed).total_seconds() < self.heartbeat_interval / 2:
            return
        try:
            await self.registry.heartbeat(
                conn.recipient_id, self.instance_id, self.presence_ttl
            )
            conn.presence_refreshed_at = utcnow()
        except RegistryUnavailable as e:
            logger.warning("presence.heartbeat_failed", error=str(e))

    async def shutdown(self) -> None:
        """Drop this instance's presence entries (graceful stop)."""
        for rid in list(self._connections):
            try:
                await self.registry.unregister(rid, self.instance_id)
            except RegistryUnavailable as e:
                logger.warning("presence.unregister_failed", recipient_id=rid, error=str(e))

    # ─── Per-connection tasks ─────────────────────────────

    async def _delivery_loop(self, conn: Connection) -> CloseReason:
        """Backlog replay first, then live pushes in arrival order."""
        while True:
            try:
                backlog = await self.store.list_undelivered(conn.recipient_id)
                break
            except TransientStoreError as e:
                logger.warning("connection.backlog_failed", error=str(e))
                await asyncio.sleep(self.heartbeat_interval)

        for notification in backlog:
            await self._send_notification(conn, notification, path="backlog")

        conn.state = ConnectionState.OPEN
        logger.info("connection.opened", backlog=len(backlog))

        while True:
            notification = await conn.outbox.get()
            if notification.id in conn.sent_ids:
                continue
            await self._send_notification(conn, notification, path="live")

    async def _send_notification(
        self, conn: Connection, notification: NotificationRead, path: str
    ) -> None:
        await conn.send_json(notification_frame(notification))
        conn.remember_sent(notification.id)
        pushes_total.labels(path=path).inc()

        if notification.delivered_at is None:
            # Runs to completion even if the connection closes meanwhile.
            task = asyncio.create_task(self._confirm_delivered(conn, notification.id))
            conn.pending_writes.add(task)
            task.add_done_callback(conn.pending_writes.discard)

    async def _confirm_delivered(self, conn: Connection, notification_id: uuid.UUID) -> None:
        try:
            changed = await self.store.mark_delivered(notification_id, conn.recipient_id)
        except TransientStoreError as e:
            # Stays undelivered; the client may see it again on reconnect.
            logger.warning(
                "connection.mark_delivered_failed",
                notification_id=str(notification_id),
                error=str(e),
            )
            return
        if conn.state != ConnectionState.CLOSED:
            logger.debug(
                "connection.delivered",
                notification_id=str(notification_id),
                first=changed,
            )

    async def _reader(self, conn: Connection) -> CloseReason:
        while True:
            try:
                raw = await conn.websocket.receive_text()
            except WebSocketDisconnect:
                return CloseReason(CLOSE_NORMAL, "client disconnected")
            except KeyError:
                # Binary frame: the message has no "text" key
                raw = None
            conn.touch()

            try:
                frame = json.loads(raw)
            except (TypeError, ValueError):
                frame = None
            if not isinstance(frame, dict):
                await conn.send_json({"type": "error", "detail": "Invalid frame"})
                continue

            frame_type = frame.get("type")
            if frame_type == "ping":
                await conn.send_json(PONG_FRAME)
                await self._refresh_presence(conn)
            elif frame_type == "pong":
                await self._refresh_presence(conn)
            elif frame_type == "ack":
                await self._handle_ack(conn, frame)
            elif frame_type == "auth":
                await self._handle_reauth(conn, frame)
            else:
                await conn.send_json(
                    {"type": "error", "detail": f"Unknown frame type: {frame_type!r}"}
                )

    async def _handle_ack(self, conn: Connection, frame: dict[str, Any]) -> None:
        try:
            ack = AckFrame.model_validate(frame)
        except ValidationError:
            await conn.send_json({"type": "error", "detail": "Invalid ack frame"})
            return
        try:
            if ack.status == "read":
                await self.store.mark_read(ack.id, conn.recipient_id)
            else:
                await self.store.mark_delivered(ack.id, conn.recipient_id)
        except TransientStoreError as e:
            logger.warning("connection.ack_failed", notification_id=str(ack.id), error=str(e))
            await conn.send_json(
                {"type": "error", "detail": "Ack not recorded, retry", "id": str(ack.id)}
            )

    async def _handle_reauth(self, conn: Connection, frame: dict[str, Any]) -> None:
        """Swap in a fresh token so the session outlives the original one."""
        token = frame.get("token") or ""
        claims = self.validator.validate(token)
        if claims.recipient_id != conn.recipient_id:
            raise InvalidTokenError("Token belongs to a different user")
        conn.token = token
        logger.debug("connection.reauthenticated")

    async def _ticker(self, conn: Connection) -> CloseReason:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if conn.idle_seconds() >= self.idle_timeout:
                logger.info("connection.idle_timeout", idle=round(conn.idle_seconds(), 1))
                return CloseReason(CLOSE_NORMAL, "idle timeout")
            await self._refresh_presence(conn)
            await conn.send_json(PING_FRAME)

    async def _revalidator(self, conn: Connection) -> CloseReason:
        while True:
            await asyncio.sleep(self.revalidate_interval)
            # Raises AuthError → session closes with its close code.
            self.validator.validate(conn.token)

