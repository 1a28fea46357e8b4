"""Notifications API — the caller's notification history.

Learn: the WebSocket stream only carries what arrives while a socket is
open (plus the undelivered backlog on connect). These routes let a client
page through older notifications and manage read state:
- GET  /notifications                → newest first, optional unread filter
- GET  /notifications/unread-count   → badge counter
- POST /notifications/{id}/read      → mark one read
- POST /notifications/read-all       → mark everything read
- GET  /notifications/preferences   → which types the caller receives
- PUT  /notifications/preferences   → partial update of those preferences

Every route is scoped to the recipient in the bearer token.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from pulse_notify.auth.dependencies import get_current_recipient
from pulse_notify.auth.jwt import TokenClaims
from pulse_notify.errors import TransientStoreError
from pulse_notify.schemas.notification import (
    MarkAllReadResult,
    NotificationRead,
    UnreadCount,
)
from pulse_notify.schemas.preferences import NotificationPreferences, PreferencesUpdate
from pulse_notify.store.notifications import NotificationStore

router = APIRouter()


def get_store(request: Request) -> NotificationStore:
    return request.app.state.runtime.store


def _unavailable(e: TransientStoreError) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Notification store unavailable: {e}")


@router.get("/notifications", response_model=list[NotificationRead])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    claims: TokenClaims = Depends(get_current_recipient),
    store: NotificationStore = Depends(get_store),
):
    """List the caller's notifications, newest first."""
    try:
        return await store.list_for_recipient(
            claims.recipient_id, unread_only=unread_only, limit=limit, offset=offset
        )
    except TransientStoreError as e:
        raise _unavailable(e)


@router.get("/notifications/unread-count", response_model=UnreadCount)
async def unread_count(
    claims: TokenClaims = Depends(get_current_recipient),
    store: NotificationStore = Depends(get_store),
):
    try:
        return UnreadCount(unread=await store.unread_count(claims.recipient_id))
    except TransientStoreError as e:
        raise _unavailable(e)


@router.post("/notifications/read-all", response_model=MarkAllReadResult)
async def mark_all_read(
    claims: TokenClaims = Depends(get_current_recipient),
    store: NotificationStore = Depends(get_store),
):
    try:
        return MarkAllReadResult(modified=await store.mark_all_read(claims.recipient_id))
    except TransientStoreError as e:
        raise _unavailable(e)


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
async def mark_read(
    notification_id: uuid.UUID,
    claims: TokenClaims = Depends(get_current_recipient),
    store: NotificationStore = Depends(get_store),
):
    """Mark one notification read. Idempotent: re-reading keeps the first read_at."""
    try:
        await store.mark_read(notification_id, claims.recipient_id)
        notification = await store.get(notification_id, claims.recipient_id)
    except TransientStoreError as e:
        raise _unavailable(e)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.get("/notifications/preferences", response_model=NotificationPreferences)
async def get_preferences(
    claims: TokenClaims = Depends(get_current_recipient),
    store: NotificationStore = Depends(get_store),
):
    try:
        return await store.get_preferences(claims.recipient_id)
    except TransientStoreError as e:
        raise _unavailable(e)


@router.put("/notifications/preferences", response_model=NotificationPreferences)
async def update_preferences(
    body: PreferencesUpdate,
    claims: TokenClaims = Depends(get_current_recipient),
    store: NotificationStore = Depends(get_store),
):
    """Update the caller's preferences. Types left out keep their current setting."""
    try:
        return await store.update_preferences(claims.recipient_id, body)
    except TransientStoreError as e:
        raise _unavailable(e)
