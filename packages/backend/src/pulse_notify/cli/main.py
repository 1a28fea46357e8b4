"""pulse-notify CLI — run the service and operate its queues.

Usage:
    pulse-notify serve                               # API + WebSocket + consumer
    pulse-notify publish u42 like --actor u7         # Append a domain event
    pulse-notify dead-letters list                   # Inspect the dead-letter stream
    pulse-notify dead-letters replay 1718-0          # Re-queue one dead letter
    pulse-notify token u42                           # Mint a development token
    pulse-notify inbox --token <jwt>                 # Caller's notifications via the API
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
import uuid
from typing import Optional

import click
import httpx
import redis.asyncio as aioredis

from pulse_notify import __version__
from pulse_notify.config import settings

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("PULSE_NOTIFY_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: str) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at a running instance."""
    return httpx.AsyncClient(
        base_url=_api_url(),
        headers={"Authorization": f"Bearer {token}"},
        timeout=30.0,
    )


def _redis() -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when a loop is already running (CliRunner in
    async tests).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "-"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="pulse-notify")
def main():
    """Pulse notification delivery service."""


@main.command()
@click.option("--host", default=None, help="Bind address (default: PULSE_NOTIFY_HOST)")
@click.option("--port", default=None, type=int, help="Port (default: PULSE_NOTIFY_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the API, WebSocket endpoint and event consumer."""
    import uvicorn

    uvicorn.run(
        "pulse_notify.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_config=None,
    )


# ---------------------------------------------------------------------------
# pulse-notify publish
# ---------------------------------------------------------------------------


@main.command()
@click.argument("recipient_id")
@click.argument("event_type")
@click.option("--actor", "actor_id", help="Actor user id")
@click.option("--event-id", help="Idempotency key (random if omitted)")
@click.option("--source", "source_service", default="cli", help="Source service name")
@click.option("--payload", default="{}", help="JSON payload, e.g. '{\"actor_username\": \"ann\"}'")
def publish(recipient_id: str, event_type: str, actor_id: Optional[str],
            event_id: Optional[str], source_service: str, payload: str):
    """Append a domain event to the event stream.

    EVENT_TYPE is a notification type (like, follow...) or routing key
    (post.liked, user.followed...).
    """
    from pydantic import ValidationError

    from pulse_notify.consumer.consumer import publish_event
    from pulse_notify.schemas.event import DomainEvent

    try:
        event = DomainEvent(
            event_id=event_id or uuid.uuid4().hex,
            type=event_type,
            source_service=source_service,
            recipient_id=recipient_id,
            actor_id=actor_id,
            payload=json.loads(payload),
        )
    except (ValueError, ValidationError) as e:
        click.secho(f"Invalid event: {e}", fg="red", err=True)
        sys.exit(1)

    async def _publish():
        r = _redis()
        try:
            return await publish_event(r, settings.event_stream, event)
        finally:
            await r.aclose()

    message_id = _run(_publish())
    click.secho(f"Published {event.type} for {recipient_id} (event {event.event_id}) as {message_id}", fg="green")


# ---------------------------------------------------------------------------
# pulse-notify dead-letters
# ---------------------------------------------------------------------------


@main.group("dead-letters")
def dead_letters():
    """Inspect and replay the dead-letter stream."""


@dead_letters.command("list")
@click.option("--limit", "-l", default=20, help="Max entries (newest first)")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def list_dead_letters(limit: int, as_json: bool):
    """Show the most recent dead-lettered messages."""

    async def _list():
        r = _redis()
        try:
            return await r.xrevrange(settings.dead_letter_stream, count=limit)
        finally:
            await r.aclose()

    entries = _run(_list())
    rows = [{"id": entry_id, **fields} for entry_id, fields in entries]
    if as_json:
        click.echo(json.dumps(rows, indent=2, default=str))
        return
    if not rows:
        click.echo("Dead-letter stream is empty.")
        return
    _print_table(rows, [
        ("ID", "id", 18),
        ("FAILED AT", "failed_at", 25),
        ("TRIES", "deliveries", 5),
        ("REASON", "reason", 60),
    ])


@dead_letters.command("replay")
@click.argument("entry_id")
@click.option("--keep", is_flag=True, help="Keep the entry in the dead-letter stream")
def replay_dead_letter(entry_id: str, keep: bool):
    """Re-append a dead-lettered event to the event stream.

    Safe to repeat: the dedup index and the store's unique constraint
    turn a second replay of the same event into a no-op.
    """

    async def _replay():
        r = _redis()
        try:
            entries = await r.xrange(settings.dead_letter_stream, min=entry_id, max=entry_id, count=1)
            if not entries:
                return None
            _, fields = entries[0]
            new_id = await r.xadd(settings.event_stream, {"event": fields["event"]})
            if not keep:
                await r.xdel(settings.dead_letter_stream, entry_id)
            return new_id
        finally:
            await r.aclose()

    new_id = _run(_replay())
    if new_id is None:
        click.secho(f"Dead letter {entry_id} not found", fg="red", err=True)
        sys.exit(1)
    click.secho(f"Replayed {entry_id} as {new_id}", fg="green")


# ---------------------------------------------------------------------------
# pulse-notify token / inbox
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--minutes", default=60, help="Lifetime in minutes")
def token(user_id: str, minutes: int):
    """Mint an access token for USER_ID (development only)."""
    if settings.environment != "development":
        click.secho("Refusing to mint tokens outside development.", fg="red", err=True)
        sys.exit(1)
    from pulse_notify.auth.jwt import create_access_token

    click.echo(create_access_token(user_id, expires_minutes=minutes))


@main.command()
@click.option("--token", "access_token", required=True, envvar="PULSE_NOTIFY_TOKEN",
              help="Bearer token (or set PULSE_NOTIFY_TOKEN)")
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--limit", "-l", default=20, help="Max results")
def inbox(access_token: str, unread: bool, limit: int):
    """List your notifications from a running instance."""

    async def _inbox():
        async with _client(access_token) as c:
            r = await c.get(
                "/api/v1/notifications",
                params={"unread_only": unread, "limit": limit},
            )
            if r.status_code == 401:
                click.secho("Token rejected.", fg="red", err=True)
                sys.exit(1)
            r.raise_for_status()
            return r.json()

    rows = _run(_inbox())
    if not rows:
        click.echo("No notifications.")
        return
    for row in rows:
        row["state"] = "read" if row.get("read_at") else (
            "delivered" if row.get("delivered_at") else "new"
        )
    _print_table(rows, [
        ("CREATED", "created_at", 20),
        ("TYPE", "type", 10),
        ("STATE", "state", 9),
        ("MESSAGE", "message", 50),
    ])


if __name__ == "__main__":
    main()
