"""CLI for stagedoor.

Manages configuration in ~/.config/stagedoor/config.yaml and talks to a
stagedoor server over HTTP, acting as the configured user (or the one
given with --as-user). Also runs the server itself (``stagedoor serve``).
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from typing import Any

import cyclopts

from .client import Stagedoor
from .config import GlobalConfig, get_config_dir, init_wizard
from .errors import ConversationError

app = cyclopts.App(
    name="stagedoor",
    help="Conversation membership and read-state service",
)

conversation_app = cyclopts.App(name="conversation", help="Conversation operations")
participant_app = cyclopts.App(name="participant", help="Participant management")

app.command(conversation_app)
app.command(participant_app)


def get_config() -> GlobalConfig:
    """Get global config, running wizard if needed."""
    if not GlobalConfig.exists():
        print("No configuration found. Let's set one up.\n")
        return init_wizard()
    return GlobalConfig.load()


def get_client(as_user: str | None = None) -> Stagedoor:
    """Client for the configured server, or exit with an error."""
    try:
        return get_config().get_client(as_user)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def call(as_user: str | None, fn: Callable[[Stagedoor], Any]) -> Any:
    """Run ``fn`` with a client, turning API errors into a message and exit code 1."""
    with get_client(as_user) as client:
        try:
            return fn(client)
        except ConversationError as e:
            print(f"Error ({e.kind}): {e.detail}", file=sys.stderr)
            raise SystemExit(1)
        except RuntimeError as e:
            print(f"Error: {e}", file=sys.stderr)
            raise SystemExit(1)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


# --- Setup Commands ---


@app.command
def init():
    """Initialize stagedoor configuration.

    Runs an interactive wizard to set up:
    - Server URL
    - User id to act as
    - Gateway token (if the server requires one)
    """
    if GlobalConfig.exists():
        confirm = input("Configuration already exists. Overwrite? [y/N] ")
        if confirm.lower() != "y":
            print("Cancelled.")
            return

    init_wizard()


@app.command
def config():
    """Show current configuration."""
    cfg = get_config()
    print(f"Config directory: {get_config_dir()}")
    print(f"Server URL: {cfg.url}")
    print(f"User id: {cfg.user_id or '(not set)'}")
    print(f"Gateway token: {'(set)' if cfg.gateway_token else '(not set)'}")


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    log_level: str | None = None,
):
    """Run the stagedoor server.

    Settings come from STAGEDOOR_* environment variables (see
    StagedoorOptions). Set STAGEDOOR_GATEWAY_TOKEN in production so
    that only your gateway can assert user ids.

    Args:
        host: Interface to bind
        port: Port to bind
        reload: Reload on code changes (development)
        log_level: Override STAGEDOOR_LOG_LEVEL
    """
    import uvicorn

    from .options import StagedoorConfigError, StagedoorOptions

    try:
        options = StagedoorOptions(log_level=log_level)
    except StagedoorConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=options.log_level_value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not options.gateway_token:
        print("WARNING: STAGEDOOR_GATEWAY_TOKEN is not set. X-User-Id is trusted as sent.")
        print("         Do not expose this server directly.\n")

    uvicorn.run(
        "stagedoor.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=options.log_level.lower(),
    )


@app.command(name="init-db")
def init_db(db_path: str | None = None):
    """Create or migrate the database.

    Args:
        db_path: Database path (defaults to STAGEDOOR_DB)
    """
    from . import db
    from .options import StagedoorOptions

    options = StagedoorOptions(db_path=db_path)
    with db.scoped_connection(options.db_path) as conn:
        db.init_db_with_conn(conn)
        version = db.get_schema_version(conn)

    print(f"Database ready: {options.db_path} (schema version {version})")


# --- Conversation Commands ---


@conversation_app.command(name="create")
def conversation_create(
    *participants: str,
    kind: str = "group",
    name: str | None = None,
    as_user: str | None = None,
):
    """Create a conversation with the given participants.

    Args:
        participants: User ids to include (besides yourself)
        kind: 'group' or 'direct'
        name: Group name
        as_user: Act as this user instead of the configured one
    """
    result = call(
        as_user, lambda c: c.create_conversation(list(participants), kind=kind, name=name)
    )
    if result["created"]:
        print(f"Conversation created: {result['conversation_id']}")
    else:
        print(f"Existing direct conversation: {result['conversation_id']}")
    for p in result["participants"]:
        print(f"  {p['user_id']} ({p['role']})")


@conversation_app.command(name="list")
def conversation_list(*, as_user: str | None = None, json_output: bool = False):
    """List your conversations with unread counts."""
    rows = call(as_user, lambda c: c.list_conversations())
    if json_output:
        print_json(rows)
        return
    if not rows:
        print("No conversations")
        return
    for row in rows:
        label = row["name"] or f"({row['kind']})"
        unread = row["unread_count"] if row["unread_count"] is not None else "?"
        muted = " [muted]" if row["is_muted"] else ""
        print(f"{row['conversation_id']}  {label}  unread={unread}  {row['role']}{muted}")


@conversation_app.command(name="show")
def conversation_show(conversation_id: str, *, as_user: str | None = None):
    """Show a conversation and its participants."""
    print_json(call(as_user, lambda c: c.get_conversation(conversation_id)))


@conversation_app.command(name="rename")
def conversation_rename(conversation_id: str, name: str, *, as_user: str | None = None):
    """Rename a group conversation (admins only)."""
    call(as_user, lambda c: c.rename_conversation(conversation_id, name))
    print(f"Renamed {conversation_id} to {name!r}")


@conversation_app.command(name="mute")
def conversation_mute(
    conversation_id: str, *, unmute: bool = False, as_user: str | None = None
):
    """Mute (or with --unmute, unmute) a conversation for yourself."""
    call(as_user, lambda c: c.set_muted(conversation_id, not unmute))
    print(f"{'Unmuted' if unmute else 'Muted'} {conversation_id}")


@conversation_app.command(name="leave")
def conversation_leave(conversation_id: str, *, as_user: str | None = None):
    """Leave a group conversation."""
    call(as_user, lambda c: c.leave_conversation(conversation_id))
    print(f"Left {conversation_id}")


# --- Participant Commands ---


@participant_app.command(name="list")
def participant_list(
    conversation_id: str, *, include_left: bool = False, as_user: str | None = None
):
    """List participants of a conversation."""
    rows = call(as_user, lambda c: c.list_participants(conversation_id, include_left))
    for p in rows:
        status = f"left {p['left_at'][:19]}" if p["left_at"] else "active"
        print(f"{p['user_id']}  {p['role']}  joined {p['joined_at'][:19]}  {status}")


@participant_app.command(name="add")
def participant_add(conversation_id: str, user_id: str, *, as_user: str | None = None):
    """Add a member to a group (admins only)."""
    call(as_user, lambda c: c.add_participant(conversation_id, user_id))
    print(f"Added {user_id} to {conversation_id}")


@participant_app.command(name="remove")
def participant_remove(conversation_id: str, user_id: str, *, as_user: str | None = None):
    """Remove a participant (admins only, or yourself)."""
    call(as_user, lambda c: c.remove_participant(conversation_id, user_id))
    print(f"Removed {user_id} from {conversation_id}")


# --- Read State Commands ---


@app.command
def read(conversation_id: str, *, as_user: str | None = None):
    """Mark a conversation as read."""
    result = call(as_user, lambda c: c.mark_as_read(conversation_id))
    print(f"Read up to {result['last_read_at']}")


@app.command
def unread(*, as_user: str | None = None):
    """Show your total unread message count."""
    print(call(as_user, lambda c: c.get_unread_count()))


if __name__ == "__main__":
    app()
