"""Tests for CLI commands, run against the in-process app."""

import pytest

from stagedoor import cli
from stagedoor.client import Stagedoor


@pytest.fixture
def cli_client(stagedoor_http, monkeypatch):
    """Point the CLI at the TestClient instead of a configured server."""

    def fake_get_client(as_user=None):
        return Stagedoor(user_id=as_user or "alice", http_client=stagedoor_http)

    monkeypatch.setattr(cli, "get_client", fake_get_client)
    return stagedoor_http


def _create_group(capsys):
    cli.conversation_create("bob", "carol", name="Crew")
    out = capsys.readouterr().out
    return out.splitlines()[0].split(": ")[1]


def test_create_and_list(cli_client, capsys):
    cid = _create_group(capsys)

    cli.conversation_list(as_user="bob")
    out = capsys.readouterr().out
    assert cid in out
    assert "Crew" in out
    assert "unread=0" in out


def test_participant_commands(cli_client, capsys):
    cid = _create_group(capsys)

    cli.participant_add(cid, "dave")
    cli.participant_remove(cid, "carol")
    capsys.readouterr()

    cli.participant_list(cid)
    out = capsys.readouterr().out
    assert "dave" in out
    assert "carol" not in out


def test_read_and_unread(cli_client, capsys):
    cid = _create_group(capsys)
    cli_client.app.state.store.insert_message(cid, "alice", "hello")

    cli.unread(as_user="bob")
    assert capsys.readouterr().out.strip() == "1"

    cli.read(cid, as_user="bob")
    cli.unread(as_user="bob")
    assert capsys.readouterr().out.strip().splitlines()[-1] == "0"


def test_errors_exit_nonzero(cli_client, capsys):
    cid = _create_group(capsys)

    with pytest.raises(SystemExit) as exc_info:
        cli.participant_add(cid, "dave", as_user="bob")

    assert exc_info.value.code == 1
    assert "PermissionDenied" in capsys.readouterr().err


def test_init_db(tmp_path, capsys):
    path = tmp_path / "stagedoor.db"

    cli.init_db(str(path))

    assert path.exists()
    assert "schema version 2" in capsys.readouterr().out
