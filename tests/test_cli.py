"""
tests/test_cli.py
"""
from __future__ import annotations

from activitylog.app import app, get_store


def test_init_db(tmp_path, monkeypatch):
    target = tmp_path / "fresh" / "activity.db"
    monkeypatch.setitem(app.config, "DB_PATH", str(target))
    result = app.test_cli_runner().invoke(args=["init-db"])
    assert result.exit_code == 0, result.output
    assert "sqlite store ready" in result.output
    assert target.exists()


def test_add_from_shell():
    result = app.test_cli_runner().invoke(
        args=["add", "Watered the plants", "--category", "home", "--details", "all of them"]
    )
    assert result.exit_code == 0, result.output
    assert "[home] Watered the plants" in result.output

    (activity,) = get_store().query()
    assert activity.category == "home"
    assert activity.details == "all of them"


def test_add_rejects_blank_content():
    result = app.test_cli_runner().invoke(args=["add", "   "])
    assert result.exit_code != 0
    assert get_store().query() == []


def test_token():
    result = app.test_cli_runner().invoke(args=["token"])
    assert result.exit_code == 0
    lines = [ln for ln in result.output.splitlines() if ln.strip()]
    token = lines[1]
    assert len(token) >= 32 and " " not in token
