"""Tests for the management CLI."""

from __future__ import annotations

import os

import manage


def _memory_env(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(os, "environ", os.environ.copy())
    monkeypatch.setenv("REMOTE_BACKEND", "memory")
    monkeypatch.setenv("LOCAL_DB_PATH", str(tmp_path / "data" / "cache.sqlite3"))
    monkeypatch.setenv("DAILY_SWIPE_LIMIT", "10")
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("FIREBASE_CREDENTIALS_JSON", raising=False)


def test_quota_commands(tmp_path, monkeypatch, capsys) -> None:
    _memory_env(tmp_path, monkeypatch)

    assert manage.main(["quota-status", "u1"]) == 0
    assert "u1: remaining=10" in capsys.readouterr().out

    assert manage.main(["set-max", "u1", "3"]) == 0
    assert "u1: max=3 used=0" in capsys.readouterr().out


def test_cache_commands(tmp_path, monkeypatch, capsys) -> None:
    _memory_env(tmp_path, monkeypatch)

    assert manage.main(["purge"]) == 0
    assert "penpal_matches: 0 rows removed" in capsys.readouterr().out

    assert manage.main(["pending", "conversations"]) == 0
    assert "0 unsynced rows" in capsys.readouterr().out

    assert manage.main(["pending", "nope"]) == 2
    assert "Unknown collection" in capsys.readouterr().err

    assert manage.main(["clear"]) == 0
    assert "Local cache cleared" in capsys.readouterr().out


def test_check_reports_memory_backend(tmp_path, monkeypatch, capsys) -> None:
    _memory_env(tmp_path, monkeypatch)

    assert manage.main(["check"]) == 0
    output = capsys.readouterr().out
    assert "Self-check report" in output
    assert "In-memory backend" in output

    monkeypatch.setenv("REMOTE_BACKEND", "carrier-pigeon")
    assert manage.main(["check"]) == 1


def test_no_command_prints_help(capsys) -> None:
    assert manage.main([]) == 1
    assert "usage" in capsys.readouterr().out
