"""Shared test fixtures: a template DB copied per test, and isolated fuel paths."""

import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from fuel.db import get_connection


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema.

    Copying this file is much cheaper than running every migration from
    scratch in each test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with the schema pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def fuel_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, db_conn_path) -> Path:
    """Point every fuel path (DB, config, daemon files, agent output) into tmp_path."""
    _conn, db_path = db_conn_path
    d = tmp_path / ".fuel"
    d.mkdir()
    monkeypatch.setattr("fuel.db.DEFAULT_DB_PATH", db_path)
    monkeypatch.setattr("fuel.config.CONFIG_PATH", d / "config.toml")
    monkeypatch.setattr("fuel.daemon.DEFAULT_PID_PATH", d / "consume-runner.pid")
    monkeypatch.setattr("fuel.daemon.DEFAULT_LOG_PATH", d / "consume-runner.log")
    monkeypatch.setattr("fuel.supervisor.PROCESSES_DIR", d / "processes")
    return d
