from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    When the agent runs in a container with a bind-mounted state path that does
    not exist yet, Docker creates a *directory* there. In that case the DB file
    is placed inside the directory.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "edge_agent.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              manifest_name TEXT,
              version TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_manifest ON events(manifest_name, version);
            """
        )


def log_event(level: str, message: str, manifest_name: str | None = None, version: str | None = None) -> None:
    level = level.upper()
    if level not in LEVELS:
        raise ValueError(f"Unknown event level '{level}'.")
    if level == "DEBUG" and not settings.debug:
        return
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, manifest_name, version, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, manifest_name, version, message),
        )


def latest_events(limit: int = 100, manifest_name: str | None = None, version: str | None = None) -> list[dict[str, Any]]:
    query = "SELECT * FROM events"
    clauses: list[str] = []
    params: list[Any] = []
    if manifest_name:
        clauses.append("manifest_name=?")
        params.append(manifest_name)
    if version:
        clauses.append("version=?")
        params.append(version)
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(int(limit))
    with connect() as conn:
        rows = conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]
