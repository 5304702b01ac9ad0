"""The shared SQLite store: schema plus connection helpers.

Control plane threads each open their own connection; WAL mode lets the
workflow journal and the log sink write side by side.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    prompt TEXT NOT NULL DEFAULT '',
    status TEXT DEFAULT 'queued' CHECK (status IN ('draft', 'queued', 'in-progress', 'in-review', 'completed', 'failed')),
    queue_type TEXT DEFAULT 'backlog' CHECK (queue_type IN ('backlog', 'rework')),
    order_in_queue INTEGER NOT NULL DEFAULT 0,
    repos TEXT NOT NULL DEFAULT '[]',
    pr_links TEXT NOT NULL DEFAULT '[]',
    error TEXT,
    agent_id TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue ON jobs (org_id, status, queue_type, order_in_queue);

CREATE TABLE IF NOT EXISTS queue_settings (
    org_id TEXT NOT NULL,
    queue_type TEXT NOT NULL CHECK (queue_type IN ('backlog', 'rework')),
    paused INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (org_id, queue_type)
);

CREATE TABLE IF NOT EXISTS repo_configs (
    repo_id TEXT NOT NULL,
    org_id TEXT NOT NULL,
    name TEXT NOT NULL,
    url TEXT,
    branch TEXT DEFAULT 'main',
    setup_commands TEXT NOT NULL DEFAULT '[]',
    build_commands TEXT NOT NULL DEFAULT '[]',
    test_commands TEXT NOT NULL DEFAULT '[]',
    is_confirmed INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (repo_id, org_id)
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    name TEXT DEFAULT '',
    host TEXT NOT NULL DEFAULT 'localhost',
    port INTEGER NOT NULL DEFAULT 50051,
    status TEXT DEFAULT 'active' CHECK (status IN ('active', 'idle', 'offline')),
    last_active REAL,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    org_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('git', 'coder')),
    scope TEXT NOT NULL DEFAULT '',
    data TEXT NOT NULL,
    UNIQUE (org_id, kind, scope)
);

CREATE TABLE IF NOT EXISTS job_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    job_version INTEGER NOT NULL,
    org_id TEXT NOT NULL,
    level TEXT NOT NULL,
    stage TEXT NOT NULL,
    message TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs (job_id, job_version);

CREATE TABLE IF NOT EXISTS workflow_events (
    workflow_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    activity TEXT NOT NULL,
    outcome TEXT NOT NULL CHECK (outcome IN ('ok', 'error')),
    payload TEXT,
    recorded_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (workflow_id, seq)
);
"""


def init_db(db_path: Path, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open db_path, creating its directory and any missing tables."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Yield a connection that is closed on exit."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
