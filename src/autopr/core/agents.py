"""Executor agent registry: registration, liveness bookkeeping and health results."""

import logging
import sqlite3
import time
from datetime import datetime

from autopr.db.models import AGENT_STATUSES, Agent

logger = logging.getLogger(__name__)

# Consecutive failed liveness checks before an agent is taken out of rotation.
MAX_HEALTH_FAILURES = 3


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        org_id=row["org_id"],
        name=row["name"],
        host=row["host"],
        port=row["port"],
        status=row["status"],
        last_active=row["last_active"],
        consecutive_failures=row["consecutive_failures"],
        created_at=_parse_dt(row["created_at"]),
    )


def register_agent(
    db: sqlite3.Connection,
    agent_id: str,
    org_id: str,
    host: str,
    port: int,
    name: str = "",
) -> Agent:
    """Register an agent, or refresh its address if it is already known."""
    db.execute(
        """INSERT INTO agents (id, org_id, name, host, port, status, last_active)
           VALUES (?, ?, ?, ?, ?, 'active', ?)
           ON CONFLICT (id) DO UPDATE SET
               org_id = excluded.org_id, name = excluded.name, host = excluded.host,
               port = excluded.port, status = 'active', consecutive_failures = 0,
               last_active = excluded.last_active""",
        (agent_id, org_id, name, host, port, time.time()),
    )
    db.commit()
    logger.info("Registered agent %s at %s:%s for org %s", agent_id, host, port, org_id)
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(
    db: sqlite3.Connection,
    org_id: str | None = None,
    status: str | None = None,
) -> list[Agent]:
    query = "SELECT * FROM agents WHERE 1=1"
    params: list = []
    if org_id:
        query += " AND org_id = ?"
        params.append(org_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at"
    return [_row_to_agent(r) for r in db.execute(query, params).fetchall()]


def list_schedulable_agents(db: sqlite3.Connection) -> list[Agent]:
    """Agents that may receive new jobs (everything not offline)."""
    rows = db.execute(
        "SELECT * FROM agents WHERE status != 'offline' ORDER BY created_at"
    ).fetchall()
    return [_row_to_agent(r) for r in rows]


def set_agent_status(db: sqlite3.Connection, agent_id: str, status: str) -> Agent | None:
    if status not in AGENT_STATUSES:
        raise ValueError(f"Invalid agent status: {status}")
    db.execute("UPDATE agents SET status = ? WHERE id = ?", (status, agent_id))
    db.commit()
    return get_agent(db, agent_id)


def touch_agent(db: sqlite3.Connection, agent_id: str, ts: float | None = None) -> None:
    """Record that a message was just received from the agent."""
    db.execute(
        "UPDATE agents SET last_active = ? WHERE id = ?",
        (ts if ts is not None else time.time(), agent_id),
    )
    db.commit()


def get_last_active(db: sqlite3.Connection, agent_id: str) -> float | None:
    row = db.execute(
        "SELECT last_active FROM agents WHERE id = ?", (agent_id,)
    ).fetchone()
    if not row:
        return None
    return row["last_active"]


def record_health_result(db: sqlite3.Connection, agent_id: str, alive: bool) -> Agent | None:
    """Apply one liveness check result to the agent's failure counter.

    A success resets the counter and reactivates an offline agent. After
    MAX_HEALTH_FAILURES consecutive failures the agent is marked offline.
    """
    agent = get_agent(db, agent_id)
    if not agent:
        return None

    if alive:
        db.execute(
            """UPDATE agents SET consecutive_failures = 0,
               status = CASE WHEN status = 'offline' THEN 'active' ELSE status END
               WHERE id = ?""",
            (agent_id,),
        )
    else:
        failures = agent.consecutive_failures + 1
        status = "offline" if failures >= MAX_HEALTH_FAILURES else agent.status
        db.execute(
            "UPDATE agents SET consecutive_failures = ?, status = ? WHERE id = ?",
            (failures, status, agent_id),
        )
        if status == "offline" and agent.status != "offline":
            logger.warning(
                "Agent %s failed %d health checks in a row; marked offline",
                agent_id, failures,
            )
    db.commit()
    return get_agent(db, agent_id)
