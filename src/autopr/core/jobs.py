"""Job record operations and the per-org execution queue."""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from autopr.db.models import JOB_STATUSES, QUEUE_TYPES, Job

logger = logging.getLogger(__name__)

# Rework jobs are always drained before backlog jobs.
QUEUE_PRIORITY = ("rework", "backlog")


def create_job(
    db: sqlite3.Connection,
    job_id: str,
    org_id: str,
    prompt: str,
    repos: list[str] | None = None,
    queue_type: str = "backlog",
    status: str = "queued",
) -> Job:
    """Create a job at the end of its queue."""
    if queue_type not in QUEUE_TYPES:
        raise ValueError(f"Invalid queue type: {queue_type}")
    row = db.execute(
        "SELECT COALESCE(MAX(order_in_queue), -1) + 1 AS next FROM jobs WHERE org_id = ? AND queue_type = ?",
        (org_id, queue_type),
    ).fetchone()
    db.execute(
        """INSERT INTO jobs (id, org_id, prompt, status, queue_type, order_in_queue, repos)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (job_id, org_id, prompt, status, queue_type, row["next"], json.dumps(repos or [])),
    )
    db.commit()
    return get_job(db, job_id)


def get_job(db: sqlite3.Connection, job_id: str) -> Job | None:
    row = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def get_job_details(db: sqlite3.Connection, job_id: str, org_id: str) -> Job | None:
    """Get a job scoped to its organisation."""
    row = db.execute(
        "SELECT * FROM jobs WHERE id = ? AND org_id = ?", (job_id, org_id)
    ).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(
    db: sqlite3.Connection,
    org_id: str,
    status: str | None = None,
) -> list[Job]:
    query = "SELECT * FROM jobs WHERE org_id = ?"
    params: list = [org_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY queue_type DESC, order_in_queue ASC"
    return [_row_to_job(r) for r in db.execute(query, params).fetchall()]


def update_job_status(
    db: sqlite3.Connection,
    job_id: str,
    org_id: str,
    status: str,
    pr_link: str | None = None,
    error: str | None = None,
) -> Job | None:
    """Set a job's status, appending the PR link if one is given."""
    if status not in JOB_STATUSES:
        raise ValueError(f"Invalid job status: {status}")
    job = get_job_details(db, job_id, org_id)
    if not job:
        return None

    pr_links = list(job.pr_links)
    if pr_link and pr_link not in pr_links:
        pr_links.append(pr_link)

    db.execute(
        """UPDATE jobs SET status = ?, pr_links = ?, error = ?, updated_at = datetime('now')
           WHERE id = ? AND org_id = ?""",
        (status, json.dumps(pr_links), error, job_id, org_id),
    )
    db.commit()
    logger.info("Job %s -> %s%s", job_id, status, f" ({error})" if error else "")
    return get_job_details(db, job_id, org_id)


def add_pr_links(
    db: sqlite3.Connection, job_id: str, org_id: str, links: list[str]
) -> Job | None:
    job = get_job_details(db, job_id, org_id)
    if not job:
        return None
    pr_links = list(job.pr_links)
    pr_links.extend(link for link in links if link not in pr_links)
    db.execute(
        "UPDATE jobs SET pr_links = ?, updated_at = datetime('now') WHERE id = ? AND org_id = ?",
        (json.dumps(pr_links), job_id, org_id),
    )
    db.commit()
    return get_job_details(db, job_id, org_id)


def has_job_in_progress(db: sqlite3.Connection, org_id: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM jobs WHERE org_id = ? AND status = 'in-progress' LIMIT 1",
        (org_id,),
    ).fetchone()
    return row is not None


def is_queue_paused(db: sqlite3.Connection, org_id: str, queue_type: str) -> bool:
    row = db.execute(
        "SELECT paused FROM queue_settings WHERE org_id = ? AND queue_type = ?",
        (org_id, queue_type),
    ).fetchone()
    return bool(row and row["paused"])


def set_queue_paused(
    db: sqlite3.Connection, org_id: str, queue_type: str, paused: bool
) -> None:
    db.execute(
        """INSERT INTO queue_settings (org_id, queue_type, paused) VALUES (?, ?, ?)
           ON CONFLICT (org_id, queue_type) DO UPDATE SET paused = excluded.paused""",
        (org_id, queue_type, int(paused)),
    )
    db.commit()


def claim_next_job(
    db: sqlite3.Connection,
    org_id: str,
    agent_id: str | None = None,
) -> Job | None:
    """Atomically move the next queued job to in-progress.

    Returns None when the org already has a job in progress, when every
    unpaused queue is empty, or when all queues are paused.
    """
    db.execute("BEGIN IMMEDIATE")
    try:
        if has_job_in_progress(db, org_id):
            db.rollback()
            return None

        for queue_type in QUEUE_PRIORITY:
            if is_queue_paused(db, org_id, queue_type):
                continue
            row = db.execute(
                """SELECT id FROM jobs
                   WHERE org_id = ? AND status = 'queued' AND queue_type = ?
                   ORDER BY order_in_queue ASC, created_at ASC LIMIT 1""",
                (org_id, queue_type),
            ).fetchone()
            if not row:
                continue
            db.execute(
                """UPDATE jobs SET status = 'in-progress', agent_id = ?, error = NULL,
                   updated_at = datetime('now') WHERE id = ?""",
                (agent_id, row["id"]),
            )
            db.commit()
            logger.info("Claimed job %s from %s queue for org %s", row["id"], queue_type, org_id)
            return get_job(db, row["id"])

        db.rollback()
        return None
    except Exception:
        db.rollback()
        raise


def move_job_to_queue(
    db: sqlite3.Connection,
    job_id: str,
    org_id: str,
    queue_type: str,
) -> Job | None:
    """Move a job between the rework and backlog queues.

    Bookkeeping only: the job keeps its status and is appended to the end of
    the target queue.
    """
    if queue_type not in QUEUE_TYPES:
        raise ValueError(f"Invalid queue type: {queue_type}")
    job = get_job_details(db, job_id, org_id)
    if not job:
        return None
    if job.queue_type == queue_type:
        return job
    row = db.execute(
        "SELECT COALESCE(MAX(order_in_queue), -1) + 1 AS next FROM jobs WHERE org_id = ? AND queue_type = ?",
        (org_id, queue_type),
    ).fetchone()
    db.execute(
        """UPDATE jobs SET queue_type = ?, order_in_queue = ?, updated_at = datetime('now')
           WHERE id = ? AND org_id = ?""",
        (queue_type, row["next"], job_id, org_id),
    )
    db.commit()
    return get_job_details(db, job_id, org_id)


def requeue_job(db: sqlite3.Connection, job_id: str, org_id: str) -> Job | None:
    """Put a finished job back on the rework queue with a new version."""
    job = get_job_details(db, job_id, org_id)
    if not job:
        return None
    db.execute(
        """UPDATE jobs SET status = 'queued', version = version + 1, error = NULL,
           updated_at = datetime('now') WHERE id = ? AND org_id = ?""",
        (job_id, org_id),
    )
    db.commit()
    return move_job_to_queue(db, job_id, org_id, "rework")


def detect_stuck_jobs(
    db: sqlite3.Connection,
    org_id: str,
    active_job_ids: set[str],
    max_age: timedelta = timedelta(hours=2),
) -> list[str]:
    """Fail in-progress jobs that outlived max_age and have no live workflow."""
    rows = db.execute(
        "SELECT id, updated_at FROM jobs WHERE org_id = ? AND status = 'in-progress'",
        (org_id,),
    ).fetchall()
    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - max_age
    stuck = []
    for row in rows:
        if row["id"] in active_job_ids:
            continue
        updated = _parse_dt(row["updated_at"])
        if updated and updated < cutoff:
            stuck.append(row["id"])

    for job_id in stuck:
        update_job_status(
            db, job_id, org_id, "failed",
            error="Job was stuck in progress with no running workflow",
        )
    return stuck


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        org_id=row["org_id"],
        prompt=row["prompt"],
        version=row["version"],
        status=row["status"],
        queue_type=row["queue_type"],
        order_in_queue=row["order_in_queue"],
        repos=json.loads(row["repos"] or "[]"),
        pr_links=json.loads(row["pr_links"] or "[]"),
        error=row["error"],
        agent_id=row["agent_id"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
