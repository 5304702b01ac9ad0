"""Repository configuration lookups."""

import json
import sqlite3

from autopr.db.models import RepoRef


def upsert_repo_config(db: sqlite3.Connection, org_id: str, repo: RepoRef) -> RepoRef:
    """Store a repo configuration for an org."""
    db.execute(
        """INSERT INTO repo_configs
           (repo_id, org_id, name, url, branch, setup_commands, build_commands, test_commands, is_confirmed)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (repo_id, org_id) DO UPDATE SET
               name = excluded.name, url = excluded.url, branch = excluded.branch,
               setup_commands = excluded.setup_commands,
               build_commands = excluded.build_commands,
               test_commands = excluded.test_commands,
               is_confirmed = excluded.is_confirmed""",
        (
            repo.repo_id, org_id, repo.name, repo.url, repo.branch,
            json.dumps(repo.setup_commands), json.dumps(repo.build_commands),
            json.dumps(repo.test_commands), int(repo.is_confirmed),
        ),
    )
    db.commit()
    return get_repo_configs(db, org_id, [repo.repo_id])[0]


def get_repo_configs(
    db: sqlite3.Connection,
    org_id: str,
    repo_ids: list[str] | None = None,
) -> list[RepoRef]:
    """Get repo configs for an org, in the order of repo_ids when given.

    Unknown ids are skipped.
    """
    if repo_ids is None:
        rows = db.execute(
            "SELECT * FROM repo_configs WHERE org_id = ? ORDER BY name", (org_id,)
        ).fetchall()
        return [_row_to_repo(r) for r in rows]

    repos = []
    for repo_id in repo_ids:
        row = db.execute(
            "SELECT * FROM repo_configs WHERE org_id = ? AND repo_id = ?",
            (org_id, repo_id),
        ).fetchone()
        if row:
            repos.append(_row_to_repo(row))
    return repos


def _row_to_repo(row: sqlite3.Row) -> RepoRef:
    return RepoRef(
        repo_id=row["repo_id"],
        name=row["name"],
        url=row["url"],
        branch=row["branch"] or "main",
        setup_commands=json.loads(row["setup_commands"] or "[]"),
        build_commands=json.loads(row["build_commands"] or "[]"),
        test_commands=json.loads(row["test_commands"] or "[]"),
        is_confirmed=bool(row["is_confirmed"]),
    )
