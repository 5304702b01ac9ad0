"""Credential lookups for git hosting and the code generation CLI."""

import json
import sqlite3

from autopr.db.models import CoderCredentials, GitCredentials


class CredentialsNotFound(LookupError):
    """Raised when an org has no credentials of the requested kind."""


def store_credentials(
    db: sqlite3.Connection,
    org_id: str,
    kind: str,
    data: dict,
    scope: str = "",
) -> None:
    db.execute(
        """INSERT INTO credentials (org_id, kind, scope, data) VALUES (?, ?, ?, ?)
           ON CONFLICT (org_id, kind, scope) DO UPDATE SET data = excluded.data""",
        (org_id, kind, scope, json.dumps(data)),
    )
    db.commit()


def _load(db: sqlite3.Connection, org_id: str, kind: str, scope: str) -> dict:
    # A scoped entry wins over the org-wide one.
    row = db.execute(
        """SELECT data FROM credentials WHERE org_id = ? AND kind = ? AND scope IN (?, '')
           ORDER BY scope = '' ASC LIMIT 1""",
        (org_id, kind, scope),
    ).fetchone()
    if not row:
        raise CredentialsNotFound(f"No {kind} credentials for org {org_id}")
    return json.loads(row["data"])


def get_git_credentials(
    db: sqlite3.Connection, org_id: str, job_id: str | None = None
) -> GitCredentials:
    return GitCredentials.from_dict(_load(db, org_id, "git", job_id or ""))


def get_coder_credentials(
    db: sqlite3.Connection, org_id: str, job_id: str | None = None
) -> CoderCredentials:
    return CoderCredentials.from_dict(_load(db, org_id, "coder", job_id or ""))
