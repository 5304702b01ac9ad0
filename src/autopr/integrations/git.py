"""Thin wrappers over the git CLI used by the agent workspace."""

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from autopr.errors import GitError

_URL_USERINFO = re.compile(r"://[^/@\s]+@")

# Remote heads land under refs/remotes/origin so a fetch never moves a branch
# that some job worktree has checked out.
TRACKING_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False
    prunable: bool = False


def redact(text: str) -> str:
    return _URL_USERINFO.sub("://***@", text)


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run ``git <args>`` and return its stripped stdout.

    Terminal prompts are switched off, so a bad or missing token fails instead
    of hanging. Errors come back as GitError with any URL credentials masked.
    """
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    proc = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, env=env)
    if proc.returncode != 0:
        detail = proc.stderr.strip() or proc.stdout.strip() or f"exit status {proc.returncode}"
        raise GitError(redact(f"git {' '.join(args)} failed: {detail}"))
    return proc.stdout.strip()


# ── Repositories ─────────────────────────────────────────────────────────────


def init_bare(url: str, bare_path: str | Path) -> str:
    """Create an empty bare repository whose origin is url.

    Objects arrive through fetch, so url is the only address ever written to
    the repository config.
    """
    output = run_git(["init", "--bare", str(bare_path)])
    run_git(["remote", "add", "origin", url], cwd=bare_path)
    run_git(["config", "remote.origin.fetch", TRACKING_REFSPEC], cwd=bare_path)
    return output


def fetch(repo_path: str | Path, source: str = "origin") -> str:
    """Fetch every remote head into refs/remotes/origin.

    source may be a one-off URL; it is passed on the command line only and
    is not stored in the repository config.
    """
    return run_git(["fetch", "--prune", source, TRACKING_REFSPEC], cwd=repo_path)


def get_remote_url(repo_path: str | Path, remote: str = "origin") -> str:
    return run_git(["remote", "get-url", remote], cwd=repo_path)


def set_remote_url(repo_path: str | Path, url: str, remote: str = "origin") -> str:
    """Repoint remote, creating it when the repository has none by that name."""
    try:
        return run_git(["remote", "set-url", remote, url], cwd=repo_path)
    except GitError:
        return run_git(["remote", "add", remote, url], cwd=repo_path)


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    ref: str,
    detach: bool = True,
) -> str:
    """Check out ref into a new worktree, detached unless told otherwise."""
    args = ["worktree", "add"]
    if detach:
        args.append("--detach")
    return run_git([*args, str(worktree_path), ref], cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain``.

    Each worktree is a blank-line separated block of ``key value`` lines;
    ``bare`` and ``prunable`` carry no value or a free-text reason.
    """
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    entries = []
    for block in output.split("\n\n"):
        attrs = {}
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            attrs[key] = value
        if "worktree" not in attrs:
            continue
        entries.append(
            WorktreeInfo(
                path=attrs["worktree"],
                branch=attrs.get("branch", "").removeprefix("refs/heads/"),
                head=attrs.get("HEAD", ""),
                is_bare="bare" in attrs,
                prunable="prunable" in attrs,
            )
        )
    return entries


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    args = ["worktree", "remove", str(worktree_path)]
    return run_git([*args, "--force"] if force else args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Branches and commits ─────────────────────────────────────────────────────


def get_status(cwd: str | Path) -> str:
    """Short-format status; empty when the tree is clean."""
    return run_git(["status", "--short"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Branch checked out in cwd, or "" for a detached HEAD."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def branch_exists(cwd: str | Path, branch: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=cwd)
    except GitError:
        return False
    return True


def switch_to_branch(cwd: str | Path, branch: str) -> str:
    """Check out branch, creating it at HEAD the first time.

    Safe to repeat: a branch left by an earlier attempt is checked out again
    and uncommitted changes in the tree are kept.
    """
    if get_current_branch(cwd) == branch:
        return ""
    if branch_exists(cwd, branch):
        return run_git(["checkout", branch], cwd=cwd)
    return run_git(["checkout", "-b", branch], cwd=cwd)


def add_all(cwd: str | Path) -> str:
    return run_git(["add", "--all"], cwd=cwd)


def commit(
    cwd: str | Path,
    message: str,
    author_name: str = "autopr",
    author_email: str = "autopr@users.noreply.github.com",
) -> str:
    identity = ["-c", f"user.name={author_name}", "-c", f"user.email={author_email}"]
    return run_git([*identity, "commit", "-m", message], cwd=cwd)


def push(cwd: str | Path, remote_url: str, branch: str) -> str:
    """Push HEAD to branch at an explicit URL; the configured remote is not changed."""
    return run_git(["push", remote_url, f"HEAD:refs/heads/{branch}"], cwd=cwd)
