"""Commit a job's worktree, push its branch and open the pull request."""

import logging

import httpx

from autopr.agent.workspace import WorktreeManager, authenticated_url, resolve_source_url
from autopr.db.models import GitCredentials, RepoRef, branch_name
from autopr.errors import PipelineError
from autopr.integrations.git import add_all, commit, get_status, push
from autopr.integrations.github import GitHubError, create_pull_request, get_client

logger = logging.getLogger(__name__)


class PullRequestError(PipelineError):
    """Raised when a pull request cannot be opened."""


def format_pr_body(summary: str, verification_errors: list[str]) -> str:
    body = summary.rstrip()
    if verification_errors:
        body += "\n\nErrors:\n" + "\n".join(f"- {e}" for e in verification_errors)
    return body


class PullRequestCreator:
    def __init__(
        self,
        worktrees: WorktreeManager,
        api_url: str = "https://api.github.com",
        http_client: httpx.Client | None = None,
    ):
        self.worktrees = worktrees
        self.api_url = api_url
        self._http_client = http_client

    def create_pr(
        self,
        job_id: str,
        repo: RepoRef,
        credentials: GitCredentials | None,
        title: str,
        summary: str,
        verification_errors: list[str] | None = None,
    ) -> str:
        """Commit pending changes, push the job branch and return the PR link."""
        name = repo.folder_name
        worktree = self.worktrees.worktree_path(job_id, name)
        branch = branch_name(job_id, name)
        if not worktree.is_dir():
            raise PullRequestError(f"Worktree for {name} does not exist: {worktree}")
        if not credentials or not credentials.token:
            raise PullRequestError("A git token is required to create a pull request")

        add_all(worktree)
        if get_status(worktree):
            commit(worktree, f"{title}\n\nGenerated for job {job_id}.")
        else:
            logger.info("No changes to commit in %s", worktree)

        source = resolve_source_url(repo.url or repo.identifier)
        push(worktree, authenticated_url(source, credentials), branch)
        logger.info("Pushed %s for job %s", branch, job_id)

        body = format_pr_body(summary, verification_errors or [])
        client = self._http_client or get_client(credentials.token, self.api_url)
        try:
            return create_pull_request(client, repo.identifier, branch, repo.branch, title, body)
        except GitHubError as e:
            raise PullRequestError(str(e)) from e
        finally:
            if self._http_client is None:
                client.close()
