"""GitHub REST API integration for pull requests."""

import logging

import httpx

logger = logging.getLogger(__name__)


class GitHubError(Exception):
    """Raised when a GitHub API call fails."""


def get_client(token: str, api_url: str = "https://api.github.com", timeout: float = 30.0) -> httpx.Client:
    return httpx.Client(
        base_url=api_url,
        headers={
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json",
        },
        timeout=timeout,
    )


def create_pull_request(
    client: httpx.Client,
    identifier: str,
    head: str,
    base: str,
    title: str,
    body: str,
) -> str:
    """Open a pull request and return its html_url.

    If GitHub reports that a PR for head already exists, that PR's URL is
    returned instead.
    """
    owner, _, repo = identifier.partition("/")
    if not owner or not repo:
        raise GitHubError(f"Invalid repository identifier: {identifier}. Expected owner/repo")

    try:
        response = client.post(
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
    except httpx.HTTPError as e:
        raise GitHubError(f"Failed to reach GitHub: {e}") from e

    if response.status_code == 422 and "already exists" in response.text:
        existing = find_open_pull_request(client, identifier, head)
        if existing:
            logger.info("Pull request for %s already exists: %s", head, existing)
            return existing

    if response.status_code >= 400:
        raise GitHubError(f"Failed to create PR ({response.status_code}): {response.text}")
    return response.json()["html_url"]


def find_open_pull_request(client: httpx.Client, identifier: str, head: str) -> str | None:
    owner, _, repo = identifier.partition("/")
    response = client.get(
        f"/repos/{owner}/{repo}/pulls",
        params={"head": f"{owner}:{head}", "state": "open"},
    )
    if response.status_code >= 400:
        return None
    pulls = response.json()
    return pulls[0]["html_url"] if pulls else None
