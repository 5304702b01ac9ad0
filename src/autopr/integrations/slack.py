"""Posting job results to a Slack channel."""

import logging

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when Slack rejects a message."""


def format_job_notification(
    job_id: str,
    status: str,
    pr_links: list[str],
    error: str | None = None,
) -> list[dict]:
    """Render a finished job as a single mrkdwn section block."""
    emoji = ":white_check_mark:" if status == "completed" else ":x:"
    text = f"{emoji} *Job {status}* (`{job_id}`)"
    if pr_links:
        text += "\n" + "\n".join(f"<{link}|View Pull Request>" for link in pr_links)
    if error:
        text += f"\nError: {error[:300]}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackNotifier:
    """Callable that posts a WorkflowResult to one channel.

    slack_sdk is imported on first use so the control plane runs without it
    when notifications are off.
    """

    def __init__(self, token: str, channel: str, client=None):
        if client is None:
            from slack_sdk import WebClient

            client = WebClient(token=token)
        self.client = client
        self.channel = channel

    def post(self, text: str, blocks: list[dict] | None = None) -> str:
        """Post a message and return its Slack timestamp."""
        from slack_sdk.errors import SlackApiError

        try:
            response = self.client.chat_postMessage(channel=self.channel, text=text, blocks=blocks)
        except SlackApiError as e:
            raise SlackError(f"Posting to {self.channel} failed: {e.response.get('error', e)}") from e
        return response["ts"]

    def __call__(self, result) -> None:
        blocks = format_job_notification(
            result.job_id, result.status, result.pr_links, result.error_summary
        )
        ts = self.post(f"Job {result.job_id} {result.status}", blocks=blocks)
        logger.debug("Notified %s about job %s (ts=%s)", self.channel, result.job_id, ts)


def make_job_notifier(token: str | None, channel: str | None) -> SlackNotifier | None:
    """A notifier for finished workflows, or None when Slack is not configured."""
    if not token or not channel:
        return None
    return SlackNotifier(token, channel)
