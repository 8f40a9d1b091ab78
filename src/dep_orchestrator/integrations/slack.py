"""Slack notifications for finished scheduled jobs."""

import logging
from dataclasses import dataclass

from dep_orchestrator.db.models import JobResult, ScheduledJob

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Slack WebClient for a bot token, or None when no token is configured."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Post to a channel. Slack API failures surface as SlackError."""
    from slack_sdk.errors import SlackApiError

    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"chat.postMessage failed: {e.response.get('error', e)}") from e
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_job_result(job: ScheduledJob, result: JobResult) -> list[dict]:
    """Format a scheduled job outcome as Slack blocks."""
    emoji = ":white_check_mark:" if result.success else ":x:"
    status = "succeeded" if result.success else "failed"
    lines = [f"{emoji} *Scheduled update {status}*: *{job.repo_name}* (`{job.id}`)"]

    if result.updated_packages:
        lines.append(f"Updated: {', '.join(result.updated_packages)}")
    if result.tests_passed is not None:
        lines.append(f"Tests: {'passed' if result.tests_passed else 'failed'}")
    if result.pr_url:
        lines.append(f"<{result.pr_url}|View Pull Request>")
    if result.error:
        lines.append(f"Error: {result.error[:200]}")

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]


class SlackJobNotifier:
    """Scheduler observer that posts finished jobs to a channel (best-effort)."""

    def __init__(self, token: str | None, channel: str | None):
        self.token = token
        self.channel = channel

    def job_started(self, job: ScheduledJob):
        pass

    def job_finished(self, job: ScheduledJob, result: JobResult):
        if not self.token or not self.channel:
            return
        try:
            blocks = format_job_result(job, result)
            send_message(self.token, self.channel, blocks[0]["text"]["text"], blocks=blocks)
        except Exception:
            logger.exception("Failed to send Slack notification for job %s", job.id)
