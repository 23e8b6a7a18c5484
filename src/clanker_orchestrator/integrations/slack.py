"""Slack notifications for clanker status changes."""

from dataclasses import dataclass

from clanker_orchestrator.config import Config
from clanker_orchestrator.db.models import Task


class SlackError(Exception):
    """Raised when a Slack notification cannot be sent."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


STATUS_EMOJI = {
    "not_started": ":white_circle:",
    "running": ":large_blue_circle:",
    "waiting": ":large_yellow_circle:",
    "done": ":white_check_mark:",
    "failed": ":x:",
    "merged": ":twisted_rightwards_arrows:",
}


def is_configured(config: Config) -> bool:
    return bool(config.slack_bot_token and config.slack_channel)


def get_client(config: Config):
    """WebClient for the configured bot token, or None without one."""
    if not config.slack_bot_token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=config.slack_bot_token)


def send_message(
    config: Config,
    text: str,
    blocks: list[dict] | None = None,
    channel: str | None = None,
) -> SlackMessage:
    """Post to ``channel``, defaulting to the configured notification channel."""
    channel = channel or config.slack_channel
    client = get_client(config)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")
    if not channel:
        raise SlackError("Slack not configured: CLANKER_SLACK_CHANNEL not set")

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_task_notification(
    project: str,
    task_id: int,
    title: str,
    status: str,
    cost: float = 0.0,
    pr_number: int | None = None,
) -> list[dict]:
    """Format a task status change as Slack blocks."""
    emoji = STATUS_EMOJI.get(status, ":grey_question:")
    pr = f" | PR #{pr_number}" if pr_number else ""

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Clanker Update*\n*{title}* (`{project}#{task_id}`)\n"
                    f"Status: *{status}* | Cost: ${cost:.2f}{pr}"
                ),
            },
        }
    ]


def notify_task_status(config: Config, task: Task) -> SlackMessage:
    blocks = format_task_notification(
        task.project, task.id, task.title, task.status, task.cost, task.pr_number
    )
    return send_message(config, f"Clanker {task.project}#{task.id} is {task.status}", blocks)
