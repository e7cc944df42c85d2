"""Slack Web API integration."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
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
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_wave_summary(summary: dict) -> list[dict]:
    """Format a completed wave as Slack blocks."""
    lines = []
    for item in summary.get("items", []):
        emoji = ":white_check_mark:" if item["status"] == "closed" else ":warning:"
        lines.append(f"{emoji} *{item['title']}* (`{item['id']}`)")

    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":checkered_flag: *Wave Complete*\n"
                    f"Merged: *{summary.get('merged', 0)}* | Failed: *{summary.get('failed', 0)}*\n"
                    f"Files: {summary.get('files_changed', 0)} | "
                    f"+{summary.get('insertions', 0)} / -{summary.get('deletions', 0)}"
                ),
            },
        }
    ]
    if lines:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}})
    if summary.get("next_steps"):
        steps = "\n".join(f"• {s}" for s in summary["next_steps"])
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": steps}]})
    return blocks


def format_gate_report(item_id: str, results: list[dict]) -> list[dict]:
    """Format an item's gate outcomes as Slack blocks."""
    state_emoji = {
        "passed": ":white_check_mark:",
        "failed": ":x:",
        "timed_out": ":hourglass:",
        "pending": ":white_circle:",
        "spawned": ":large_blue_circle:",
    }
    rows = [
        f"{state_emoji.get(r['state'], ':grey_question:')} `{r['type']}`: {r.get('summary') or r['state']}"
        for r in results
    ]
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":vertical_traffic_light: *Quality Gates* (`{item_id}`)\n" + "\n".join(rows),
            },
        }
    ]


def format_alerts(alerts: list[dict]) -> list[dict]:
    """Format worker monitor alerts as Slack blocks."""
    emoji = {
        "critical": ":rotating_light:",
        "warning": ":warning:",
        "stale": ":zzz:",
        "attention": ":raising_hand:",
    }
    text = "\n".join(f"{emoji.get(a['type'], ':bell:')} `{a['session']}`: {a['message']}" for a in alerts)
    return [{"type": "section", "text": {"type": "mrkdwn", "text": f":satellite: *Worker Alerts*\n{text}"}}]
