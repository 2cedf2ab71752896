"""
Notifications — Slack webhook integration for pipeline events.

Notification failure never blocks a job.
"""
import logging
import requests

from visibility.config import SLACK_WEBHOOK_URL

logger = logging.getLogger('services.notifications')


def notify_pipeline_complete(pipeline: dict, summary: dict):
    """Post pipeline completion summary to Slack."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"Visibility Pipeline Completed: {pipeline['brand_id']}",
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Profile:* {pipeline['profile']}"},
                    {"type": "mrkdwn", "text": f"*Score:* {summary.get('score', 'n/a')}"},
                    {"type": "mrkdwn", "text": f"*Samples:* {summary.get('totalSamples', 0)}"},
                    {"type": "mrkdwn", "text": f"*Mention rate:* {summary.get('mentionRate', 0):.0%}"},
                ]
            },
        ]

        cost = summary.get('costIncurred') or 0
        if cost > 0:
            blocks.append({
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"Sampling cost: ~${cost:.2f}"}]
            })

        requests.post(SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)
        logger.info("Pipeline %s completion notification sent", pipeline['id'][:8])

    except Exception:
        logger.error("Failed to send notification for pipeline %s", pipeline['id'][:8], exc_info=True)


def notify_pipeline_failed(pipeline: dict, stage: str, error: str):
    """Post pipeline failure alert to Slack."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"Visibility Pipeline FAILED: {pipeline['brand_id']}",
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Stage:* {stage or 'unknown'}"},
                    {"type": "mrkdwn", "text": f"*Profile:* {pipeline['profile']}"},
                ]
            },
        ]

        if error:
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:* ```{error[:500]}```"}
            })

        requests.post(SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)
        logger.info("Pipeline %s failure notification sent", pipeline['id'][:8])

    except Exception:
        logger.error("Failed to send failure notification for pipeline %s", pipeline['id'][:8], exc_info=True)
