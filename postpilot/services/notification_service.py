"""
Discord notifications for completed subject line experiments.

Uses a Discord webhook so no bot process is needed. Notification failures
never affect experiment state: the winner is already committed when a
notification is sent.
"""

from dataclasses import dataclass

import backoff
import httpx

from postpilot.config import NotificationsConfig, get_config
from postpilot.core.logging import get_logger

logger = get_logger(__name__)

WINNER_COLOR = 0x2ECC71  # Green

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class WinnerNotification:
    """Announcement of an experiment winner."""

    experiment_id: int
    experiment_name: str
    winner_label: str
    confidence_level: int
    rate_difference: float  # percentage points over the runner-up


def build_winner_embed(notification: WinnerNotification) -> dict:
    """Build the Discord embed announcing an experiment winner."""
    return {
        "title": f"Subject line test complete: {notification.experiment_name}",
        "description": f"Winner: **{notification.winner_label}**",
        "color": WINNER_COLOR,
        "fields": [
            {
                "name": "Confidence",
                "value": f"{notification.confidence_level}%",
                "inline": True,
            },
            {
                "name": "Open rate lift",
                "value": f"+{notification.rate_difference:.2f} pts",
                "inline": True,
            },
        ],
        "footer": {"text": f"Experiment #{notification.experiment_id}"},
    }


async def _post_webhook(client: httpx.AsyncClient, url: str, payload: dict) -> httpx.Response:
    resp = await client.post(url, json=payload)
    if resp.status_code in RETRYABLE_STATUS_CODES:
        resp.raise_for_status()
    return resp


async def send_winner_notification(
    notification: WinnerNotification,
    config: NotificationsConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """
    Post an experiment winner to the Discord webhook.

    Transport errors, 429 and 5xx responses are retried with exponential
    backoff; other non-2xx responses fail immediately.

    Args:
        notification: Winner details
        config: Notification settings (defaults to config.yml / environment)
        client: HTTP client to reuse; a short-lived one is created otherwise

    Returns:
        True if Discord accepted the message, False otherwise
    """
    config = config or get_config().notifications

    if not config.enabled:
        logger.debug("experiment_notifications_disabled")
        return False

    if not config.webhook_url:
        logger.warning("discord_webhook_url_not_set")
        return False

    payload: dict = {"embeds": [build_winner_embed(notification)]}
    if config.mention:
        payload["content"] = config.mention

    post = backoff.on_exception(
        backoff.expo,
        (httpx.TransportError, httpx.HTTPStatusError),
        max_tries=max(config.max_attempts, 1),
        max_time=60,
    )(_post_webhook)

    try:
        if client is not None:
            resp = await post(client, config.webhook_url, payload)
        else:
            async with httpx.AsyncClient(timeout=10.0) as own_client:
                resp = await post(own_client, config.webhook_url, payload)
    except httpx.HTTPStatusError as e:
        logger.bind(
            experiment_id=notification.experiment_id,
            status=e.response.status_code,
        ).error("experiment_notification_failed")
        return False
    except httpx.TransportError as e:
        logger.bind(
            experiment_id=notification.experiment_id,
            error=str(e),
        ).error("experiment_notification_failed")
        return False

    if resp.status_code not in (200, 204):
        logger.bind(
            experiment_id=notification.experiment_id,
            status=resp.status_code,
            body=resp.text[:500],
        ).error("experiment_notification_failed")
        return False

    logger.bind(
        experiment_id=notification.experiment_id,
        winner=notification.winner_label,
    ).info("experiment_notification_sent")
    return True
