"""Tests for experiment winner notifications."""

import json

import httpx
import pytest

from postpilot.config import NotificationsConfig
from postpilot.services.notification_service import (
    WinnerNotification,
    build_winner_embed,
    send_winner_notification,
)


WEBHOOK_URL = "https://discord.test/api/webhooks/1/token"


@pytest.fixture
def notification() -> WinnerNotification:
    return WinnerNotification(
        experiment_id=7,
        experiment_name="Weekly digest",
        winner_label="Your week in AI",
        confidence_level=95,
        rate_difference=8.0,
    )


@pytest.fixture
def make_config(test_settings):
    def _config(**overrides) -> NotificationsConfig:
        data = {"enabled": True, "mention": "", "max_attempts": 2}
        data.update(overrides)
        return NotificationsConfig(data, test_settings)

    return _config


def _client(*statuses: int, requests: list | None = None) -> httpx.AsyncClient:
    """Client whose webhook answers with the given statuses in order (last repeats)."""
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(status)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_embed_contents(notification):
    embed = build_winner_embed(notification)

    assert embed["title"] == "Subject line test complete: Weekly digest"
    assert "Your week in AI" in embed["description"]
    assert embed["fields"][0]["value"] == "95%"
    assert embed["fields"][1]["value"] == "+8.00 pts"
    assert embed["footer"]["text"] == "Experiment #7"


async def test_disabled(notification, make_config):
    requests: list = []
    async with _client(204, requests=requests) as client:
        sent = await send_winner_notification(notification, make_config(enabled=False), client)

    assert sent is False
    assert requests == []


async def test_missing_webhook_url(notification, test_settings):
    config = NotificationsConfig({}, test_settings.model_copy(update={"discord_webhook_url": ""}))

    assert await send_winner_notification(notification, config) is False


async def test_posts_embed(notification, make_config):
    requests: list = []
    async with _client(204, requests=requests) as client:
        sent = await send_winner_notification(notification, make_config(mention="@here"), client)

    assert sent is True
    assert len(requests) == 1
    assert str(requests[0].url) == WEBHOOK_URL
    payload = json.loads(requests[0].content)
    assert payload["content"] == "@here"
    assert payload["embeds"][0]["footer"]["text"] == "Experiment #7"


async def test_client_error_not_retried(notification, make_config):
    requests: list = []
    async with _client(400, requests=requests) as client:
        sent = await send_winner_notification(notification, make_config(), client)

    assert sent is False
    assert len(requests) == 1


async def test_server_error_retried(notification, make_config):
    requests: list = []
    async with _client(503, 204, requests=requests) as client:
        sent = await send_winner_notification(notification, make_config(), client)

    assert sent is True
    assert len(requests) == 2


async def test_gives_up_after_max_attempts(notification, make_config):
    requests: list = []
    async with _client(503, requests=requests) as client:
        sent = await send_winner_notification(notification, make_config(), client)

    assert sent is False
    assert len(requests) == 2


async def test_transport_error(notification, make_config):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sent = await send_winner_notification(notification, make_config(max_attempts=1), client)

    assert sent is False
