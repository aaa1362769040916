import asyncio
import json

import httpx
import pytest

from xivlog.discord_webhook import DiscordWebhookClient


def _run(client, text, **kw):
    async def go():
        try:
            return await client.post_text(text, **kw)
        finally:
            await client.aclose()

    return asyncio.run(go())


def test_disabled_without_url():
    client = DiscordWebhookClient("")
    assert not client.enabled
    assert _run(client, "hello") == 0


def test_long_text_is_chunked():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(204)

    client = DiscordWebhookClient(
        "https://discord.test/hook", post_delay_seconds=0, transport=httpx.MockTransport(handler)
    )
    text = "\n".join(["x" * 100] * 40)

    sent = _run(client, text, env="stage")

    assert sent == len(bodies) == 3
    assert bodies[0]["content"].startswith("[stage]\n")
    assert all(len(b["content"]) <= 1900 for b in bodies)
    assert bodies[0]["allowed_mentions"] == {"parse": []}


def test_server_error_is_retried_once(monkeypatch):
    async def no_sleep(_):
        return None

    monkeypatch.setattr(asyncio, "sleep", no_sleep)
    statuses = iter([500, 204])

    def handler(request):
        return httpx.Response(next(statuses))

    client = DiscordWebhookClient("https://discord.test/hook", transport=httpx.MockTransport(handler))
    assert _run(client, "hello") == 1


def test_client_error_is_raised():
    client = DiscordWebhookClient(
        "https://discord.test/hook", transport=httpx.MockTransport(lambda r: httpx.Response(400))
    )
    with pytest.raises(httpx.HTTPStatusError):
        _run(client, "hello")
