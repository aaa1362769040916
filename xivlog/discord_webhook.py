from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from xivlog.summary import DISCORD_MESSAGE_LIMIT, chunk_message

logger = logging.getLogger("xivlog")


class DiscordWebhookClient:
    def __init__(
        self,
        webhook_url: str,
        *,
        post_delay_seconds: float = 0.8,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._webhook_url = (webhook_url or "").strip()
        # Discord is best-effort; fail fast if unreachable.
        timeout = httpx.Timeout(12.0, connect=4.0)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        self._client = httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)
        self._post_delay_seconds = float(post_delay_seconds or 0.0)

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, payload: Dict[str, Any]) -> None:
        last_exc: Exception | None = None
        for attempt in range(2):
            try:
                resp = await self._client.post(self._webhook_url, json=payload)
                resp.raise_for_status()
                return
            except httpx.RequestError as e:
                last_exc = e
                await asyncio.sleep(0.5 * (2**attempt))
            except httpx.HTTPStatusError as e:
                last_exc = e
                status = e.response.status_code
                if 500 <= status < 600 and attempt == 0:
                    await asyncio.sleep(0.5)
                    continue
                break

        raise last_exc if last_exc else RuntimeError("Discord webhook post failed")

    async def post_text(self, content: str, *, env: str = "") -> int:
        """Post ``content`` as one or more plain messages. Returns the number of messages sent."""
        if not self._webhook_url:
            logger.debug("Discord webhook not configured; skipping post")
            return 0

        text = f"[{env}]\n{content}" if env else content
        chunks = chunk_message(text, DISCORD_MESSAGE_LIMIT)
        for i, chunk in enumerate(chunks):
            if i and self._post_delay_seconds > 0:
                await asyncio.sleep(self._post_delay_seconds)
            await self._post({"content": chunk, "allowed_mentions": {"parse": []}})

        logger.info("Posted %d Discord message(s)", len(chunks))
        return len(chunks)
