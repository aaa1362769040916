from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from xivlog.combatlog.models import RawLogEntry, datetime_to_ns
from xivlog.config import Settings

logger = logging.getLogger("xivlog")

QUERY_RANGE_PATH = "/loki/api/v1/query_range"

# Bounded retry for transport errors; HTTP error statuses are not retried.
MAX_ATTEMPTS = 3


class LokiQueryError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def normalize_line(raw: str) -> str:
    line = raw or ""
    if line.startswith("line="):
        line = line[5:]
    if len(line) >= 2 and line.startswith('"') and line.endswith('"'):
        line = line[1:-1]
    if line.startswith("line="):
        line = line[5:]
    return line


def build_query(base: str, query_filter: str = "") -> str:
    """Append a line filter to the base LogQL selector.

    A filter that already starts with ``|`` is a pipeline stage and goes in
    as-is; anything else becomes a regex line match.
    """
    q = (base or "").strip()
    f = (query_filter or "").strip()
    if not f:
        return q
    if f.startswith("|"):
        return f"{q} {f}"
    escaped = f.replace("\\", "\\\\").replace('"', '\\"')
    return f'{q} |~ "{escaped}"'


def _label_key(labels: Dict[str, str]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted(labels.items()))


class LokiClient:
    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_seconds: float = 0.5,
    ) -> None:
        self._base_url = settings.loki_base_url.rstrip("/")
        self._query = build_query(settings.loki_query, settings.loki_query_filter)
        self._page_limit = settings.loki_page_limit
        self._debug = settings.loki_debug
        self._backoff_seconds = backoff_seconds
        timeout = httpx.Timeout(settings.loki_timeout_seconds, connect=min(settings.loki_timeout_seconds, 5.0))
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def query(self) -> str:
        return self._query

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LokiClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def _get_page(self, params: Dict[str, Any]) -> Dict[str, Any]:
        last_exc: Exception | None = None
        for attempt in range(MAX_ATTEMPTS):
            try:
                resp = await self._client.get(QUERY_RANGE_PATH, params=params)
            except httpx.RequestError as e:
                last_exc = e
                logger.warning("Loki request failed (attempt %d/%d): %s", attempt + 1, MAX_ATTEMPTS, e)
                if attempt + 1 < MAX_ATTEMPTS:
                    await asyncio.sleep(self._backoff_seconds * (2**attempt))
                continue

            if resp.status_code >= 400:
                if self._debug:
                    logger.debug("Loki error body: %s", resp.text[:2000])
                raise LokiQueryError(
                    f"Loki query failed: {resp.status_code} {resp.reason_phrase}",
                    status_code=resp.status_code,
                )
            return resp.json()

        raise last_exc if last_exc else LokiQueryError("Loki query failed")

    async def query_logs_in_range(self, start: datetime, end: datetime) -> List[RawLogEntry]:
        """All lines in ``[start, end]``, deduplicated and sorted by timestamp.

        Pages forward from the last timestamp seen (+1ns) until a page comes
        back short of the page limit.
        """
        start_ns = datetime_to_ns(start)
        end_ns = datetime_to_ns(end)

        entries: List[RawLogEntry] = []
        seen: Set[Tuple[Any, int, str]] = set()
        cursor = start_ns
        pages = 0

        while cursor <= end_ns:
            params = {
                "query": self._query,
                "start": str(cursor),
                "end": str(end_ns),
                "direction": "FORWARD",
                "limit": str(self._page_limit),
            }
            if self._debug:
                logger.debug("Loki fetch start=%s end=%s limit=%s", cursor, end_ns, self._page_limit)

            payload = await self._get_page(params)
            pages += 1

            streams = ((payload or {}).get("data") or {}).get("result") or []
            row_count = 0
            max_ts: Optional[int] = None
            for stream in streams:
                labels = {str(k): str(v) for k, v in (stream.get("stream") or {}).items()}
                label_key = _label_key(labels)
                for value in stream.get("values") or []:
                    if len(value) < 2:
                        continue
                    row_count += 1
                    ts = int(value[0])
                    if max_ts is None or ts > max_ts:
                        max_ts = ts
                    text = normalize_line(str(value[1]))
                    key = (label_key, ts, text)
                    if key in seen:
                        continue
                    seen.add(key)
                    entries.append(RawLogEntry(timestamp_ns=ts, normalized_text=text, labels=labels))

            if row_count < self._page_limit or max_ts is None:
                break
            cursor = max_ts + 1

        entries.sort(key=lambda e: e.timestamp_ns)
        logger.info("Loki returned %d entries in %d page(s) for [%s, %s]", len(entries), pages, start, end)
        return entries
