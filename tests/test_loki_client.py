import asyncio
import dataclasses
from datetime import timedelta

import httpx
import pytest

from xivlog.config import Settings
from xivlog.loki_client import LokiClient, LokiQueryError, build_query, normalize_line

from tests.support import T0, ns_at


def _settings(monkeypatch, **overrides):
    for key in ("LOKI_QUERY_LIMIT", "LOKI_CHUNK_HARD_LIMIT", "LOKI_QUERY_FILTER", "LOKI_BASE_URL"):
        monkeypatch.delenv(key, raising=False)
    base = Settings.from_env()
    return dataclasses.replace(base, loki_base_url="http://loki.test", **overrides)


def _payload(*streams):
    return {
        "status": "success",
        "data": {
            "resultType": "streams",
            "result": [{"stream": labels, "values": values} for labels, values in streams],
        },
    }


def test_normalize_line():
    assert normalize_line('line="00|a|b"') == "00|a|b"
    assert normalize_line('"line=00|a"') == "00|a"
    assert normalize_line("00|plain") == "00|plain"
    assert normalize_line('"') == '"'


def test_build_query():
    base = '{job="ffxiv"}'
    assert build_query(base, "") == base
    assert build_query(base, 'の攻略を"開始"') == '{job="ffxiv"} |~ "の攻略を\\"開始\\""'
    assert build_query(base, '| json | actor != ""') == '{job="ffxiv"} | json | actor != ""'


def test_pages_dedups_and_sorts(monkeypatch):
    settings = _settings(monkeypatch, loki_query_limit=2, loki_chunk_hard_limit=10, loki_query_filter="攻略")
    start, end = T0, T0 + timedelta(minutes=1)
    labels_a = {"job": "ffxiv", "host": "a"}
    labels_b = {"job": "ffxiv", "host": "b"}
    seen_params = []

    def handler(request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        seen_params.append(params)
        cursor = int(params["start"])
        if cursor == ns_at(0):
            return httpx.Response(
                200,
                json=_payload(
                    (labels_a, [[str(ns_at(2)), 'line="00|second"']]),
                    (labels_b, [[str(ns_at(1)), "00|first"]]),
                ),
            )
        if cursor == ns_at(2) + 1:
            return httpx.Response(
                200,
                json=_payload(
                    (labels_a, [[str(ns_at(5)), "00|third"], [str(ns_at(5)), "00|third"]]),
                ),
            )
        return httpx.Response(200, json=_payload())

    async def go():
        client = LokiClient(settings, transport=httpx.MockTransport(handler))
        try:
            return await client.query_logs_in_range(start, end)
        finally:
            await client.aclose()

    entries = asyncio.run(go())

    assert [e.normalized_text for e in entries] == ["00|first", "00|second", "00|third"]
    assert entries[0].labels == labels_b
    assert len(seen_params) == 3
    assert seen_params[0]["direction"] == "FORWARD"
    assert seen_params[0]["limit"] == "2"
    assert seen_params[0]["end"] == str(ns_at(60))
    assert seen_params[0]["query"].endswith('|~ "攻略"')
    assert seen_params[2]["start"] == str(ns_at(5) + 1)


def test_same_line_from_different_streams_is_kept(monkeypatch):
    settings = _settings(monkeypatch, loki_query_limit=100)

    def handler(request):
        return httpx.Response(
            200,
            json=_payload(
                ({"host": "a"}, [[str(ns_at(1)), "00|x"]]),
                ({"host": "b"}, [[str(ns_at(1)), "00|x"]]),
            ),
        )

    async def go():
        async with LokiClient(settings, transport=httpx.MockTransport(handler)) as client:
            return await client.query_logs_in_range(T0, T0 + timedelta(seconds=10))

    assert len(asyncio.run(go())) == 2


def test_page_limit_is_capped_by_hard_limit(monkeypatch):
    settings = _settings(monkeypatch, loki_query_limit=5000, loki_chunk_hard_limit=3)
    limits = []

    def handler(request):
        limits.append(request.url.params["limit"])
        return httpx.Response(200, json={"data": {"result": []}})

    async def go():
        async with LokiClient(settings, transport=httpx.MockTransport(handler)) as client:
            return await client.query_logs_in_range(T0, T0 + timedelta(seconds=10))

    assert asyncio.run(go()) == []
    assert limits == ["3"]


def test_http_error_raises(monkeypatch):
    settings = _settings(monkeypatch)

    def handler(request):
        return httpx.Response(500, text="boom")

    async def go():
        async with LokiClient(settings, transport=httpx.MockTransport(handler)) as client:
            await client.query_logs_in_range(T0, T0 + timedelta(seconds=10))

    with pytest.raises(LokiQueryError) as exc:
        asyncio.run(go())
    assert exc.value.status_code == 500


def test_transport_errors_are_retried_then_propagated(monkeypatch):
    settings = _settings(monkeypatch)
    calls = {"n": 0}

    def flaky(request):
        calls["n"] += 1
        if calls["n"] < 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json=_payload(({"host": "a"}, [[str(ns_at(1)), "00|ok"]])))

    async def go(handler):
        async with LokiClient(settings, transport=httpx.MockTransport(handler), backoff_seconds=0) as client:
            return await client.query_logs_in_range(T0, T0 + timedelta(seconds=10))

    assert [e.normalized_text for e in asyncio.run(go(flaky))] == ["00|ok"]
    assert calls["n"] == 3

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(httpx.ConnectError):
        asyncio.run(go(down))
