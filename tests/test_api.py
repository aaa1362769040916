import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from xivlog.api_main import create_app
from xivlog.combatlog.models import STATUS_COMPLETED, STATUS_MISSING_END, PlayerStats
from xivlog.config import Settings
from xivlog.db import WINDOW_FAILED, WINDOW_SUCCEEDED, RosterMember, SegmentRecord

from tests.support import FakeDb

W = datetime(2024, 10, 8, 3, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return dataclasses.replace(
        Settings.from_env(),
        database_url="",
        aggregation_start_hour_jst=10,
        aggregation_end_hour_jst=10,
        environment="test",
    )


@pytest.fixture
def db():
    fake = FakeDb()
    fake.add_window(W, status=WINDOW_SUCCEEDED)
    fake.add_window(W + timedelta(hours=1), status=WINDOW_FAILED)
    fake.segments["a"] = SegmentRecord(
        segment_id="a",
        window_start=W,
        content="Dungeon A",
        start_time=W + timedelta(minutes=5),
        end_time=W + timedelta(minutes=15),
        ordinal=1,
        status=STATUS_COMPLETED,
        duration_ms=600_000,
        players=[PlayerStats("Alice", 60000, 100.0, 4, 1, 0, "PLD", "T")],
    )
    fake.segments["b"] = SegmentRecord(
        segment_id="b",
        window_start=W,
        content="Dungeon A",
        start_time=W + timedelta(minutes=30),
        end_time=None,
        ordinal=2,
        status=STATUS_MISSING_END,
        duration_ms=None,
    )
    return fake


@pytest.fixture
def client(db, settings):
    with TestClient(create_app(db=db, settings=settings)) as c:
        yield c


def test_root_and_healthz(client):
    assert client.get("/").json() == {"service": "xivlog-api", "env": "test", "ok": True}
    assert client.get("/healthz").json() == {"ok": True, "env": "test", "db": True}


def test_summary(client):
    r = client.get("/summary", params={"date": "2024-10-08"})
    assert r.status_code == 200
    body = r.json()
    assert body["date"] == "2024-10-08"
    assert [s["segment_id"] for s in body["segments"]] == ["a", "b"]
    assert body["segments"][0]["players"][0]["name"] == "Alice"
    assert body["segments"][0]["global_index"] == 1
    assert len(body["issues"]) == 1
    assert body["text"].startswith("📅 2024-10-08 の攻略履歴")


def test_summary_rejects_bad_date(client):
    r = client.get("/summary", params={"date": "2024/10/08"})
    assert r.status_code == 400


def test_dps_list_and_detail(client):
    listing = client.get("/dps", params={"date": "2024-10-08"}).json()
    assert "1. 「Dungeon A」 #1" in listing["text"]

    detail = client.get("/dps", params={"date": "2024-10-08", "index": 1}).json()
    assert detail["segment"]["segment_id"] == "a"
    assert "Alice 100 DPS" in detail["text"]

    assert client.get("/dps", params={"date": "2024-10-08", "index": 3}).status_code == 404
    assert client.get("/dps", params={"date": "2024-10-08", "index": 0}).status_code == 404


def test_windows_listing(client):
    body = client.get("/windows").json()
    assert [w["status"] for w in body["windows"]] == [WINDOW_FAILED, WINDOW_SUCCEEDED]

    failed = client.get("/windows", params={"status": "failed"}).json()
    assert len(failed["windows"]) == 1

    assert client.get("/windows", params={"status": "bogus"}).status_code == 400


def test_reset_window(client, db):
    failed_start = W + timedelta(hours=1)
    r = client.post("/windows/2024-10-08T04:00:00Z/reset")
    assert r.status_code == 200
    assert db.windows[failed_start].status == "pending"

    # succeeded windows cannot be reset
    assert client.post("/windows/2024-10-08T03:00:00Z/reset").status_code == 404
    assert client.post("/windows/2024-10-08T04:00:00/reset").status_code == 400


def test_roster_crud(client, db):
    r = client.put("/roster/g1/Taro%20%20Yamada", json={"job_code": " pld ", "emoji": ":shield:"})
    assert r.status_code == 200
    assert r.json()["member"]["name"] == "Taro Yamada"
    assert db.roster[("g1", "Taro Yamada")] == RosterMember("g1", "Taro Yamada", "PLD", ":shield:", None)

    db.roster[("g2", "Other")] = RosterMember("g2", "Other")
    members = client.get("/roster/g1").json()["members"]
    assert [m["name"] for m in members] == ["Taro Yamada"]

    assert client.delete("/roster/g1/Taro%20Yamada").status_code == 200
    assert client.delete("/roster/g1/Taro%20Yamada").status_code == 404
    assert client.put("/roster/g1/%20", json={}).status_code == 400


def test_data_routes_need_a_database(settings):
    with TestClient(create_app(settings=settings)) as c:
        assert c.get("/healthz").json()["db"] is False
        assert c.get("/summary").status_code == 503
        assert c.get("/windows").status_code == 503
        assert c.get("/roster/g1").status_code == 503
