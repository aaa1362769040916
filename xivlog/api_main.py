# api_main.py
# FastAPI service for xivlog
# - Daily summary / DPS views over persisted segments
# - Aggregation window inspection and operator reset
# - Roster registry maintenance

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from xivlog.combatlog.models import PlayerStats
from xivlog.combatlog.selftest import run_parser_selftest
from xivlog.config import Settings
from xivlog.db import WINDOW_STATUSES, AggregationWindow, Db, RosterMember, StoredSegment
from xivlog.summary import (
    format_dps_detail_message,
    format_dps_list_message,
    format_summary_message,
    load_daily_summary,
)

logger = logging.getLogger("xivlog")


# ---------- models ----------
class RosterMemberIn(BaseModel):
    job_code: Optional[str] = None
    emoji: Optional[str] = None
    owner_id: Optional[str] = None


# ---------- serializers ----------
def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _player_json(p: PlayerStats) -> Dict[str, Any]:
    return {
        "name": p.name,
        "total_damage": p.total_damage,
        "dps": p.dps,
        "hits": p.hits,
        "critical_hits": p.critical_hits,
        "direct_hits": p.direct_hits,
        "job_code": p.job_code,
        "role": p.role,
    }


def _segment_json(seg: StoredSegment, index: int) -> Dict[str, Any]:
    return {
        "segment_id": seg.segment_id,
        "global_index": index,
        "ordinal": seg.ordinal,
        "content": seg.content,
        "start": _iso(seg.start_time),
        "end": _iso(seg.end_time),
        "status": seg.status,
        "duration_ms": seg.duration_ms,
        "presence_resolved": seg.presence_resolved,
        "players": [_player_json(p) for p in seg.players],
        "participants": list(seg.participants),
    }


def _window_json(w: AggregationWindow) -> Dict[str, Any]:
    return {
        "window_start": _iso(w.window_start),
        "window_end": _iso(w.window_end),
        "status": w.status,
        "attempt": w.attempt,
        "last_error": w.last_error,
        "updated_at": _iso(w.updated_at),
    }


def _roster_json(m: RosterMember) -> Dict[str, Any]:
    return {
        "guild_id": m.guild_id,
        "name": m.name,
        "job_code": m.job_code,
        "emoji": m.emoji,
        "owner_id": m.owner_id,
    }


# ---------- app ----------
def create_app(*, db: Optional[Db] = None, settings: Optional[Settings] = None) -> FastAPI:
    cfg = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        run_parser_selftest()
        owned: Optional[Db] = None
        if db is not None:
            app.state.db = db
        elif cfg.database_url:
            owned = Db(cfg.database_url)
            await owned.start()
            app.state.db = owned
        else:
            logger.warning("DATABASE_URL not set; data routes will return 503")
            app.state.db = None
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()

    app = FastAPI(title="xivlog API", version="1.0.0", lifespan=lifespan)
    app.state.settings = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _db(request: Request) -> Db:
        current = getattr(request.app.state, "db", None)
        if current is None:
            raise HTTPException(status_code=503, detail="Database not configured")
        return current

    async def _summary(request: Request, date: Optional[str]):
        try:
            return await load_daily_summary(
                _db(request),
                date,
                start_hour_jst=cfg.aggregation_start_hour_jst,
                end_hour_jst=cfg.aggregation_end_hour_jst,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    # ---------- routes ----------
    @app.get("/")
    async def root():
        return {"service": "xivlog-api", "env": cfg.environment, "ok": True}

    @app.get("/healthz")
    async def healthz(request: Request):
        return {"ok": True, "env": cfg.environment, "db": getattr(request.app.state, "db", None) is not None}

    @app.get("/summary")
    async def summary(request: Request, date: Optional[str] = None):
        s = await _summary(request, date)
        return {
            "date": s.date,
            "available_dates": s.available_dates,
            "issues": s.issues,
            "segments": [_segment_json(seg, i) for i, seg in enumerate(s.segments, start=1)],
            "text": format_summary_message(s),
        }

    @app.get("/dps")
    async def dps(request: Request, date: Optional[str] = None, index: Optional[int] = None):
        s = await _summary(request, date)
        if index is None:
            return {"date": s.date, "text": format_dps_list_message(s.date, s.segments)}
        if index < 1 or index > len(s.segments):
            raise HTTPException(status_code=404, detail=f"No segment #{index} on {s.date}")
        seg = s.segments[index - 1]
        return {
            "date": s.date,
            "segment": _segment_json(seg, index),
            "text": format_dps_detail_message(seg, s.date),
        }

    @app.get("/windows")
    async def windows(request: Request, status: Optional[str] = None, limit: int = 100):
        if status is not None and status not in WINDOW_STATUSES:
            raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(WINDOW_STATUSES)}")
        rows: List[AggregationWindow] = await _db(request).list_windows(status=status, limit=max(1, min(limit, 1000)))
        return {"windows": [_window_json(w) for w in rows]}

    @app.post("/windows/{window_start}/reset")
    async def reset_window(request: Request, window_start: datetime):
        if window_start.tzinfo is None:
            raise HTTPException(status_code=400, detail="window_start must include a UTC offset")
        if not await _db(request).reset_window(window_start):
            raise HTTPException(status_code=404, detail="No failed or in-progress window at that start")
        logger.info("Window %s reset to pending via API", window_start.isoformat())
        return {"ok": True, "window_start": _iso(window_start)}

    @app.get("/roster/{guild_id}")
    async def list_roster(request: Request, guild_id: str):
        members = await _db(request).list_roster([guild_id])
        return {"guild_id": guild_id, "members": [_roster_json(m) for m in members]}

    @app.put("/roster/{guild_id}/{name}")
    async def upsert_roster(request: Request, guild_id: str, name: str, payload: RosterMemberIn = Body(...)):
        clean = " ".join(name.split())
        if not clean:
            raise HTTPException(status_code=400, detail="name must not be blank")
        member = RosterMember(
            guild_id=guild_id,
            name=clean,
            job_code=(payload.job_code or "").strip().upper() or None,
            emoji=payload.emoji,
            owner_id=payload.owner_id,
        )
        await _db(request).upsert_roster_member(member)
        return {"ok": True, "member": _roster_json(member)}

    @app.delete("/roster/{guild_id}/{name}")
    async def delete_roster(request: Request, guild_id: str, name: str):
        if not await _db(request).delete_roster_member(guild_id, name):
            raise HTTPException(status_code=404, detail="Roster member not found")
        return {"ok": True}

    return app


app = create_app()


# ---------- uvicorn entry ----------
if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("xivlog.api_main:app", host="0.0.0.0", port=port, reload=False)
