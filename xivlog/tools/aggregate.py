#!/usr/bin/env python3
"""One-shot batch jobs against the xivlog database.

Examples:
  python -m xivlog.tools.aggregate windows --max-windows 12
  python -m xivlog.tools.aggregate roster --max-segments 50 --guild 1286835166471262249
  python -m xivlog.tools.aggregate summary --date 2024-10-08 --post
  python -m xivlog.tools.aggregate reset-window 2024-10-08T01:00:00+00:00

Connection and tuning settings come from the environment (DATABASE_URL, LOKI_*, ...).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta
from typing import List, Optional

from xivlog.aggregation import ensure_aggregation_windows, process_pending_windows
from xivlog.analyzer import CombatAnalyzer, parse_target_date
from xivlog.combatlog.abilities import AbilityJobMap
from xivlog.config import Settings
from xivlog.db import Db
from xivlog.discord_webhook import DiscordWebhookClient
from xivlog.loki_client import LokiClient
from xivlog.roster_presence import process_roster_presence
from xivlog.summary import format_summary_message, load_daily_summary

logger = logging.getLogger("xivlog")


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1: {value!r}")
    return n


def _date_arg(value: str) -> str:
    try:
        parse_target_date(value)
    except ValueError:
        raise argparse.ArgumentTypeError("date must be in YYYY-MM-DD format")
    return value


def _window_arg(value: str) -> datetime:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}")
    if dt.tzinfo is None:
        raise argparse.ArgumentTypeError("timestamp must include a UTC offset")
    return dt


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="xivlog-aggregate")
    sub = p.add_subparsers(dest="command", required=True)

    w = sub.add_parser("windows", help="Create missing hour windows and process pending ones")
    w.add_argument("--max-windows", type=_positive_int, default=None, help="Stop after this many windows")

    r = sub.add_parser("roster", help="Resolve roster presence for unresolved segments")
    r.add_argument("--max-segments", type=_positive_int, default=None, help="Segments per run")
    r.add_argument("--guild", action="append", default=None, help="Guild id filter (repeatable)")

    s = sub.add_parser("summary", help="Print (and optionally post) the daily summary")
    s.add_argument("--date", type=_date_arg, default=None, help="YYYY-MM-DD (default: previous JST day)")
    s.add_argument("--post", action="store_true", help="Post to ALERT_DISCORD_WEBHOOK_URL")

    rw = sub.add_parser("reset-window", help="Put a failed window back to pending")
    rw.add_argument("window_start", type=_window_arg, help="Window start, e.g. 2024-10-08T01:00:00Z")

    return p


async def _run_windows(db: Db, settings: Settings, max_windows: Optional[int]) -> None:
    buffer = timedelta(minutes=settings.aggregation_buffer_minutes)
    await ensure_aggregation_windows(db, backfill_hours=settings.aggregation_backfill_hours, buffer=buffer)

    ability_jobs = AbilityJobMap.load_from_dir(settings.ability_definitions_dir or None)
    async with LokiClient(settings) as loki:
        analyzer = CombatAnalyzer(loki, ability_jobs)
        result = await process_pending_windows(
            db,
            analyzer.analyze_logs_between,
            max_windows=max_windows if max_windows is not None else settings.aggregation_max_windows,
            buffer=buffer,
        )
    logger.info("Window aggregation finished: processed=%d failed=%d", result.processed, result.failed)


async def _run_roster(db: Db, settings: Settings, max_segments: Optional[int], guilds: Optional[List[str]]) -> None:
    result = await process_roster_presence(
        db,
        backfill_hours=settings.roster_backfill_hours,
        max_segments=max_segments or settings.roster_max_segments,
        guild_ids=guilds if guilds else settings.roster_guild_ids,
    )
    logger.info("Roster aggregation finished: processed=%d failed=%d", result.processed, result.failed)


async def _run_summary(db: Db, settings: Settings, date: Optional[str], post: bool) -> None:
    summary = await load_daily_summary(
        db,
        date,
        start_hour_jst=settings.aggregation_start_hour_jst,
        end_hour_jst=settings.aggregation_end_hour_jst,
    )
    text = format_summary_message(summary)
    print(text)

    if post:
        client = DiscordWebhookClient(
            settings.alert_discord_webhook_url,
            post_delay_seconds=settings.post_delay_seconds,
        )
        try:
            if not client.enabled:
                logger.warning("--post given but ALERT_DISCORD_WEBHOOK_URL is not set")
            await client.post_text(text)
        finally:
            await client.aclose()


async def _run_reset(db: Db, window_start: datetime) -> None:
    if await db.reset_window(window_start):
        logger.info("Window %s reset to pending", window_start.isoformat())
    else:
        logger.warning("No failed or in-progress window at %s", window_start.isoformat())


async def run(args: argparse.Namespace, settings: Settings) -> None:
    db = Db(settings.require_database_url())
    await db.start()
    try:
        if args.command == "windows":
            await _run_windows(db, settings, args.max_windows)
        elif args.command == "roster":
            await _run_roster(db, settings, args.max_segments, args.guild)
        elif args.command == "summary":
            await _run_summary(db, settings, args.date, args.post)
        elif args.command == "reset-window":
            await _run_reset(db, args.window_start)
    finally:
        await db.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(args, settings))
    except Exception as e:
        logger.exception("%s job failed: %s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
