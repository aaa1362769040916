from __future__ import annotations

import logging
from typing import List

from xivlog.combatlog.models import RawLogEntry
from xivlog.combatlog.parser import parse_entry

logger = logging.getLogger("xivlog")


DEFAULT_SELFTEST_LINES: List[str] = [
    "00|2024-10-08T10:00:00.0000000+09:00|0839||「天動編アルファ零式４」の攻略を開始した。",
    "00|2024-10-08T10:05:00.0000000+09:00|0839||「天動編アルファ零式４」の攻略を終了した。",
    "00|2024-10-08T10:01:00.0000000+09:00|0AA9||太郎の攻撃 クリティカル＆ダイレクトヒット！ 花子に123ダメージ。",
    "00|2024-10-08T10:01:01.0000000+09:00|0AA9||花子に789(+10%)ダメージ。",
    "03|2024-10-08T10:00:01.0000000+09:00|10FF0001|Taro Yamada|13|5A|0000|0F|Tonberry|0",
    "04|2024-10-08T10:06:00.0000000+09:00|10FF0001|Taro Yamada|13|5A|0000|0F|Tonberry|0",
    "261|2024-10-08T10:00:02.0000000+09:00|Add|10FF0001|Name|Taro Yamada|Job|19",
    "21|2024-10-08T10:01:02.0000000+09:00|10FF0001|Taro Yamada|09|Fast Blade|40000001|Striking Dummy|",
    # malformed lines must be skipped, not raise
    "00|short",
    "261|2024-10-08T10:00:02.0000000+09:00|Change|10FF0001",
    "",
]


def run_parser_selftest(lines: List[str] | None = None) -> None:
    """Smoke-test the line parser at startup so a broken pattern fails loudly.

    Only checks that parsing does not raise.
    """
    test_lines = lines or DEFAULT_SELFTEST_LINES
    for i, s in enumerate(test_lines):
        parse_entry(RawLogEntry(timestamp_ns=i, normalized_text=s))

    logger.info("Parser self-test passed (%d lines).", len(test_lines))
