from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Iterable, List

from xivlog.combatlog.models import (
    NS_PER_SECOND,
    STATUS_COMPLETED,
    STATUS_MISSING_END,
    STATUS_MISSING_START,
    EndEvent,
    ParsedEvent,
    Segment,
    StartEvent,
)

# The log source occasionally emits the same start line twice in quick succession.
START_DEBOUNCE_NS = 120 * NS_PER_SECOND


def build_segments(events: Iterable[ParsedEvent], *, debounce_ns: int = START_DEBOUNCE_NS) -> List[Segment]:
    """Pair start/end markers into segments.

    ``events`` must already be sorted by timestamp. Each content name keeps a
    FIFO of open segments: an end closes the oldest open start, an end with
    nothing open becomes a missing_start orphan, and starts that never see an
    end stay missing_end.
    """
    segments: List[Segment] = []
    open_by_content: Dict[str, Deque[Segment]] = {}

    for ev in events:
        if isinstance(ev, StartEvent):
            queue = open_by_content.setdefault(ev.content, deque())
            if queue:
                last = queue[-1]
                if last.start_ns is not None and ev.timestamp_ns - last.start_ns <= debounce_ns:
                    continue

            seg = Segment(
                id=f"{ev.timestamp_ns}-{ev.content}",
                content=ev.content,
                start_ns=ev.timestamp_ns,
                end_ns=None,
                status=STATUS_MISSING_END,
            )
            queue.append(seg)
            segments.append(seg)
            continue

        if isinstance(ev, EndEvent):
            queue = open_by_content.get(ev.content)
            if queue:
                seg = queue.popleft()
                seg.end_ns = ev.timestamp_ns
                seg.status = STATUS_COMPLETED
                continue

            segments.append(
                Segment(
                    id=f"end-{ev.timestamp_ns}-{ev.content}",
                    content=ev.content,
                    start_ns=None,
                    end_ns=ev.timestamp_ns,
                    status=STATUS_MISSING_START,
                )
            )

    # list.sort is stable; equal reference times keep discovery order.
    segments.sort(key=lambda s: s.reference_ns if s.reference_ns is not None else 0)
    return segments


def assign_ordinals(segments: Iterable[Segment]) -> None:
    """Number segments per content name (1, 2, ...) and globally, in list order."""
    counters: Dict[str, int] = {}
    for index, seg in enumerate(segments, start=1):
        counters[seg.content] = counters.get(seg.content, 0) + 1
        seg.ordinal = counters[seg.content]
        seg.global_index = index
