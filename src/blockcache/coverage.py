from __future__ import annotations

from typing import Iterable, Sequence

from blockcache.manifest import ReplayFile
from blockcache.models import Batch


def block_range(batches: Sequence[Batch]) -> tuple[int, int]:
    """Return (min, max) height across `batches`, or (0, -1) when empty."""
    if not batches:
        return 0, -1
    heights = [batch.height for batch in batches]
    return min(heights), max(heights)


def intersects(a_min: int, a_max: int, b_min: int, b_max: int) -> bool:
    return not (a_max < b_min or b_max < a_min)


def fully_covered(lo: int, hi: int, intervals: Iterable[tuple[int, int]]) -> bool:
    """True if `intervals` cover every height in [lo, hi] without a gap."""
    cursor = lo
    relevant = sorted(
        (interval for interval in intervals if interval[1] >= lo and interval[0] <= hi),
        key=lambda interval: interval[0],
    )
    for start, end in relevant:
        if start > cursor:
            return False
        cursor = max(cursor, end + 1)
        if cursor > hi:
            return True
    return cursor > hi


def select_overlapping(files: Iterable[ReplayFile], lo: int, hi: int) -> list[ReplayFile]:
    return [item for item in files if intersects(lo, hi, item.min_block, item.max_block)]


def stitch_batches(groups: Iterable[Iterable[Batch]], lo: int, hi: int) -> list[Batch]:
    """Merge cached groups into height-sorted batches within [lo, hi], first occurrence wins."""
    collected = [batch for group in groups for batch in group if lo <= batch.height <= hi]
    collected.sort(key=lambda batch: batch.height)
    stitched: list[Batch] = []
    last_height: int | None = None
    for batch in collected:
        if batch.height != last_height:
            stitched.append(batch)
            last_height = batch.height
    return stitched


def is_complete(stitched: Sequence[Batch], lo: int, hi: int) -> bool:
    if not stitched:
        return False
    return stitched[0].height == lo and stitched[-1].height == hi and len(stitched) >= hi - lo + 1
