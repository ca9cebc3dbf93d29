# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Turns a sparse alignment into a complete per-word timing table.

The result has exactly one entry per word, every entry has positive
duration, and entries are contiguous and monotonic so the playback clock
always maps onto exactly one word.
"""

from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from .aligner import TimingEntry

# Seconds per word when nothing else is known
DEFAULT_WORD_DURATION: float = 0.35

# No word is shorter than this (seconds), whatever the average says
MIN_WORD_DURATION: float = 0.04

# Minimum duration as a fraction of the average word duration
MIN_DURATION_RATIO: float = 0.4


def build_uniform_table(word_count: int, per_word: float) -> list[TimingEntry]:
    """Evenly spaced table starting at 0."""
    return [
        TimingEntry(word_index=i, start=i * per_word, end=(i + 1) * per_word, confidence=0.0)
        for i in range(word_count)
    ]


def average_duration(
    entries: Sequence[TimingEntry],
    word_count: int,
    duration: float | None = None
) -> float:
    """Mean span of the known entries, falling back to duration / words."""
    spans = [e.end - e.start for e in entries if e.end > e.start]
    if spans:
        return sum(spans) / len(spans)
    if duration and word_count:
        return duration / word_count
    return DEFAULT_WORD_DURATION


def normalize_timing(
    words: Sequence[Any],
    entries: Sequence[TimingEntry],
    duration: float | None = None
) -> list[TimingEntry]:
    """
    Fill the gaps in a sparse alignment.

    Args:
        words: The chunk's words (only the count is used)
        entries: Sparse timing entries from the aligner
        duration: Real audio duration in seconds, if known

    Returns:
        One TimingEntry per word, gapless and strictly increasing.
    """
    count = len(words)
    if not count:
        return []

    known: list[TimingEntry | None] = [None] * count
    for entry in entries:
        if 0 <= entry.word_index < count:
            known[entry.word_index] = entry

    avg = average_duration([e for e in known if e is not None], count, duration)

    first_known = next((i for i, e in enumerate(known) if e is not None), -1)
    if first_known == -1:
        if duration:
            return build_uniform_table(count, duration / count)
        return build_uniform_table(count, avg)

    starts: list[float | None] = [None] * count
    ends: list[float | None] = [None] * count
    confidence: list[float] = [0.0] * count
    for i, entry in enumerate(known):
        if entry is not None:
            starts[i] = entry.start
            ends[i] = entry.end
            confidence[i] = entry.confidence

    # Backfill words before the first anchor
    for i in range(first_known - 1, -1, -1):
        following = starts[i + 1]
        end = following if following is not None else avg * (i + 1)
        starts[i] = max(0.0, end - avg)
        ends[i] = end

    # Interior gaps are interpolated, a trailing gap steps by avg
    prev = first_known
    i = first_known + 1
    while i < count:
        if known[i] is not None:
            prev = i
            i += 1
            continue

        nxt = i + 1
        while nxt < count and known[nxt] is None:
            nxt += 1
        gap = nxt - prev
        gap_start = ends[prev] if ends[prev] is not None else avg * prev

        if nxt < count:
            gap_end = starts[nxt] if starts[nxt] is not None else gap_start + avg * gap
            missing = gap - 1
            step = (gap_end - gap_start) / missing
            if step <= 0:
                step = avg
            for k in range(1, gap):
                starts[prev + k] = gap_start + step * (k - 1)
                ends[prev + k] = gap_start + step * k
        else:
            cursor = gap_start
            for k in range(1, gap):
                starts[prev + k] = cursor
                ends[prev + k] = cursor + avg
                cursor += avg

        prev = min(nxt, count - 1)
        i = nxt

    # Monotonicity pass
    min_duration = max(avg * MIN_DURATION_RATIO, MIN_WORD_DURATION)
    table: list[TimingEntry] = []
    last_end = 0.0
    for i in range(count):
        raw_start = starts[i] if starts[i] is not None else last_end
        start = max(raw_start, last_end)
        raw_end = ends[i] if ends[i] is not None else start + min_duration
        end = max(raw_end, start + min_duration)
        table.append(TimingEntry(word_index=i, start=start, end=end, confidence=confidence[i]))
        last_end = end

    # Silence between words stays with the word before it
    for i in range(count - 1):
        following = table[i + 1].start
        if following > table[i].end:
            table[i] = replace(table[i], end=following)

    return table


def find_word_index_by_time(entries: Sequence[TimingEntry], time: float) -> int:
    """
    Binary search for the entry that contains the given time.

    Times before the first entry map to 0, times at or past the end of the
    last entry map to the last index.
    """
    if not entries:
        return 0
    last = len(entries) - 1
    if time < entries[0].start:
        return 0
    if time >= entries[last].end:
        return last

    lo, hi = 0, last
    while lo <= hi:
        mid = (lo + hi) // 2
        entry = entries[mid]
        if entry.start <= time <= entry.end:
            return mid
        if time < entry.start:
            hi = mid - 1
        else:
            lo = mid + 1
    return max(0, min(last, lo))


def time_for_word(entries: Sequence[TimingEntry], index: int) -> float:
    """Clock position that lands inside the given word's span."""
    if not entries:
        return 0.0
    index = max(0, min(len(entries) - 1, index))
    entry = entries[index]
    # Nudge past the boundary so the lookup resolves to this word, not the previous one
    return max(0.0, min(entry.start + 0.01, (entry.start + entry.end) / 2))
