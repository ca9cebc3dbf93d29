# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Aligns a timestamped transcript with the words of the chunk it was spoken from.

The transcript comes from an independent recognizer run over the synthesized
audio, so it can drop, merge or substitute words. Alignment walks both
sequences with two cursors and a short lookahead on each side instead of
assuming the positions line up.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from rapidfuzz import fuzz

from .text import normalize_word

logger = logging.getLogger(__name__)

# How far either cursor may skip ahead looking for a match
LOOKAHEAD: int = 3

# Confidence at or above this counts as an exact match
CONFIDENT_MATCH: float = 0.99


@dataclass(frozen=True)
class TranscriptWord:
    """One recognized word with its time span in seconds."""
    text: str
    start: float
    end: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TranscriptWord':
        """Build from a recognizer JSON word ({"word"|"text", "start", "end"})."""
        text = data.get("word") or data.get("text") or ""
        start = data.get("start")
        end = data.get("end")
        return cls(
            text=str(text),
            start=float(start) if start is not None else 0.0,
            end=float(end) if end is not None else 0.0,
        )


@dataclass(frozen=True)
class TimingEntry:
    """Time span of one word within a chunk's audio."""
    word_index: int  # Index into the chunk's word slice
    start: float
    end: float
    # 1.0 = exact transcript match, lower = forced pairing, 0.0 = estimated
    confidence: float = 1.0

    @property
    def duration(self) -> float:
        """Length of the span in seconds."""
        return self.end - self.start


@dataclass
class _Timed:
    text: str
    start: float
    end: float


def _skip_empty(items: Sequence[str], index: int) -> int:
    while index < len(items) and not items[index]:
        index += 1
    return index


def _entry(word_index: int, timed: _Timed, confidence: float = 1.0) -> TimingEntry:
    start = max(0.0, timed.start)
    end = max(start, timed.end)
    return TimingEntry(word_index=word_index, start=start, end=end, confidence=confidence)


def align(words: Sequence[str], transcript: Sequence[TranscriptWord]) -> list[TimingEntry]:
    """
    Match transcript timings onto original word positions.

    Args:
        words: Original chunk words (surface forms)
        transcript: Recognized words with timings, possibly empty

    Returns:
        Timing entries in increasing word_index order. Words that could not
        be matched get no entry; the timing normalizer fills them in.
    """
    if not words or not transcript:
        return []

    original = [normalize_word(w) for w in words]
    spoken = [_Timed(normalize_word(t.text), t.start, t.end) for t in transcript]
    spoken_text = [s.text for s in spoken]

    entries: list[TimingEntry] = []
    i = _skip_empty(spoken_text, 0)
    j = _skip_empty(original, 0)

    while i < len(spoken) and j < len(original):
        heard = spoken[i]
        expected = original[j]

        if heard.text == expected:
            entries.append(_entry(j, heard))
            i = _skip_empty(spoken_text, i + 1)
            j = _skip_empty(original, j + 1)
            continue

        # Extra words in the transcript (insertions) are discarded
        advanced = False
        for ahead in range(1, LOOKAHEAD + 1):
            if i + ahead >= len(spoken):
                break
            if spoken_text[i + ahead] and spoken_text[i + ahead] == expected:
                i = i + ahead
                advanced = True
                break
        if advanced:
            continue

        # Words the recognizer missed (deletions) stay untimed
        for ahead in range(1, LOOKAHEAD + 1):
            if j + ahead >= len(original):
                break
            if original[j + ahead] and original[j + ahead] == heard.text:
                j = j + ahead
                advanced = True
                break
        if advanced:
            continue

        # Substitution: pair them anyway so neither cursor stalls, but
        # record how similar the two forms actually were.
        confidence = fuzz.ratio(heard.text, expected) / 100.0
        entries.append(_entry(j, heard, confidence=min(confidence, CONFIDENT_MATCH - 0.01)))
        i = _skip_empty(spoken_text, i + 1)
        j = _skip_empty(original, j + 1)

    logger.debug(
        "Aligned %d/%d words (%.0f%% confident)",
        len(entries), len(words), 100 * alignment_coverage(entries, len(words))
    )
    return entries


def alignment_coverage(entries: Sequence[TimingEntry], word_count: int) -> float:
    """Fraction of words that received a confident (exact) match."""
    if word_count <= 0:
        return 0.0
    confident = {e.word_index for e in entries if e.confidence >= CONFIDENT_MATCH}
    return len(confident) / word_count
