# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Splits a token sequence into bounded-length chunks for speech synthesis.

Chunks prefer to end on a sentence boundary: when the next token would
overflow the limit, the chunker looks a little further ahead (up to half the
limit again) for a sentence-terminal token and extends the chunk through it
rather than cutting a sentence in two.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .text import is_sentence_end

T = TypeVar("T")

# Extra characters, as a fraction of max_chars, a chunk may grow by to reach
# a sentence boundary.
SENTENCE_TOLERANCE: float = 0.5


@dataclass(frozen=True)
class Chunk:
    """A run of consecutive tokens sent to synthesis as one unit."""
    text: str  # Tokens joined with single spaces
    word_count: int  # Number of source tokens consumed


@dataclass
class ChunkMap(Generic[T]):
    """Lookup tables from a word list onto its chunks."""
    chunk_words: list[list[T]] = field(default_factory=list)
    word_to_chunk_index: list[int] = field(default_factory=list)
    word_to_chunk_offset: list[int] = field(default_factory=list)


def _make_chunk(tokens: list[str]) -> Chunk:
    return Chunk(text=" ".join(tokens), word_count=len(tokens))


def _find_sentence_boundary(
    tokens: Sequence[str],
    start: int,
    current_length: int,
    limit: int,
    max_chars: int
) -> int:
    """Return the index of the nearest sentence-ending token within limit, or -1."""
    total = current_length
    for j in range(start, len(tokens)):
        token = tokens[j]
        if len(token) > max_chars:
            # Oversized tokens always stand alone
            return -1
        total += 1 + len(token)
        if total > limit:
            return -1
        if is_sentence_end(token):
            return j
    return -1


def chunk_tokens(tokens: Sequence[str], max_chars: int) -> list[Chunk]:
    """
    Split tokens into chunks of at most max_chars characters where possible.

    Args:
        tokens: Word tokens in reading order
        max_chars: Soft character limit per chunk

    Returns:
        Chunks in order. Their word counts sum to len(tokens) and no token
        is ever split.
    """
    max_chars = max(1, int(max_chars))
    tolerance = round(max_chars * SENTENCE_TOLERANCE)

    chunks: list[Chunk] = []
    current: list[str] = []
    length = 0

    i = 0
    while i < len(tokens):
        token = tokens[i]

        if len(token) > max_chars:
            if current:
                chunks.append(_make_chunk(current))
                current, length = [], 0
            chunks.append(_make_chunk([token]))
            i += 1
            continue

        add_length = (1 if current else 0) + len(token)
        if current and length + add_length > max_chars:
            found = _find_sentence_boundary(
                tokens, i, length, max_chars + tolerance, max_chars)
            if found >= 0:
                current.extend(tokens[i:found + 1])
                chunks.append(_make_chunk(current))
                current, length = [], 0
                i = found + 1
                continue

            chunks.append(_make_chunk(current))
            current, length = [token], len(token)
        else:
            current.append(token)
            length += add_length
        i += 1

    if current:
        chunks.append(_make_chunk(current))

    return chunks


def build_chunk_map(words: Sequence[T], chunks: Sequence[Chunk]) -> ChunkMap[T]:
    """Slice words according to chunk word counts and index each word's chunk."""
    chunk_map: ChunkMap[T] = ChunkMap()
    offset = 0
    for chunk_index, chunk in enumerate(chunks):
        word_slice = list(words[offset:offset + chunk.word_count])
        chunk_map.chunk_words.append(word_slice)
        for position in range(len(word_slice)):
            chunk_map.word_to_chunk_index.append(chunk_index)
            chunk_map.word_to_chunk_offset.append(position)
        offset += chunk.word_count
    return chunk_map
