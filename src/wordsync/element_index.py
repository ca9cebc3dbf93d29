# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Per-region word and chunk index.

Each region's words are mapped once; the chunk layout derived from them is
rebuilt only when the max-characters setting changes. The index also owns
the session's chunk result cache so revisiting a chunk never re-synthesizes.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .chunker import Chunk, build_chunk_map, chunk_tokens
from .document import Element, RegionProvider, TextNode
from .text import iter_tokens, normalize_word

if TYPE_CHECKING:
    from .speech_service import ChunkResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS: int = 200


@dataclass(frozen=True)
class Word:
    """One token's location inside a text node, plus its surface form."""
    node: TextNode
    start_offset: int
    end_offset: int
    text: str

    def __repr__(self) -> str:
        return f"Word({self.text!r} @{self.start_offset})"


@dataclass
class ElementState:
    """Cached words and chunk layout for one region."""
    region: Element
    words: list[Word]
    max_chars: int | None = None
    chunks: list[Chunk] = field(default_factory=list)
    chunk_words: list[list[Word]] = field(default_factory=list)
    word_to_chunk_index: list[int] = field(default_factory=list)
    word_to_chunk_offset: list[int] = field(default_factory=list)

    @property
    def chunk_texts(self) -> list[str]:
        """Text of each chunk, in order."""
        return [c.text for c in self.chunks]

    def rebuild(self, max_chars: int) -> None:
        """Recompute the chunk layout for a new limit."""
        chunks = chunk_tokens([w.text for w in self.words], max_chars)
        chunk_map = build_chunk_map(self.words, chunks)
        self.chunks = chunks
        self.chunk_words = chunk_map.chunk_words
        self.word_to_chunk_index = chunk_map.word_to_chunk_index
        self.word_to_chunk_offset = chunk_map.word_to_chunk_offset
        self.max_chars = max_chars

    def locate(self, word_index: int) -> tuple[int, int]:
        """Return (chunk index, offset within chunk) for a region word index."""
        if not self.word_to_chunk_index:
            return 0, 0
        word_index = max(0, min(len(self.word_to_chunk_index) - 1, word_index))
        return self.word_to_chunk_index[word_index], self.word_to_chunk_offset[word_index]

    def chunk_start(self, chunk_index: int) -> int:
        """Region word index of the first word in a chunk."""
        return sum(c.word_count for c in self.chunks[:chunk_index])


def map_words(regions: RegionProvider, region: Element) -> list[Word]:
    """Tokenize a region's readable text into Words."""
    words: list[Word] = []
    for node in regions.readable_text_nodes(region):
        for start, end, token in iter_tokens(node.value):
            if not normalize_word(token):
                continue
            words.append(Word(node=node, start_offset=start, end_offset=end, text=token))
    return words


class ChunkResultCache:
    """Synthesized chunk results keyed by (model, voice, chunk text)."""

    def __init__(self, namespace: tuple[str, str] = ("", "")) -> None:
        self.namespace = namespace
        self._results: dict[tuple[str, str, str], 'ChunkResult'] = {}
        self.hits = 0
        self.misses = 0

    def _key(self, text: str) -> tuple[str, str, str]:
        model, voice = self.namespace
        return model, voice, text

    def get(self, text: str) -> 'ChunkResult | None':
        """Look up a previously synthesized chunk."""
        result = self._results.get(self._key(text))
        if result is None:
            self.misses += 1
        else:
            self.hits += 1
        return result

    def put(self, text: str, result: 'ChunkResult') -> None:
        """Store a chunk result."""
        if text:
            self._results[self._key(text)] = result

    def clear(self) -> None:
        """Drop all cached results."""
        self._results.clear()

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, text: object) -> bool:
        return isinstance(text, str) and self._key(text) in self._results


class ElementIndex:
    """Lazily built ElementState per region."""

    def __init__(self, regions: RegionProvider, cache: ChunkResultCache | None = None) -> None:
        self.regions = regions
        self.cache = cache or ChunkResultCache()
        self._states: dict[int, ElementState] = {}

    def __contains__(self, region: object) -> bool:
        return id(region) in self._states

    def __len__(self) -> int:
        return len(self._states)

    def add(self, region: Element, words: list[Word]) -> ElementState:
        """Register words that were already mapped for a region."""
        state = ElementState(region=region, words=words)
        self._states[id(region)] = state
        return state

    def ensure_state(self, region: Element, max_chars: int | None = None) -> ElementState:
        """
        Get the state for a region, building or re-chunking it as needed.

        Args:
            region: The region element
            max_chars: Chunk limit; the derived fields follow this value

        Returns:
            ElementState whose chunk layout matches max_chars
        """
        state = self._states.get(id(region))
        if state is None:
            state = self.add(region, map_words(self.regions, region))
            logger.debug("Indexed %r: %d words", region, len(state.words))

        limit = max_chars or DEFAULT_MAX_CHARS
        if state.max_chars != limit or not state.chunks:
            state.rebuild(limit)
        return state
