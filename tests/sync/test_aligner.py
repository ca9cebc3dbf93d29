# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""Tests for transcript-to-text alignment."""

import pytest

from wordsync.aligner import (
    CONFIDENT_MATCH,
    TranscriptWord,
    align,
    alignment_coverage,
)


def spoken(*items):
    """Build a transcript from (text, start, end) tuples."""
    return [TranscriptWord(text, start, end) for text, start, end in items]


class TestTranscriptWord:
    """Test TranscriptWord.from_dict()."""

    def test_word_key(self):
        word = TranscriptWord.from_dict({"word": "Hello", "start": 0.1, "end": 0.4})
        assert word == TranscriptWord("Hello", 0.1, 0.4)

    def test_text_key_and_missing_times(self):
        word = TranscriptWord.from_dict({"text": "world"})
        assert word == TranscriptWord("world", 0.0, 0.0)


class TestAlign:
    """Test align()."""

    def test_exact_match(self):
        words = ["Hello,", "world."]
        transcript = spoken(("hello", 0.0, 0.3), ("world", 0.3, 0.7))
        entries = align(words, transcript)

        assert [e.word_index for e in entries] == [0, 1]
        assert entries[1].start == 0.3
        assert all(e.confidence == 1.0 for e in entries)

    def test_empty_transcript(self):
        assert align(["a", "b"], []) == []

    def test_empty_words(self):
        assert align([], spoken(("a", 0, 1))) == []

    def test_inserted_transcript_words_are_skipped(self):
        words = ["The", "cat", "sat"]
        transcript = spoken(
            ("the", 0.0, 0.2), ("um", 0.2, 0.4), ("cat", 0.4, 0.6), ("sat", 0.6, 0.8))
        entries = align(words, transcript)

        assert [(e.word_index, e.start) for e in entries] == [(0, 0.0), (1, 0.4), (2, 0.6)]

    def test_missing_words_stay_untimed(self):
        words = ["The", "big", "red", "cat"]
        transcript = spoken(("the", 0.0, 0.2), ("cat", 0.5, 0.8))
        entries = align(words, transcript)

        assert [e.word_index for e in entries] == [0, 3]
        assert entries[1].start == 0.5

    def test_substitution_is_force_emitted_with_lower_confidence(self):
        words = ["colour", "me", "happy"]
        transcript = spoken(("color", 0.0, 0.3), ("me", 0.3, 0.5), ("happy", 0.5, 0.9))
        entries = align(words, transcript)

        assert [e.word_index for e in entries] == [0, 1, 2]
        assert 0.0 < entries[0].confidence < CONFIDENT_MATCH
        assert entries[1].confidence == 1.0

    def test_punctuation_only_tokens_are_skipped(self):
        words = ["Wait", "—", "what?"]
        transcript = spoken(("wait", 0.0, 0.3), ("what", 0.4, 0.7))
        entries = align(words, transcript)

        assert [e.word_index for e in entries] == [0, 2]

    def test_times_are_sanitized(self):
        words = ["a", "b"]
        transcript = spoken(("a", -0.5, 0.2), ("b", 0.9, 0.4))
        entries = align(words, transcript)

        assert entries[0].start == 0.0
        assert entries[1].end >= entries[1].start

    @pytest.mark.parametrize("transcript", [
        spoken(("x", 0, 1), ("y", 1, 2), ("z", 2, 3), ("w", 3, 4), ("v", 4, 5)),
        spoken(("one", 0, 1)),
        spoken(*[("two", i, i + 1) for i in range(10)]),
    ])
    def test_indices_always_in_range(self, transcript):
        words = ["one", "two", "three"]
        for entry in align(words, transcript):
            assert 0 <= entry.word_index < len(words)
            assert entry.start >= 0
            assert entry.end >= entry.start


class TestAlignmentCoverage:
    """Test alignment_coverage()."""

    def test_counts_only_confident_entries(self):
        words = ["colour", "me", "happy"]
        transcript = spoken(("color", 0.0, 0.3), ("me", 0.3, 0.5), ("happy", 0.5, 0.9))
        entries = align(words, transcript)
        assert alignment_coverage(entries, 3) == pytest.approx(2 / 3)

    def test_no_words(self):
        assert alignment_coverage([], 0) == 0.0
