# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""Tests for the playback scheduler."""

import asyncio
from unittest import mock

import pytest

from wordsync.errors import PlaybackBlocked
from wordsync.scheduler import AudioPlayer, HighlightSink, PlaybackScheduler
from wordsync.timing import normalize_timing


class ManualPlayer(AudioPlayer):
    """Audio player whose clock only moves when a test moves it."""

    def __init__(self, duration=None, blocked=False):
        self.loaded_duration = duration
        self.blocked = blocked
        self.position = 0.0
        self.is_playing = False
        self.closed = False
        self._duration = None

    def load(self, audio, mime_type):
        self._duration = self.loaded_duration
        return self._duration

    def play(self):
        if self.blocked:
            raise PlaybackBlocked("needs a gesture")
        self.is_playing = True

    def pause(self):
        self.is_playing = False

    def seek(self, position):
        self.position = position

    def advance(self, seconds):
        self.position += seconds
        if self._duration is not None and self.position >= self._duration:
            self.position = self._duration
            self.is_playing = False

    @property
    def current_time(self):
        return self.position

    @property
    def duration(self):
        return self._duration

    @property
    def playing(self):
        return self.is_playing

    @property
    def ended(self):
        return self._duration is not None and self.position >= self._duration

    def close(self):
        self.closed = True
        self.is_playing = False


class RecordingSink(HighlightSink):
    def __init__(self):
        self.words = []
        self.cleared = 0

    def highlight(self, word):
        self.words.append(word)

    def clear(self):
        self.cleared += 1


WORDS = ["alpha", "beta", "gamma", "delta"]


def make_scheduler(player, retime=None):
    table = normalize_timing(WORDS, [])
    sink = RecordingSink()
    scheduler = PlaybackScheduler(player, WORDS, table, sink, retime=retime, tick_interval=0.001)
    return scheduler, sink


class TestTick:
    """Test clock-to-word mapping."""

    def test_tick_follows_clock(self):
        player = ManualPlayer()
        scheduler, sink = make_scheduler(player)

        player.position = 0.0
        assert scheduler.tick() == 0
        player.position = 0.36
        assert scheduler.tick() == 1
        player.position = 5.0
        assert scheduler.tick() == 3
        assert sink.words == ["alpha", "beta", "delta"]

    def test_seek_to_word_highlights_immediately(self):
        player = ManualPlayer()
        scheduler, sink = make_scheduler(player)

        position = scheduler.seek_to_word(2)

        assert player.position == position
        assert sink.words == ["gamma"]
        assert scheduler.current_index == 2
        assert scheduler.tick() == 2

    def test_no_tick_after_dispose(self):
        player = ManualPlayer()
        scheduler, sink = make_scheduler(player)
        scheduler.dispose()

        assert scheduler.tick() is None
        assert player.closed
        assert scheduler.finished

    def test_on_highlight_receives_index(self):
        player = ManualPlayer()
        seen = []
        scheduler = PlaybackScheduler(
            player, WORDS, normalize_timing(WORDS, []), RecordingSink(),
            on_highlight=seen.append)
        scheduler.seek_to_word(1)
        assert seen == [1]


class TestDurationCorrection:
    """Test retiming once the real duration is known."""

    def test_load_applies_real_duration(self):
        player = ManualPlayer(duration=2.0)
        retime = mock.Mock(side_effect=lambda d: normalize_timing(WORDS, [], d))
        scheduler, _ = make_scheduler(player, retime=retime)

        scheduler.load(b"audio", "audio/wav")

        retime.assert_called_once_with(2.0)
        assert scheduler.timing[-1].end == pytest.approx(2.0)
        assert scheduler.applied_duration == 2.0

    def test_same_duration_is_applied_once(self):
        player = ManualPlayer(duration=2.0)
        retime = mock.Mock(side_effect=lambda d: normalize_timing(WORDS, [], d))
        scheduler, _ = make_scheduler(player, retime=retime)

        scheduler.load(b"audio", "audio/wav")
        assert scheduler.refresh_duration() is False
        assert retime.call_count == 1

    def test_unknown_duration_keeps_estimate(self):
        player = ManualPlayer(duration=None)
        scheduler, _ = make_scheduler(player, retime=mock.Mock())
        scheduler.load(b"audio", "audio/wav")
        assert scheduler.timing[-1].end == pytest.approx(4 * 0.35)

    def test_unreadable_duration_ends_with_table(self):
        player = ManualPlayer(duration=None)
        player.set_fallback_duration = mock.Mock(
            side_effect=lambda seconds: setattr(player, "_duration", seconds))
        retime = mock.Mock()
        scheduler, _ = make_scheduler(player, retime=retime)

        scheduler.load(b"mp3 bytes", "audio/mpeg")

        player.set_fallback_duration.assert_called_once_with(pytest.approx(4 * 0.35))
        assert player.duration == pytest.approx(4 * 0.35)
        retime.assert_not_called()

        player.position = 5.0
        assert player.ended


class TestPlaybackLoop:
    """Test the asynchronous highlight loop."""

    @pytest.mark.asyncio
    async def test_finishes_when_audio_ends(self):
        player = ManualPlayer(duration=1.0)
        scheduler, sink = make_scheduler(
            player, retime=lambda d: normalize_timing(WORDS, [], d))
        scheduler.load(b"audio", "audio/wav")
        scheduler.seek_to_word(0)
        scheduler.play()

        for _ in range(4):
            await asyncio.sleep(0.01)
            player.advance(0.3)

        await asyncio.wait_for(scheduler.wait_finished(), timeout=1.0)
        assert sink.words[0] == "alpha"
        assert "delta" in sink.words

    @pytest.mark.asyncio
    async def test_pause_stops_highlighting(self):
        player = ManualPlayer(duration=10.0)
        scheduler, sink = make_scheduler(player)
        scheduler.load(b"audio", "audio/wav")
        scheduler.play()
        await asyncio.sleep(0.01)

        scheduler.pause()
        await asyncio.sleep(0.01)
        count = len(sink.words)
        player.position = 0.5
        await asyncio.sleep(0.01)

        assert scheduler.paused
        assert len(sink.words) == count
        assert not scheduler.finished

        scheduler.resume()
        await asyncio.sleep(0.01)
        assert len(sink.words) > count
        scheduler.dispose()

    @pytest.mark.asyncio
    async def test_cancelled_session_finishes_loop(self):
        player = ManualPlayer(duration=10.0)
        cancelled = False
        scheduler = PlaybackScheduler(
            player, WORDS, normalize_timing(WORDS, []), RecordingSink(),
            tick_interval=0.001, is_cancelled=lambda: cancelled)
        scheduler.play()
        await asyncio.sleep(0.01)

        cancelled = True
        await asyncio.wait_for(scheduler.wait_finished(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_blocked_playback_raises(self):
        player = ManualPlayer(duration=1.0, blocked=True)
        scheduler, _ = make_scheduler(player)
        scheduler.load(b"audio", "audio/wav")

        with pytest.raises(PlaybackBlocked):
            scheduler.play()

        player.blocked = False
        scheduler.resume()
        assert player.playing
        scheduler.dispose()

    @pytest.mark.asyncio
    async def test_dispose_releases_waiters(self):
        player = ManualPlayer(duration=10.0)
        scheduler, _ = make_scheduler(player)
        scheduler.load(b"audio", "audio/wav")
        scheduler.play()

        waiter = asyncio.create_task(scheduler.wait_finished())
        await asyncio.sleep(0)
        scheduler.dispose()
        scheduler.dispose()

        await asyncio.wait_for(waiter, timeout=1.0)
        assert player.closed
