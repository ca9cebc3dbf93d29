# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Playback scheduling: keeps word highlighting in step with the audio clock.

A PlaybackScheduler owns one audio resource and one timing table. While the
audio plays it wakes once per display tick, looks up the word under the
current clock position and hands it to the highlight sink.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Generic, TypeVar

from . import debug_log
from .aligner import TimingEntry
from .timing import find_word_index_by_time, time_for_word

logger = logging.getLogger(__name__)

W = TypeVar("W")


class AudioPlayer(ABC):
    """Interface for an audio output the scheduler can drive."""

    @abstractmethod
    def load(self, audio: bytes, mime_type: str) -> float | None:
        """
        Prepare audio for playback.

        Returns:
            Duration in seconds if it is known immediately, else None
        """

    @abstractmethod
    def play(self) -> None:
        """Start or resume output. Raises PlaybackBlocked if refused."""

    @abstractmethod
    def pause(self) -> None:
        """Pause output, keeping the current position."""

    @abstractmethod
    def seek(self, position: float) -> None:
        """Move the playback clock to position (seconds)."""

    @property
    @abstractmethod
    def current_time(self) -> float:
        """Current playback clock in seconds."""

    @property
    @abstractmethod
    def duration(self) -> float | None:
        """Total duration in seconds, once known."""

    @property
    @abstractmethod
    def playing(self) -> bool:
        """True while audio is actively playing."""

    @property
    @abstractmethod
    def ended(self) -> bool:
        """True once playback reached the end of the audio."""

    @abstractmethod
    def close(self) -> None:
        """Stop output and release any decoded audio."""

    def set_fallback_duration(self, seconds: float) -> None:
        """
        Offer an end time for audio whose length could not be read.

        Players that measure their own audio ignore it.
        """


class HighlightSink(ABC, Generic[W]):
    """Receives the word to mark as currently spoken."""

    @abstractmethod
    def highlight(self, word: W) -> None:
        """Mark word as the active word."""

    @abstractmethod
    def clear(self) -> None:
        """Remove any highlight."""


class PlaybackScheduler(Generic[W]):
    """
    Drives highlight updates for one chunk of audio.

    Usage:
        scheduler = PlaybackScheduler(player, words, table, sink)
        scheduler.seek_to_word(3)
        scheduler.play()
        await scheduler.wait_finished()
    """

    def __init__(
        self,
        player: AudioPlayer,
        words: Sequence[W],
        timing: Sequence[TimingEntry],
        sink: HighlightSink[W],
        retime: Callable[[float], list[TimingEntry]] | None = None,
        tick_interval: float = 1 / 60,
        on_highlight: Callable[[int], None] | None = None,
        is_cancelled: Callable[[], bool] | None = None
    ) -> None:
        """
        Args:
            player: Audio resource, already constructed (load() is called later)
            words: The chunk's words, indexed like the timing table
            timing: Complete timing table for words
            sink: Where highlight updates go
            retime: Rebuilds the table once a real audio duration is known
            tick_interval: Seconds between highlight updates
            on_highlight: Called with the chunk-relative index of each highlight
            is_cancelled: Polled every tick; a True result stops the loop
        """
        self.player = player
        self.words = list(words)
        self.timing: list[TimingEntry] = list(timing)
        self.sink = sink
        self.retime = retime
        self.tick_interval = tick_interval
        self.on_highlight = on_highlight
        self.is_cancelled = is_cancelled or (lambda: False)

        self.current_index: int | None = None
        self.applied_duration: float | None = None
        self.disposed = False

        self._loop_task: asyncio.Task[None] | None = None
        self._finished = asyncio.Event()

    @property
    def finished(self) -> bool:
        """True once playback ended or the scheduler was disposed."""
        return self._finished.is_set()

    def load(self, audio: bytes, mime_type: str) -> None:
        """
        Load audio into the player and correct the table if duration is known.

        Raises:
            UnsupportedAudio: If the player cannot decode the audio
        """
        self.player.load(audio, mime_type)
        if self.player.duration is None and self.timing:
            end = self.timing[-1].end
            self.player.set_fallback_duration(end)
            if self.player.duration == end:
                # The table already ends there
                self.applied_duration = end
        self.refresh_duration()

    def update_timing(self, timing: Sequence[TimingEntry]) -> None:
        """Replace the timing table, possibly while playing."""
        self.timing = list(timing)
        debug_log.log_timing_table([getattr(w, "text", str(w)) for w in self.words], self.timing)

    def refresh_duration(self) -> bool:
        """Re-run timing with the player's real duration once it becomes known."""
        duration = self.player.duration
        if not duration or duration == self.applied_duration or self.retime is None:
            return False
        self.applied_duration = duration
        self.update_timing(self.retime(duration))
        logger.debug("Timing corrected for duration %.3fs", duration)
        return True

    def active_index(self, time: float) -> int:
        """Chunk-relative index of the word spoken at time."""
        if not self.timing:
            return 0
        return self.timing[find_word_index_by_time(self.timing, time)].word_index

    def _emit(self, index: int) -> None:
        if not self.words or index < 0 or index >= len(self.words):
            return
        changed = index != self.current_index
        self.current_index = index
        word = self.words[index]
        self.sink.highlight(word)
        if changed:
            debug_log.log_highlight(index, getattr(word, "text", str(word)))
        if self.on_highlight:
            self.on_highlight(index)

    def tick(self) -> int | None:
        """Highlight the word under the current clock position."""
        if self.disposed or not self.timing:
            return None
        index = self.active_index(self.player.current_time)
        self._emit(index)
        return index

    def seek_to_word(self, index: int) -> float:
        """
        Move the clock to the start of a word and highlight it immediately.

        Returns:
            The clock position that was set
        """
        if not self.timing:
            return 0.0
        index = max(0, min(len(self.timing) - 1, index))
        position = time_for_word(self.timing, index)
        self.player.seek(position)
        self._emit(self.timing[index].word_index)
        return position

    def play(self) -> None:
        """Start audio and the highlight loop (raises PlaybackBlocked)."""
        if self.disposed:
            return
        self.player.play()
        self._ensure_loop()

    def pause(self) -> None:
        """Pause audio; the highlight loop stops on its next tick."""
        if self.disposed:
            return
        self.player.pause()

    def resume(self) -> None:
        """Resume from the paused position."""
        self.play()

    @property
    def paused(self) -> bool:
        """True when audio is loaded but not playing."""
        return not self.disposed and not self.player.playing and not self.player.ended

    def _ensure_loop(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._highlight_loop())

    async def _highlight_loop(self) -> None:
        while not self.disposed and not self.is_cancelled() and self.player.playing:
            self.refresh_duration()
            self.tick()
            await asyncio.sleep(self.tick_interval)

        if self.player.ended or self.is_cancelled():
            self._finished.set()

    async def wait_finished(self) -> None:
        """Wait until the audio ends or the scheduler is disposed."""
        await self._finished.wait()

    def dispose(self) -> None:
        """Stop playback and release the audio resource."""
        if self.disposed:
            return
        self.disposed = True
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        self._loop_task = None
        self.player.close()
        self._finished.set()
