# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Exceptions raised by the synchronization engine.

- ChunkSynthesisFailure: a chunk could not be synthesized (surfaced to the host)
- PlaybackBlocked: the audio backend refused to start without a user gesture
- UnsupportedAudio: chunk audio the player cannot decode
- AlignmentUnavailable: no usable transcript; timing falls back to estimates
- NavigationDeadEnd: no further readable region in the requested direction
- StaleResult: an async result outlived its session or roam step
"""


class WordSyncError(Exception):
    """Base class for all wordsync errors."""


class SpeechServiceError(WordSyncError):
    """A request to the remote speech service failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class ChunkSynthesisFailure(WordSyncError):
    """Synthesis for one chunk failed or was aborted."""

    def __init__(self, text: str, cause: BaseException | None = None,
                 chunk_index: int | None = None) -> None:
        self.text = text
        self.cause = cause
        self.chunk_index = chunk_index
        detail = str(cause) if cause else "synthesis failed"
        super().__init__(detail)


class AlignmentUnavailable(WordSyncError):
    """The transcript was missing or empty; estimated timing is used instead."""


class PlaybackBlocked(WordSyncError):
    """Audio playback needs a user gesture before it can start."""


class UnsupportedAudio(WordSyncError):
    """Synthesized audio is in a format the player cannot decode."""


class NavigationDeadEnd(WordSyncError):
    """There is no readable region beyond the current one."""


class StaleResult(WordSyncError):
    """A result arrived after the session or roam step it belonged to ended."""
