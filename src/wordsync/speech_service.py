# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Speech service interface and the HTTP client for an OpenAI-style speech API.

The engine needs two remote operations per chunk: text to audio, and audio
back to timestamped words. Transcription failures are not fatal; the chunk is
still played and highlighted with estimated timing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

import aiohttp

from .aligner import TranscriptWord
from .errors import ChunkSynthesisFailure, SpeechServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_API_BASE: str = "https://api.groq.com/openai/v1"
REQUEST_TIMEOUT_S: float = 30.0
MAX_RETRIES: int = 2
BASE_RETRY_DELAY_S: float = 0.8

MIME_TYPES: dict[str, str] = {
    "mp3": "audio/mpeg",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "wav": "audio/wav",
}


def mime_for_format(audio_format: str | None) -> str:
    """MIME type for a response format name, defaulting to WAV."""
    return MIME_TYPES.get((audio_format or "").lower(), "audio/wav")


def extension_for_format(audio_format: str | None) -> str:
    """File extension for a response format name, defaulting to wav."""
    fmt = (audio_format or "").lower()
    return fmt if fmt in MIME_TYPES else "wav"


@dataclass
class SynthesizedAudio:
    """Raw audio returned by synthesis."""
    audio: bytes
    mime_type: str = "audio/wav"


@dataclass
class ChunkResult:
    """Audio for one chunk plus the transcript used to time its words."""
    audio: bytes
    mime_type: str = "audio/wav"
    words: list[TranscriptWord] = field(default_factory=list)


class SpeechService(ABC):
    """Base interface for a remote text-to-speech and transcription service."""

    @property
    @abstractmethod
    def cache_namespace(self) -> tuple[str, str]:
        """(model, voice) that synthesized audio depends on."""

    @abstractmethod
    async def synthesize(self, text: str) -> SynthesizedAudio:
        """
        Turn text into audio.

        Raises:
            SpeechServiceError: If the request fails
        """

    @abstractmethod
    async def transcribe(
        self,
        audio: bytes,
        mime_type: str,
        language: str | None = None
    ) -> list[TranscriptWord]:
        """
        Recognize words with timestamps.

        Returns:
            Words in spoken order; may be empty
        """


async def fetch_chunk(
    service: SpeechService,
    text: str,
    language: str | None = None,
    chunk_index: int | None = None
) -> ChunkResult:
    """
    Synthesize one chunk, then transcribe it for word timing.

    Raises:
        ChunkSynthesisFailure: If synthesis fails. Transcription failures
            only degrade timing and are logged.
    """
    try:
        synthesized = await service.synthesize(text)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise ChunkSynthesisFailure(text, cause=e, chunk_index=chunk_index) from e

    words: list[TranscriptWord] = []
    try:
        words = await service.transcribe(synthesized.audio, synthesized.mime_type, language)
    except asyncio.CancelledError:
        raise
    except Exception as e:  # pylint: disable=broad-except
        logger.warning("Transcription failed, using estimated timing: %s", e)

    if not words:
        logger.info("No alignment for chunk %s; timing will be estimated", chunk_index)

    return ChunkResult(audio=synthesized.audio, mime_type=synthesized.mime_type, words=words)


def extract_words(payload: Mapping[str, Any] | None) -> list[TranscriptWord]:
    """Pull word timings from a verbose transcription response."""
    if not payload:
        return []
    raw_words = payload.get("words")
    if isinstance(raw_words, list):
        return [TranscriptWord.from_dict(w) for w in raw_words if isinstance(w, Mapping)]
    words: list[TranscriptWord] = []
    for segment in payload.get("segments") or []:
        for w in segment.get("words") or []:
            if isinstance(w, Mapping):
                words.append(TranscriptWord.from_dict(w))
    return words


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = MAX_RETRIES,
    base_delay: float = BASE_RETRY_DELAY_S
) -> T:
    """Run operation, retrying failures with exponential backoff."""
    last_error: Exception | None = None
    for attempt in range(retries + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, SpeechServiceError) as e:
            last_error = e
            if attempt < retries:
                delay = base_delay * (2 ** attempt)
                logger.debug("Request failed (%s), retrying in %.1fs", e, delay)
                await asyncio.sleep(delay)
    if last_error is None:
        raise SpeechServiceError(f"No request attempted (retries={retries})")
    raise last_error


async def _error_message(response: aiohttp.ClientResponse) -> str:
    try:
        data = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        return f"{response.status} {response.reason}"
    if isinstance(data, Mapping):
        error = data.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
    return str(data)


class GroqSpeechService(SpeechService):
    """
    Speech service backed by an OpenAI-compatible HTTP API.

    Usage:
        async with GroqSpeechService(api_key) as service:
            audio = await service.synthesize("Hello world.")
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_API_BASE,
        tts_model: str = "canopylabs/orpheus-v1-english",
        tts_voice: str = "troy",
        tts_format: str = "wav",
        stt_model: str = "whisper-large-v3-turbo",
        timeout: float = REQUEST_TIMEOUT_S,
        retries: int = MAX_RETRIES,
        retry_delay: float = BASE_RETRY_DELAY_S,
        session: aiohttp.ClientSession | None = None
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.tts_format = tts_format
        self.stt_model = stt_model
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.retries = retries
        self.retry_delay = retry_delay
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> 'GroqSpeechService':
        self._get_session()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def cache_namespace(self) -> tuple[str, str]:
        return self.tts_model, self.tts_voice

    async def synthesize(self, text: str) -> SynthesizedAudio:
        session = self._get_session()
        body = {
            "model": self.tts_model,
            "voice": self.tts_voice,
            "input": text,
            "response_format": self.tts_format,
        }

        async def request() -> SynthesizedAudio:
            async with session.post(f"{self.api_base}/audio/speech", json=body) as response:
                if response.status >= 400:
                    message = await _error_message(response)
                    raise SpeechServiceError(f"TTS failed: {message}", status=response.status)
                audio = await response.read()
            return SynthesizedAudio(audio=audio, mime_type=mime_for_format(self.tts_format))

        return await with_retry(request, self.retries, self.retry_delay)

    async def transcribe(
        self,
        audio: bytes,
        mime_type: str,
        language: str | None = None
    ) -> list[TranscriptWord]:
        session = self._get_session()

        async def request() -> list[TranscriptWord]:
            form = aiohttp.FormData()
            form.add_field(
                "file", audio,
                filename=f"speech.{extension_for_format(self.tts_format)}",
                content_type=mime_type or "audio/wav",
            )
            form.add_field("model", self.stt_model)
            form.add_field("response_format", "verbose_json")
            form.add_field("timestamp_granularities[]", "word")
            if language:
                form.add_field("language", language)

            async with session.post(f"{self.api_base}/audio/transcriptions",
                                    data=form) as response:
                if response.status >= 400:
                    message = await _error_message(response)
                    raise SpeechServiceError(f"STT failed: {message}", status=response.status)
                payload = await response.json(content_type=None)
            return extract_words(payload)

        return await with_retry(request, self.retries, self.retry_delay)
