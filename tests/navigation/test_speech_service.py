# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""Tests for the speech service client and the chunk fetch helper."""

import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from wordsync.aligner import TranscriptWord
from wordsync.errors import ChunkSynthesisFailure, SpeechServiceError
from wordsync.speech_service import (
    GroqSpeechService,
    SpeechService,
    SynthesizedAudio,
    extract_words,
    fetch_chunk,
    mime_for_format,
    with_retry,
)


class StubService(SpeechService):
    """In-memory speech service."""

    def __init__(self, synthesize=None, transcribe=None):
        self.synthesize = synthesize or AsyncMock(return_value=SynthesizedAudio(b"wav"))
        self.transcribe = transcribe or AsyncMock(return_value=[])

    @property
    def cache_namespace(self):
        return ("model", "voice")

    async def synthesize(self, text):  # replaced per instance
        raise NotImplementedError

    async def transcribe(self, audio, mime_type, language=None):  # replaced per instance
        raise NotImplementedError


class TestHelpers:
    """Test the format and payload helpers."""

    @pytest.mark.parametrize("fmt, mime", [
        ("mp3", "audio/mpeg"),
        ("OPUS", "audio/opus"),
        ("aac", "audio/aac"),
        ("flac", "audio/flac"),
        ("wav", "audio/wav"),
        ("pcm", "audio/wav"),
        (None, "audio/wav"),
    ])
    def test_mime_for_format(self, fmt, mime):
        assert mime_for_format(fmt) == mime

    def test_extract_top_level_words(self):
        payload = {"words": [{"word": "Hi", "start": 0.0, "end": 0.2}]}
        assert extract_words(payload) == [TranscriptWord("Hi", 0.0, 0.2)]

    def test_extract_segment_words(self):
        payload = {"segments": [
            {"words": [{"word": "a", "start": 0, "end": 1}]},
            {"words": [{"text": "b", "start": 1, "end": 2}]},
        ]}
        assert [w.text for w in extract_words(payload)] == ["a", "b"]

    def test_extract_nothing(self):
        assert extract_words(None) == []
        assert extract_words({"text": "no timestamps"}) == []


class TestWithRetry:
    """Test with_retry()."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        operation = AsyncMock(side_effect=[SpeechServiceError("busy", 503), "ok"])
        assert await with_retry(operation, retries=2, base_delay=0) == "ok"
        assert operation.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        operation = AsyncMock(side_effect=aiohttp.ClientConnectionError("down"))
        with pytest.raises(aiohttp.ClientConnectionError):
            await with_retry(operation, retries=2, base_delay=0)
        assert operation.call_count == 3

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=ValueError("bug"))
        with pytest.raises(ValueError):
            await with_retry(operation, retries=2, base_delay=0)
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_no_attempts_raises_service_error(self):
        operation = AsyncMock(return_value="ok")
        with pytest.raises(SpeechServiceError, match="No request attempted"):
            await with_retry(operation, retries=-1, base_delay=0)
        operation.assert_not_called()


class TestFetchChunk:
    """Test fetch_chunk()."""

    @pytest.mark.asyncio
    async def test_returns_audio_and_words(self):
        words = [TranscriptWord("hello", 0, 0.4)]
        service = StubService(transcribe=AsyncMock(return_value=words))

        result = await fetch_chunk(service, "Hello.", language="en")

        assert result.audio == b"wav"
        assert result.words == words
        service.transcribe.assert_awaited_once_with(b"wav", "audio/wav", "en")

    @pytest.mark.asyncio
    async def test_synthesis_failure_is_wrapped(self):
        service = StubService(synthesize=AsyncMock(side_effect=SpeechServiceError("nope", 500)))

        with pytest.raises(ChunkSynthesisFailure) as excinfo:
            await fetch_chunk(service, "Hello.", chunk_index=3)

        assert excinfo.value.chunk_index == 3
        assert excinfo.value.text == "Hello."
        assert isinstance(excinfo.value.cause, SpeechServiceError)

    @pytest.mark.asyncio
    async def test_transcription_failure_degrades(self):
        service = StubService(transcribe=AsyncMock(side_effect=SpeechServiceError("stt", 500)))
        result = await fetch_chunk(service, "Hello.")
        assert result.audio == b"wav"
        assert result.words == []

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        service = StubService(synthesize=AsyncMock(side_effect=asyncio.CancelledError()))
        with pytest.raises(asyncio.CancelledError):
            await fetch_chunk(service, "Hello.")


@pytest_asyncio.fixture
async def api_server():
    """Local server speaking the speech API."""
    requests = {"speech": [], "transcriptions": []}
    failures = {"speech": 0}

    async def speech(request):
        if failures["speech"]:
            failures["speech"] -= 1
            return web.json_response({"error": {"message": "overloaded"}}, status=503)
        requests["speech"].append((request.headers.get("Authorization"), await request.json()))
        return web.Response(body=b"RIFFfake", content_type="audio/wav")

    async def transcriptions(request):
        form = await request.post()
        requests["transcriptions"].append({k: form[k] for k in form if k != "file"})
        return web.json_response({
            "text": "Hello world",
            "words": [
                {"word": "Hello", "start": 0.0, "end": 0.4},
                {"word": "world", "start": 0.4, "end": 0.9},
            ],
        })

    app = web.Application()
    app.router.add_post("/v1/audio/speech", speech)
    app.router.add_post("/v1/audio/transcriptions", transcriptions)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield server, requests, failures
    finally:
        await server.close()


class TestGroqSpeechService:
    """Test the HTTP client against a local server."""

    @pytest.mark.asyncio
    async def test_synthesize(self, api_server):
        server, requests, _ = api_server
        async with GroqSpeechService("secret", api_base=str(server.make_url("/v1")),
                                     tts_voice="troy") as service:
            audio = await service.synthesize("Hello world.")

        assert audio == SynthesizedAudio(b"RIFFfake", "audio/wav")
        auth, body = requests["speech"][0]
        assert auth == "Bearer secret"
        assert body["input"] == "Hello world."
        assert body["voice"] == "troy"
        assert body["response_format"] == "wav"

    @pytest.mark.asyncio
    async def test_transcribe(self, api_server):
        server, requests, _ = api_server
        async with GroqSpeechService("secret", api_base=str(server.make_url("/v1"))) as service:
            words = await service.transcribe(b"RIFFfake", "audio/wav", language="en")

        assert [w.text for w in words] == ["Hello", "world"]
        fields = requests["transcriptions"][0]
        assert fields["response_format"] == "verbose_json"
        assert fields["timestamp_granularities[]"] == "word"
        assert fields["language"] == "en"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, api_server):
        server, requests, failures = api_server
        failures["speech"] = 1
        async with GroqSpeechService("secret", api_base=str(server.make_url("/v1")),
                                     retry_delay=0) as service:
            await service.synthesize("Again.")
        assert len(requests["speech"]) == 1

    @pytest.mark.asyncio
    async def test_error_message_from_body(self, api_server):
        server, _, failures = api_server
        failures["speech"] = 5
        async with GroqSpeechService("secret", api_base=str(server.make_url("/v1")),
                                     retries=1, retry_delay=0) as service:
            with pytest.raises(SpeechServiceError) as excinfo:
                await service.synthesize("Fail.")

        assert excinfo.value.status == 503
        assert "overloaded" in str(excinfo.value)

    def test_cache_namespace(self):
        service = GroqSpeechService("k", tts_model="m", tts_voice="v")
        assert service.cache_namespace == ("m", "v")
