# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Audio output for synthesized chunks.

SoundDevicePlayer plays decoded WAV audio through sounddevice and reports the
playback clock from the number of frames written to the device. SilentPlayer
keeps the same clock against wall time without producing any sound.
"""

import io
import logging
import threading
import time
import wave
from collections.abc import Sequence
from typing import Any

import numpy as np
import numpy.typing as npt
import sounddevice as sd

from .errors import PlaybackBlocked, UnsupportedAudio
from .scheduler import AudioPlayer

logger = logging.getLogger(__name__)

_SAMPLE_SCALE: dict[int, tuple[type[np.integer[Any]], float, float]] = {
    1: (np.uint8, 128.0, 128.0),
    2: (np.int16, 0.0, 32768.0),
    4: (np.int32, 0.0, 2147483648.0),
}


def decode_wav(audio: bytes) -> tuple[npt.NDArray[np.float32], int]:
    """
    Decode PCM WAV bytes.

    Returns:
        (samples shaped [frames, channels] in -1..1, sample rate)

    Raises:
        UnsupportedAudio: If the data is not PCM WAV
    """
    try:
        with wave.open(io.BytesIO(audio), 'rb') as wav:
            channels = wav.getnchannels()
            width = wav.getsampwidth()
            rate = wav.getframerate()
            raw = wav.readframes(wav.getnframes())
    except (wave.Error, EOFError) as e:
        raise UnsupportedAudio(f"Unsupported audio data: {e}") from e

    if width not in _SAMPLE_SCALE:
        raise UnsupportedAudio(f"Unsupported sample width: {width * 8} bits")
    dtype, offset, scale = _SAMPLE_SCALE[width]
    usable = len(raw) - len(raw) % (width * channels)
    samples = (np.frombuffer(raw[:usable], dtype=dtype).astype(np.float32) - offset) / scale
    return samples.reshape(-1, channels), rate


def wav_duration(audio: bytes) -> float | None:
    """Duration of WAV audio in seconds, or None if it cannot be read."""
    try:
        with wave.open(io.BytesIO(audio), 'rb') as wav:
            rate = wav.getframerate()
            frames = wav.getnframes()
            frame_bytes = wav.getsampwidth() * wav.getnchannels()
    except (wave.Error, EOFError):
        return None
    if not rate or not frame_bytes:
        return None
    # Streamed WAV headers carry a placeholder frame count
    frames = min(frames, len(audio) // frame_bytes)
    return frames / rate if frames > 0 else None


class SoundDevicePlayer(AudioPlayer):
    """Plays one chunk of audio on an output device."""

    def __init__(self, device: int | None = None, blocksize: int = 1024) -> None:
        """
        Args:
            device: Output device index, or None for the default device
            blocksize: Frames written per device callback
        """
        self.device = device
        self.blocksize = blocksize

        self._samples: npt.NDArray[np.float32] | None = None
        self._rate = 0
        self._position = 0
        self._playing = False
        self._ended = False
        self._lock = threading.Lock()
        self.stream: sd.OutputStream | None = None

    def _callback(
        self,
        outdata: npt.NDArray[np.float32],
        frames: int,
        time_info: Any,
        status: sd.CallbackFlags
    ) -> None:
        """Copy the next frames into the device buffer."""
        if status:
            logger.debug("Audio status: %s", status)
        with self._lock:
            samples = self._samples
            if samples is None or not self._playing:
                outdata.fill(0)
                return
            chunk = samples[self._position:self._position + frames]
            outdata[:len(chunk)] = chunk
            outdata[len(chunk):] = 0
            self._position += len(chunk)
            if self._position >= len(samples):
                self._playing = False
                self._ended = True

    def load(self, audio: bytes, mime_type: str) -> float | None:
        self.close()
        samples, rate = decode_wav(audio)
        with self._lock:
            self._samples = samples
            self._rate = rate
            self._position = 0
            self._ended = False
        self.stream = sd.OutputStream(
            samplerate=rate,
            blocksize=self.blocksize,
            device=self.device,
            channels=samples.shape[1],
            dtype='float32',
            callback=self._callback
        )
        return self.duration

    def play(self) -> None:
        if self.stream is None:
            return
        with self._lock:
            if self._ended:
                return
            self._playing = True
        if not self.stream.active:
            try:
                self.stream.start()
            except sd.PortAudioError as e:
                with self._lock:
                    self._playing = False
                raise PlaybackBlocked(f"Audio device refused to start: {e}") from e

    def pause(self) -> None:
        with self._lock:
            self._playing = False

    def seek(self, position: float) -> None:
        with self._lock:
            if self._samples is None:
                return
            frame = int(max(0.0, position) * self._rate)
            self._position = min(frame, len(self._samples))
            self._ended = False

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position / self._rate if self._rate else 0.0

    @property
    def duration(self) -> float | None:
        with self._lock:
            if self._samples is None or not self._rate:
                return None
            return len(self._samples) / self._rate

    @property
    def playing(self) -> bool:
        with self._lock:
            return self._playing

    @property
    def ended(self) -> bool:
        with self._lock:
            return self._ended

    def close(self) -> None:
        with self._lock:
            self._playing = False
            self._samples = None
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None


class SilentPlayer(AudioPlayer):
    """Advances a playback clock in real time without any audio output."""

    def __init__(self) -> None:
        self._duration: float | None = None
        self._offset = 0.0
        self._started_at: float | None = None
        self._closed = False

    def load(self, audio: bytes, mime_type: str) -> float | None:
        self._duration = wav_duration(audio)
        self._offset = 0.0
        self._started_at = None
        return self._duration

    def set_fallback_duration(self, seconds: float) -> None:
        # Non-WAV audio has no readable length; end the clock with the timing table
        if self._duration is None and seconds > 0:
            self._duration = seconds

    def _elapsed(self) -> float:
        if self._started_at is None:
            return self._offset
        return self._offset + (time.monotonic() - self._started_at)

    def play(self) -> None:
        if self._closed or self.ended:
            return
        if self._started_at is None:
            self._started_at = time.monotonic()

    def pause(self) -> None:
        if self._started_at is not None:
            self._offset = self._elapsed()
            self._started_at = None

    def seek(self, position: float) -> None:
        self._offset = max(0.0, position)
        if self._started_at is not None:
            self._started_at = time.monotonic()

    @property
    def current_time(self) -> float:
        elapsed = self._elapsed()
        if self._duration is not None:
            return min(elapsed, self._duration)
        return elapsed

    @property
    def duration(self) -> float | None:
        return self._duration

    @property
    def playing(self) -> bool:
        return self._started_at is not None and not self.ended

    @property
    def ended(self) -> bool:
        return self._duration is not None and self._elapsed() >= self._duration

    def close(self) -> None:
        self._closed = True
        self._started_at = None


def list_devices() -> Sequence[Any]:
    """List available audio output devices."""
    print("Available audio output devices:")
    devices: Sequence[Any] = sd.query_devices()
    for i, device in enumerate(devices):
        dev: dict[str, Any] = dict(device)
        if dev.get('max_output_channels', 0) > 0:
            print(f"  [{i}] {dev.get('name', 'Unknown')} "
                  f"(outputs: {dev.get('max_output_channels', 0)})")
    return devices
