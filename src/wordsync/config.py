# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Configuration management for wordsync.
Handles loading and saving settings from a YAML config file, and hands the
engine immutable settings snapshots.
"""

import copy
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypedDict

import yaml

CONFIG_FILENAME: str = ".wordsync.yaml"

MIN_MAX_CHARS: int = 50
MAX_MAX_CHARS: int = 1000

READING_MODES: tuple[str, ...] = ("linear", "roam")

# Speech formats the audio players can decode
PLAYABLE_FORMATS: tuple[str, ...] = ("wav",)


class SpeechSettings(TypedDict):
    """Type definition for speech service configuration settings."""
    api_base: str
    api_key_env: str  # Name of the environment variable holding the key
    tts_model: str
    tts_voice: str
    tts_format: str
    stt_model: str
    stt_language: str | None


class ReadingSettings(TypedDict):
    """Type definition for reading behaviour settings."""
    max_chars: int
    auto_speak: bool
    reading_mode: str  # "linear" or "roam"
    selection_repeat_ms: int


class PlaybackSettings(TypedDict):
    """Type definition for playback and navigation timing settings."""
    roam_debounce_ms: int
    prefetch_chunks: int
    tick_hz: int
    audio_device: int | None


class Config(TypedDict):
    """Type definition for the complete configuration."""
    speech: SpeechSettings
    reading: ReadingSettings
    playback: PlaybackSettings


# Default configuration values
DEFAULT_CONFIG: Config = {
    "speech": {
        "api_base": "https://api.groq.com/openai/v1",
        "api_key_env": "GROQ_API_KEY",
        "tts_model": "canopylabs/orpheus-v1-english",
        "tts_voice": "troy",
        "tts_format": "wav",
        "stt_model": "whisper-large-v3-turbo",
        "stt_language": None,
    },

    "reading": {
        # Soft character limit per synthesized chunk
        "max_chars": 200,
        # Start reading as soon as text is selected
        "auto_speak": True,
        "reading_mode": "linear",
        # Ignore the same selection repeated within this window
        "selection_repeat_ms": 1200,
    },

    "playback": {
        # Quiet period after a word step before a chunk is requested
        "roam_debounce_ms": 300,
        # Chunk requests in flight ahead of playback
        "prefetch_chunks": 2,
        # Highlight updates per second
        "tick_hz": 60,
        "audio_device": None,
    },
}


@dataclass(frozen=True)
class SettingsSnapshot:
    """Settings the engine reads for one operation. Never mutated by the engine."""
    max_chars: int = 200
    auto_speak: bool = True
    reading_mode: str = "linear"
    language: str | None = None
    roam_debounce_ms: int = 300
    prefetch_chunks: int = 2
    tick_hz: int = 60
    selection_repeat_ms: int = 1200

    @property
    def roam_debounce(self) -> float:
        """Debounce delay in seconds."""
        return self.roam_debounce_ms / 1000

    @property
    def tick_interval(self) -> float:
        """Seconds between highlight ticks."""
        return 1 / max(1, self.tick_hz)


def get_config_path() -> Path:
    """Get the path to the config file in the current working directory."""
    return Path.cwd() / CONFIG_FILENAME


def _deep_merge(base, override):
    """
    Deep merge two dictionaries, with override taking precedence.
    Returns a new dictionary without modifying the originals.

    Args:
        base: Base dictionary to merge from.
        override: Dictionary with values that take precedence over base.

    Returns:
        New dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def clamp_max_chars(value: Any) -> int:
    """Coerce a max_chars setting into the supported range."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIG["reading"]["max_chars"]
    return max(MIN_MAX_CHARS, min(MAX_MAX_CHARS, number))


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, merged with defaults.

    Args:
        config_path: Optional path to config file. If None, uses default location.

    Returns:
        Configuration dictionary with all values (defaults + overrides from file).
    """
    if config_path is None:
        config_path = get_config_path()

    # Start with defaults
    config: dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)  # type: ignore[arg-type]

    # Load from file if it exists
    if config_path.exists():
        try:
            with open(config_path, encoding='utf-8') as f:
                file_config: dict[str, Any] | None = yaml.safe_load(f)
                if isinstance(file_config, dict):
                    config = _deep_merge(config, file_config)
        except (OSError, yaml.YAMLError) as e:
            print(f"Warning: Could not load config from {config_path}: {e}")

    config["reading"]["max_chars"] = clamp_max_chars(config["reading"].get("max_chars"))
    if config["reading"].get("reading_mode") not in READING_MODES:
        config["reading"]["reading_mode"] = DEFAULT_CONFIG["reading"]["reading_mode"]
    tts_format = str(config["speech"].get("tts_format") or "").lower()
    if tts_format not in PLAYABLE_FORMATS:
        print(f"Warning: tts_format {config['speech'].get('tts_format')!r} cannot be played, "
              f"using {DEFAULT_CONFIG['speech']['tts_format']!r}")
        tts_format = DEFAULT_CONFIG["speech"]["tts_format"]
    config["speech"]["tts_format"] = tts_format

    return config  # type: ignore[return-value]


def save_config(config: Config, config_path: Path | None = None) -> bool:
    """
    Save configuration to file.

    Args:
        config: Configuration dictionary to save.
        config_path: Optional path to config file. If None, uses default location.

    Returns:
        True if save was successful, False otherwise.
    """
    if config_path is None:
        config_path = get_config_path()

    try:
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(dict(config), f, default_flow_style=False, sort_keys=False)
        return True
    except (OSError, yaml.YAMLError) as e:
        print(f"Error saving config to {config_path}: {e}")
        return False


def get_speech_settings(config: Config) -> SpeechSettings:
    """Extract speech service settings from config."""
    return config.get("speech", DEFAULT_CONFIG["speech"]).copy()  # type: ignore[return-value]


def get_reading_settings(config: Config) -> ReadingSettings:
    """Extract reading settings from config."""
    return config.get("reading", DEFAULT_CONFIG["reading"]).copy()  # type: ignore[return-value]


def get_playback_settings(config: Config) -> PlaybackSettings:
    """Extract playback settings from config."""
    return config.get("playback", DEFAULT_CONFIG["playback"]).copy()  # type: ignore[return-value]


def get_api_key(config: Config) -> str | None:
    """Read the speech API key from the environment variable named in config."""
    env_name = get_speech_settings(config).get("api_key_env") or "GROQ_API_KEY"
    return os.environ.get(env_name) or None


def snapshot_from_config(config: Config) -> SettingsSnapshot:
    """Build the immutable settings snapshot the engine consumes."""
    reading = get_reading_settings(config)
    playback = get_playback_settings(config)
    speech = get_speech_settings(config)
    return SettingsSnapshot(
        max_chars=clamp_max_chars(reading.get("max_chars")),
        auto_speak=bool(reading.get("auto_speak", True)),
        reading_mode=reading.get("reading_mode", "linear"),
        language=speech.get("stt_language") or None,
        roam_debounce_ms=int(playback.get("roam_debounce_ms", 300)),
        prefetch_chunks=max(1, int(playback.get("prefetch_chunks", 2))),
        tick_hz=max(1, int(playback.get("tick_hz", 60))),
        selection_repeat_ms=int(reading.get("selection_repeat_ms", 1200)),
    )


class SettingsStore:
    """
    Holds the current configuration and notifies subscribers of changes.

    The host wires Navigator.update_settings in with subscribe(); the engine
    itself only ever sees the snapshots it is handed.
    """

    def __init__(self, config: Config | None = None, config_path: Path | None = None) -> None:
        self.config_path = config_path
        self.config: Config = config if config is not None else load_config(config_path)
        self._subscribers: list[Callable[[SettingsSnapshot], None]] = []

    @property
    def snapshot(self) -> SettingsSnapshot:
        """Current settings as an immutable snapshot."""
        return snapshot_from_config(self.config)

    def subscribe(self, callback: Callable[[SettingsSnapshot], None]) -> Callable[[], None]:
        """
        Register a change callback.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def update(self, section: str, **changes: Any) -> SettingsSnapshot:
        """Change values in one config section and notify subscribers."""
        merged: dict[str, Any] = copy.deepcopy(self.config)  # type: ignore[arg-type]
        merged[section] = _deep_merge(merged.get(section, {}), changes)
        if "max_chars" in merged.get("reading", {}):
            merged["reading"]["max_chars"] = clamp_max_chars(merged["reading"]["max_chars"])
        self.config = merged  # type: ignore[assignment]
        snapshot = self.snapshot
        for callback in list(self._subscribers):
            callback(snapshot)
        return snapshot

    def save(self) -> bool:
        """Persist the current configuration."""
        return save_config(self.config, self.config_path)
