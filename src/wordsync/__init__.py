"""
wordsync - Word-level highlighting synchronized with synthesized speech.

Splits text into sentence-aware chunks, has a speech service synthesize and
transcribe each chunk, aligns the transcript back onto the original words and
highlights each word in time with the audio. A navigator lets the listener
step word by word across regions of a document.
"""

__version__ = "0.1.0"

from .aligner import TimingEntry, TranscriptWord, align
from .chunker import Chunk, chunk_tokens
from .config import SettingsSnapshot, SettingsStore, load_config
from .document import Document, DocumentRegionProvider, RegionProvider
from .element_index import ElementIndex, Word
from .navigator import Navigator, NavState
from .scheduler import AudioPlayer, HighlightSink, PlaybackScheduler
from .speech_service import GroqSpeechService, SpeechService, fetch_chunk
from .timing import find_word_index_by_time, normalize_timing

__all__ = [
    "Chunk",
    "chunk_tokens",
    "TranscriptWord",
    "TimingEntry",
    "align",
    "normalize_timing",
    "find_word_index_by_time",
    "AudioPlayer",
    "HighlightSink",
    "PlaybackScheduler",
    "Document",
    "RegionProvider",
    "DocumentRegionProvider",
    "ElementIndex",
    "Word",
    "SpeechService",
    "GroqSpeechService",
    "fetch_chunk",
    "Navigator",
    "NavState",
    "SettingsSnapshot",
    "SettingsStore",
    "load_config",
]
