"""
Debug logging for checking highlight timing against the audio.

Creates two log files:
- timing.log: Each chunk's timing table as it is built or corrected
- highlight.log: Words handed to the highlight sink, with their chunk index

Logging is disabled by default. Call enable() to turn it on.
"""

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Protocol

# Log files location (in the current working directory)
LOG_DIR: Path = Path.cwd() / "logs"
TIMING_LOG: Path = LOG_DIR / "timing.log"
HIGHLIGHT_LOG: Path = LOG_DIR / "highlight.log"

# Global flag to control whether debug logging is enabled
_ENABLED: bool = False  # pylint: disable=invalid-name


class _Timed(Protocol):
    word_index: int
    start: float
    end: float
    confidence: float


def enable(log_dir: Path | None = None) -> None:
    """Enable debug logging, optionally into a different directory."""
    global _ENABLED, LOG_DIR, TIMING_LOG, HIGHLIGHT_LOG  # pylint: disable=global-statement
    if log_dir is not None:
        LOG_DIR = log_dir
        TIMING_LOG = LOG_DIR / "timing.log"
        HIGHLIGHT_LOG = LOG_DIR / "highlight.log"
    _ENABLED = True


def disable() -> None:
    """Disable debug logging."""
    global _ENABLED  # pylint: disable=global-statement
    _ENABLED = False


def is_enabled() -> bool:
    """Check if debug logging is enabled."""
    return _ENABLED


def _ensure_log_dir() -> None:
    """Create log directory if it doesn't exist."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def _timestamp() -> str:
    """Get current timestamp."""
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def clear_logs() -> None:
    """Clear both log files for a fresh session."""
    if not _ENABLED:
        return
    _ensure_log_dir()
    log_file: Path
    for log_file in [TIMING_LOG, HIGHLIGHT_LOG]:
        with open(log_file, 'w', encoding='utf-8') as f:
            f.write(
                f"=== New session started at {datetime.now().isoformat()} ===\n\n")


def log_timing_table(words: Sequence[str], table: Sequence[_Timed]) -> None:
    """
    Log a complete timing table.

    Args:
        words: The chunk's word texts
        table: One timing entry per word
    """
    if not _ENABLED:
        return
    _ensure_log_dir()
    with open(TIMING_LOG, 'a', encoding='utf-8') as f:
        f.write(f"[{_timestamp()}] table for {len(table)} words\n")
        for entry in table:
            word = words[entry.word_index] if entry.word_index < len(words) else "?"
            f.write(
                f"    {entry.word_index:4d} {entry.start:8.3f} {entry.end:8.3f} "
                f"conf={entry.confidence:.2f} word=\"{word}\"\n")


def log_highlight(word_index: int, word: str) -> None:
    """Log a word handed to the highlight sink."""
    if not _ENABLED:
        return
    _ensure_log_dir()
    with open(HIGHLIGHT_LOG, 'a', encoding='utf-8') as f:
        f.write(f"[{_timestamp()}] highlight pos={word_index:4d} word=\"{word}\"\n")
