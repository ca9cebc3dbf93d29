"""
Main wordsync application.
Reads a document aloud through the speech service while highlighting each
spoken word on the console.
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import threading
from collections.abc import Callable
from pathlib import Path

from . import debug_log
from .audio import SilentPlayer, SoundDevicePlayer, list_devices
from .config import (
    Config,
    SettingsStore,
    clamp_max_chars,
    get_api_key,
    get_config_path,
    get_playback_settings,
    get_reading_settings,
    get_speech_settings,
    load_config,
    save_config,
)
from .document import Document, DocumentRegionProvider, Element
from .element_index import Word
from .errors import ChunkSynthesisFailure, PlaybackBlocked, UnsupportedAudio, WordSyncError
from .navigator import Navigator
from .scheduler import AudioPlayer, HighlightSink
from .speech_service import GroqSpeechService

logger = logging.getLogger(__name__)


def load_document(path: Path) -> Document:
    """Parse a file as HTML, Markdown or plain text by its extension."""
    text = path.read_text(encoding='utf-8')
    suffix = path.suffix.lower()
    if suffix in ('.html', '.htm', '.xhtml'):
        return Document.from_html(text)
    if suffix in ('.md', '.markdown'):
        return Document.from_markdown(text)
    return Document.from_text(text)


class ConsoleHighlighter(HighlightSink[Word]):
    """Prints each newly highlighted word, one region per line."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout
        self._last: Word | None = None

    def highlight(self, word: Word) -> None:
        if word is self._last:
            return
        if self._last is not None and self._last.node.parent is not word.node.parent:
            self.stream.write("\n")
        self._last = word
        self.stream.write(f"{word.text} ")
        self.stream.flush()

    def clear(self) -> None:
        if self._last is not None:
            self.stream.write("\n")
            self.stream.flush()
        self._last = None


class WordSyncApp:
    """
    Coordinates the document, speech service, navigator and keyboard input.
    """

    KEY_HELP = "keys: n=next word  b=previous word  p=pause/resume  r=retry audio  q=quit"

    def __init__(
        self,
        document: Document,
        service: GroqSpeechService,
        store: SettingsStore,
        player_factory: Callable[[], AudioPlayer],
        interactive: bool = False
    ) -> None:
        self.document = document
        self.regions = DocumentRegionProvider(document)
        self.service = service
        self.store = store
        self.interactive = interactive
        self.sink = ConsoleHighlighter()
        self.navigator = Navigator(
            self.regions,
            service,
            self.sink,
            player_factory,
            settings=store.snapshot,
            on_error=self._on_error,
        )
        self._unsubscribe = store.subscribe(self.navigator.update_settings)
        self.running = False

    def _on_error(self, error: Exception) -> None:
        print(f"\n[wordsync] {error}", file=sys.stderr)
        if self.interactive and isinstance(error, PlaybackBlocked):
            print("[wordsync] press r to retry playback", file=sys.stderr)

    def flow(self) -> list[Element]:
        """Readable regions in reading order."""
        return self.regions.build_flow(self.regions.reading_root(None))

    def _handle_key(self, command: str) -> None:
        command = command.strip().lower()
        if command in ("n", "l", "right"):
            self.navigator.step(1)
        elif command in ("b", "h", "left"):
            self.navigator.step(-1)
        elif command in ("p", " ", ""):
            self.navigator.toggle_pause()
        elif command == "r":
            self.navigator.resume()
        elif command in ("q", "quit", "escape"):
            self.navigator.stop()
            self.running = False

    def _start_key_reader(self, queue: 'asyncio.Queue[str]') -> None:
        loop = asyncio.get_running_loop()

        def reader() -> None:
            for line in sys.stdin:
                loop.call_soon_threadsafe(queue.put_nowait, line.rstrip("\n"))
            loop.call_soon_threadsafe(queue.put_nowait, "q")

        threading.Thread(target=reader, name="wordsync-keys", daemon=True).start()

    async def run(self, start_region: int = 0) -> None:
        """Read the document from start_region, then keep roaming until quit."""
        regions = self.flow()[start_region:]
        if not regions:
            print("Nothing readable in this document.")
            return

        self.running = True
        keys: asyncio.Queue[str] = asyncio.Queue()
        if self.interactive:
            print(self.KEY_HELP)
            self._start_key_reader(keys)

        reader = asyncio.create_task(self.navigator.read_regions(regions))
        try:
            while self.running:
                if reader.done() and (not self.interactive or reader.exception()):
                    break
                try:
                    command = await asyncio.wait_for(keys.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue
                self._handle_key(command)
            if reader.done():
                reader.result()
        except ChunkSynthesisFailure as e:
            print(f"\n[wordsync] Speech request failed: {e}", file=sys.stderr)
        except UnsupportedAudio as e:
            print(f"\n[wordsync] Cannot play synthesized audio: {e}", file=sys.stderr)
        finally:
            if not reader.done():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            self.navigator.stop()
            self.sink.clear()

    async def stop(self) -> None:
        """Release the session and the HTTP client."""
        self.running = False
        self.navigator.stop()
        self._unsubscribe()
        await self.service.close()


def main() -> None:
    """Main entry point."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    # Load config first to use as defaults
    config: Config = load_config()
    speech = get_speech_settings(config)
    reading = get_reading_settings(config)
    playback = get_playback_settings(config)

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="wordsync - read documents aloud with word-level highlighting"
    )

    parser.add_argument(
        "file",
        nargs="?",
        type=Path,
        help="Markdown, HTML or text file to read"
    )

    parser.add_argument(
        "--region", "-r",
        type=int,
        default=0,
        help="Index of the first region to read (see --list-regions)"
    )

    parser.add_argument(
        "--max-chars",
        type=int,
        default=reading.get("max_chars", 200),
        help="Soft character limit per synthesized chunk (default: from config or 200)"
    )

    parser.add_argument(
        "--device", "-d",
        type=int,
        default=playback.get("audio_device"),
        help="Audio output device index"
    )

    parser.add_argument(
        "--voice",
        default=speech.get("tts_voice"),
        help="Speech voice (default: from config)"
    )

    parser.add_argument(
        "--silent",
        action="store_true",
        help="Highlight in real time without playing audio"
    )

    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available audio output devices and exit"
    )

    parser.add_argument(
        "--list-regions",
        action="store_true",
        help="List the readable regions of FILE and exit"
    )

    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Save current CLI options to config file and exit"
    )

    parser.add_argument(
        "--debug-log",
        action="store_true",
        help="Enable debug logging to ./logs/"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show informational log messages"
    )

    args: argparse.Namespace = parser.parse_args()

    if args.verbose:
        logging.getLogger("wordsync").setLevel(logging.INFO)

    # Handle special commands
    if args.list_devices:
        list_devices()
        return

    if args.save_config:
        config["reading"]["max_chars"] = clamp_max_chars(args.max_chars)
        config["playback"]["audio_device"] = args.device
        config["speech"]["tts_voice"] = args.voice
        if save_config(config):
            print(f"Configuration saved to {get_config_path()}")
        return

    if args.file is None:
        parser.error("a file to read is required")

    try:
        document = load_document(args.file)
    except OSError as e:
        print(f"Error: could not read {args.file}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.list_regions:
        provider = DocumentRegionProvider(document)
        for i, region in enumerate(provider.build_flow(provider.reading_root(None))):
            snippet = " ".join(region.text_content.split())[:70]
            print(f"  [{i}] <{region.tag}> {snippet}")
        return

    api_key = get_api_key(config)
    if not api_key:
        print(f"Error: set {speech.get('api_key_env')} to your speech API key",
              file=sys.stderr)
        sys.exit(1)

    if args.debug_log:
        debug_log.enable()
        debug_log.clear_logs()
        print("Debug logging enabled (logs will be saved to ./logs/)")

    store = SettingsStore(config)
    store.update("reading", max_chars=args.max_chars)

    service = GroqSpeechService(
        api_key,
        api_base=speech.get("api_base"),
        tts_model=speech.get("tts_model"),
        tts_voice=args.voice,
        tts_format=speech.get("tts_format", "wav"),
        stt_model=speech.get("stt_model"),
    )

    device = args.device

    def make_player() -> AudioPlayer:
        if args.silent:
            return SilentPlayer()
        return SoundDevicePlayer(device=device)

    app = WordSyncApp(
        document,
        service,
        store,
        make_player,
        interactive=sys.stdin.isatty(),
    )

    loop: asyncio.AbstractEventLoop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def shutdown(sig: int, frame: object) -> None:
        """Handle shutdown signals (SIGINT, SIGTERM) gracefully."""
        app.running = False

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        loop.run_until_complete(app.run(args.region))
    except KeyboardInterrupt:
        app.running = False
    except WordSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
    finally:
        with contextlib.suppress(Exception):
            loop.run_until_complete(app.stop())
        # Cancel any remaining tasks
        pending: set[asyncio.Task[object]] = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(
                *pending, return_exceptions=True))
        loop.close()


if __name__ == "__main__":
    main()
