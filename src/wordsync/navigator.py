# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Navigation state machine: linear reading sessions and word-by-word roaming.

A Navigator owns at most one Session. Activating a region reads it chunk by
chunk; a directional step switches the session into roaming, where the
highlight moves one word at a time (across regions if needed) and a single
chunk is synthesized once the steps settle.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .aligner import align
from .config import SettingsSnapshot
from .debounce import DebouncedTask
from .document import Element, RegionProvider
from .element_index import ChunkResultCache, ElementIndex, ElementState, Word
from .errors import ChunkSynthesisFailure, PlaybackBlocked, StaleResult, UnsupportedAudio
from .scheduler import AudioPlayer, HighlightSink, PlaybackScheduler
from .speech_service import ChunkResult, SpeechService, fetch_chunk
from .timing import normalize_timing

logger = logging.getLogger(__name__)


class NavState(Enum):
    """Externally visible navigator state."""
    IDLE = "idle"
    LINEAR = "playing-linear"
    ROAMING = "roaming"


class ChunkBuffer:
    """
    Ordered hand-off of chunk results from the producer to playback.

    Results may arrive in any order; get(k) waits for chunk k specifically.
    reserve(k) holds the producer back until chunk k is within `capacity`
    of the chunk being played. A failed chunk fails every later get(), so
    the read ends at the first failure rather than when it is reached.
    close() is synchronous so a roam step or a stop can release every
    waiter immediately.
    """

    def __init__(self, size: int, capacity: int = 2) -> None:
        self.size = size
        self.capacity = max(1, capacity)
        self.played = 0
        self.closed = False
        self.error: ChunkSynthesisFailure | None = None
        self._pending: dict[int, asyncio.Future[ChunkResult]] = {}
        self._progress = asyncio.Event()

    def _future(self, index: int) -> 'asyncio.Future[ChunkResult]':
        future = self._pending.get(index)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[index] = future
        return future

    async def reserve(self, index: int) -> None:
        """
        Wait until chunk index may be requested.

        Raises:
            StaleResult: If the buffer is closed
        """
        while not self.closed and index >= self.played + self.capacity:
            self._progress.clear()
            await self._progress.wait()
        if self.closed:
            raise StaleResult("chunk buffer closed")

    def put(self, index: int, result: ChunkResult) -> None:
        """Deliver a chunk result."""
        if self.closed:
            return
        future = self._future(index)
        if not future.done():
            future.set_result(result)

    def fail(self, index: int, error: ChunkSynthesisFailure) -> None:
        """Deliver a chunk failure; get() raises it from now on."""
        if self.closed or self.error is not None:
            return
        self.error = error
        self._future(index)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._progress.set()

    async def get(self, index: int) -> ChunkResult:
        """
        Wait for chunk index.

        Raises:
            ChunkSynthesisFailure: If any chunk has failed
            StaleResult: If the buffer was closed while waiting
        """
        if self.closed:
            raise StaleResult("chunk buffer closed")
        if self.error is not None:
            raise self.error
        future = self._future(index)
        try:
            return await future
        finally:
            self._pending.pop(index, None)
            self.played = max(self.played, index + 1)
            self._progress.set()

    def close(self) -> None:
        """Wake every waiter and drop buffered results."""
        self.closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(StaleResult("chunk buffer closed"))
            elif not future.cancelled():
                # Mark unread failures as retrieved
                future.exception()
        self._pending.clear()
        self._progress.set()

    def __len__(self) -> int:
        return sum(1 for f in self._pending.values() if f.done())


@dataclass(eq=False)
class LinearPlaying:
    """Sequential chunk-by-chunk read of one region."""
    state: ElementState
    buffer: ChunkBuffer
    chunk_index: int = 0
    producer: 'asyncio.Task[None] | None' = None

    @property
    def chunk_words(self) -> list[list[Word]]:
        return self.state.chunk_words


@dataclass(eq=False)
class Roaming:
    """Word-by-word navigation position plus the cached reading flow."""
    current_region: Element
    current_word_index: int | None = None
    flow_root: Element | None = None
    flow: list[Element] = field(default_factory=list)


@dataclass(eq=False)
class Session:
    """The single active playback and navigation context."""
    index: ElementIndex
    region: Element
    mode: LinearPlaying | Roaming
    settings: SettingsSnapshot
    debounce: DebouncedTask
    scheduler: PlaybackScheduler[Word] | None = None
    highlighted: tuple[Element, int] | None = None
    cancelled: bool = False
    done: bool = False
    blocked: bool = False


class Navigator:
    """
    Session and roam controller.

    Usage:
        navigator = Navigator(regions, service, sink, SilentPlayer)
        await navigator.activate(region)
        navigator.step(+1)
    """

    def __init__(
        self,
        regions: RegionProvider,
        service: SpeechService,
        sink: HighlightSink[Word],
        player_factory: Callable[[], AudioPlayer],
        settings: SettingsSnapshot | None = None,
        on_error: Callable[[Exception], None] | None = None
    ) -> None:
        self.regions = regions
        self.service = service
        self.sink = sink
        self.player_factory = player_factory
        self.settings = settings or SettingsSnapshot()
        self.on_error = on_error

        self.session: Session | None = None
        self._run_token = 0
        self._last_selection: str | None = None
        self._last_selection_at = 0.0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> NavState:
        """Current navigator state."""
        session = self.session
        if session is None or session.cancelled or session.done:
            return NavState.IDLE
        if isinstance(session.mode, Roaming):
            return NavState.ROAMING
        return NavState.LINEAR

    def update_settings(self, settings: SettingsSnapshot) -> None:
        """Subscription callback: later operations use the new snapshot."""
        self.settings = settings
        if self.session is not None:
            self.session.debounce.delay = settings.roam_debounce

    def _new_session(self, region: Element, mode: LinearPlaying | Roaming,
                     index: ElementIndex, settings: SettingsSnapshot) -> Session:
        session = Session(
            index=index,
            region=region,
            mode=mode,
            settings=settings,
            debounce=DebouncedTask(settings.roam_debounce),
        )
        self.session = session
        return session

    def _new_index(self) -> ElementIndex:
        return ElementIndex(self.regions, ChunkResultCache(self.service.cache_namespace))

    def _report(self, error: Exception) -> None:
        logger.warning("%s: %s", type(error).__name__, error)
        if self.on_error:
            self.on_error(error)

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def _dispose_audio(self, session: Session) -> None:
        if session.scheduler is not None:
            session.scheduler.dispose()
            session.scheduler = None
        session.blocked = False

    def _note_highlight(self, session: Session, region: Element, word_index: int) -> None:
        session.highlighted = (region, word_index)
        mode = session.mode
        if isinstance(mode, Roaming) and mode.current_region is region:
            mode.current_word_index = word_index

    def _start_chunk(self, session: Session, region: Element, state: ElementState,
                     chunk_index: int, result: ChunkResult,
                     start_offset: int = 0) -> PlaybackScheduler[Word]:
        """Replace the session's audio with one chunk and start it at a word."""
        self._dispose_audio(session)

        words = state.chunk_words[chunk_index]
        texts = [w.text for w in words]
        entries = align(texts, result.words)
        first_word = state.chunk_start(chunk_index)

        scheduler: PlaybackScheduler[Word] = PlaybackScheduler(
            self.player_factory(),
            words,
            normalize_timing(texts, entries),
            self.sink,
            retime=lambda duration: normalize_timing(texts, entries, duration),
            tick_interval=session.settings.tick_interval,
            on_highlight=lambda i: self._note_highlight(session, region, first_word + i),
            is_cancelled=lambda: session.cancelled,
        )
        session.scheduler = scheduler
        scheduler.load(result.audio, result.mime_type)
        scheduler.seek_to_word(start_offset)
        self._play(session, scheduler)
        return scheduler

    def _play(self, session: Session, scheduler: PlaybackScheduler[Word]) -> bool:
        try:
            scheduler.play()
        except PlaybackBlocked as e:
            session.blocked = True
            self._report(e)
            return False
        session.blocked = False
        return True

    def resume(self) -> bool:
        """
        Retry starting the current audio after PlaybackBlocked.

        Call from a user-gesture handler. The audio is not re-synthesized.

        Returns:
            True if playback is running afterwards
        """
        session = self.session
        if session is None or session.scheduler is None or session.scheduler.disposed:
            return False
        return self._play(session, session.scheduler)

    def toggle_pause(self) -> bool:
        """
        Pause or resume the current audio.

        Returns:
            True if audio is now paused
        """
        session = self.session
        if session is None or session.scheduler is None or session.scheduler.disposed:
            return False
        scheduler = session.scheduler
        if scheduler.paused:
            self._play(session, scheduler)
            return False
        scheduler.pause()
        return True

    # ------------------------------------------------------------------
    # Linear reading
    # ------------------------------------------------------------------

    async def activate(self, region: Element, settings: SettingsSnapshot | None = None) -> None:
        """
        Read a region from its first word to its last.

        Returns when the read completes, a roam step takes over, or the
        session is stopped.

        Raises:
            ChunkSynthesisFailure: If a chunk could not be synthesized; the
                session is stopped first, even while an earlier chunk plays
            UnsupportedAudio: If the player cannot decode a chunk; the
                session is stopped first
        """
        snapshot = settings or self.settings
        if self.session is not None:
            self.stop("restart")

        index = self._new_index()
        state = index.ensure_state(region, snapshot.max_chars)
        if not state.words:
            logger.info("Nothing readable in %r", region)
            return

        mode = LinearPlaying(state=state, buffer=ChunkBuffer(len(state.chunks),
                                                             snapshot.prefetch_chunks))
        session = self._new_session(region, mode, index, snapshot)
        mode.producer = asyncio.create_task(self._produce(session, mode))
        logger.info("Reading %r: %d words in %d chunks",
                    region, len(state.words), len(state.chunks))

        try:
            for chunk_index in range(len(state.chunks)):
                result = await mode.buffer.get(chunk_index)
                if not self._is_linear(session, mode):
                    return
                mode.chunk_index = chunk_index
                scheduler = self._start_chunk(session, region, state, chunk_index, result)
                await scheduler.wait_finished()
                if not self._is_linear(session, mode):
                    return
            self.stop("done")
        except StaleResult:
            logger.debug("Linear read of %r superseded", region)
        except ChunkSynthesisFailure as e:
            if not self._is_linear(session, mode):
                return
            logger.error("Chunk %s failed, stopping: %s", e.chunk_index, e)
            self.stop("error")
            raise
        except UnsupportedAudio as e:
            if not self._is_linear(session, mode):
                return
            logger.error("Chunk %s of %r is not playable, stopping: %s",
                         mode.chunk_index, region, e)
            self.stop("error")
            raise
        finally:
            if mode.producer is not None and not mode.producer.done():
                mode.producer.cancel()

    def _is_linear(self, session: Session, mode: LinearPlaying) -> bool:
        return (self.session is session and not session.cancelled
                and not session.done and session.mode is mode)

    async def _produce(self, session: Session, mode: LinearPlaying) -> None:
        """Request chunks in order, keeping a bounded number ahead of playback."""
        tasks: list[asyncio.Task[None]] = []
        try:
            for chunk_index, chunk in enumerate(mode.state.chunks):
                await mode.buffer.reserve(chunk_index)
                if not self._is_linear(session, mode):
                    return
                tasks.append(asyncio.create_task(
                    self._fetch_into(session, mode, chunk_index, chunk.text)))
            await asyncio.gather(*tasks)
        except StaleResult:
            pass
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _fetch_into(self, session: Session, mode: LinearPlaying,
                          chunk_index: int, text: str) -> None:
        result = session.index.cache.get(text)
        if result is None:
            try:
                result = await fetch_chunk(self.service, text, session.settings.language,
                                           chunk_index=chunk_index)
            except ChunkSynthesisFailure as e:
                mode.buffer.fail(chunk_index, e)
                if self._is_linear(session, mode):
                    # Cut the chunk that is playing so activate() sees the failure now
                    self._dispose_audio(session)
                return
            if session.cancelled:
                return
            session.index.cache.put(text, result)
        mode.buffer.put(chunk_index, result)

    async def activate_from_selection(self, region: Element, selection_text: str,
                                      settings: SettingsSnapshot | None = None) -> bool:
        """
        Start reading because the user selected text in region.

        Returns:
            False if auto-speak is off or this repeats the last selection
        """
        snapshot = settings or self.settings
        if not snapshot.auto_speak:
            return False
        text = " ".join(selection_text.split())
        if not text:
            return False

        now = time.monotonic()
        if (text == self._last_selection
                and (now - self._last_selection_at) * 1000 < snapshot.selection_repeat_ms):
            logger.debug("Ignoring repeated selection")
            return False
        self._last_selection = text
        self._last_selection_at = now

        if snapshot.reading_mode == "roam":
            return self.roam_from(region, 0, snapshot)
        await self.activate(region, snapshot)
        return True

    async def read_regions(self, regions: Sequence[Element],
                           settings: SettingsSnapshot | None = None) -> int:
        """
        Read several regions in order, as chosen by a content selector.

        A newer call, a roam step or a stop ends the run.

        Returns:
            Number of regions that were started
        """
        self._run_token += 1
        token = self._run_token
        started = 0
        for region in regions:
            if token != self._run_token or self.state == NavState.ROAMING:
                break
            started += 1
            await self.activate(region, settings)
            if token != self._run_token or self.session is None:
                break
            if self.state == NavState.ROAMING:
                break
        return started

    # ------------------------------------------------------------------
    # Roaming
    # ------------------------------------------------------------------

    def _ensure_flow(self, mode: Roaming, current: Element) -> list[Element]:
        root = self.regions.reading_root(current)
        if not mode.flow or mode.flow_root is not root \
                or not any(r is current for r in mode.flow):
            mode.flow_root = root
            mode.flow = self.regions.build_flow(root)
        return mode.flow

    def _find_region(self, mode: Roaming, current: Element, forward: bool) -> Element | None:
        flow = self._ensure_flow(mode, current)
        position = next((i for i, r in enumerate(flow) if r is current), -1)
        if position == -1:
            container = self.regions.region_for(current)
            position = next((i for i, r in enumerate(flow) if r is container), -1)
        if position != -1:
            target = position + (1 if forward else -1)
            if 0 <= target < len(flow):
                return flow[target]
        return self.regions.walk(current, forward)

    def _enter_roaming(self, session: Session) -> Roaming:
        mode = session.mode
        if isinstance(mode, LinearPlaying):
            if mode.producer is not None and not mode.producer.done():
                mode.producer.cancel()
            mode.buffer.close()
            mode = Roaming(current_region=session.region)
            session.mode = mode
        session.cancelled = False
        session.done = False
        self._ensure_flow(mode, mode.current_region)
        return mode

    def _abort_roam_playback(self, session: Session) -> None:
        session.debounce.cancel()
        self._dispose_audio(session)

    def roam_from(self, region: Element, word_index: int = 0,
                  settings: SettingsSnapshot | None = None) -> bool:
        """
        Start a roaming session positioned on a word.

        Returns:
            False if region has no readable words
        """
        snapshot = settings or self.settings
        if self.session is not None:
            self.stop("restart")
        index = self._new_index()
        state = index.ensure_state(region, snapshot.max_chars)
        if not state.words:
            return False
        word_index = max(0, min(len(state.words) - 1, word_index))
        mode = Roaming(current_region=region, current_word_index=word_index)
        session = self._new_session(region, mode, index, snapshot)
        self._ensure_flow(mode, region)
        self._land(session, mode, region, state, word_index)
        return True

    def step(self, direction: int) -> bool:
        """
        Move the highlight one word forward (direction > 0) or back.

        Returns:
            False at a dead end or with no session; nothing changes then
        """
        session = self.session
        if session is None:
            return False
        mode = self._enter_roaming(session)
        self._abort_roam_playback(session)
        forward = direction > 0
        max_chars = self.settings.max_chars

        region = mode.current_region
        state = session.index.ensure_state(region, max_chars)
        if not state.words:
            return False

        index = mode.current_word_index
        if index is None:
            highlighted = session.highlighted
            index = highlighted[1] if highlighted and highlighted[0] is region else 0

        while True:
            candidate = index + (1 if forward else -1)
            if 0 <= candidate < len(state.words):
                index = candidate
                break
            next_region = self._find_region(mode, region, forward)
            if next_region is None:
                logger.debug("Navigation dead end at %r", region)
                return False
            region = next_region
            state = session.index.ensure_state(region, max_chars)
            if not state.words:
                continue
            index = 0 if forward else len(state.words) - 1
            break

        self._land(session, mode, region, state, index)
        return True

    def _land(self, session: Session, mode: Roaming, region: Element,
              state: ElementState, index: int) -> None:
        session.region = region
        mode.current_region = region
        mode.current_word_index = index
        session.highlighted = (region, index)
        self.sink.highlight(state.words[index])
        session.debounce.schedule(lambda token: self._roam_playback(session, token))

    def _check_current(self, session: Session, token: int) -> Roaming:
        mode = session.mode
        if (self.session is not session or session.cancelled
                or not isinstance(mode, Roaming) or not session.debounce.is_current(token)):
            raise StaleResult(f"roam token {token} superseded")
        return mode

    async def _roam_playback(self, session: Session, token: int) -> None:
        """Debounce expiry: play the chunk holding the landed-on word."""
        try:
            mode = self._check_current(session, token)
            region = mode.current_region
            state = session.index.ensure_state(region, self.settings.max_chars)
            if not state.words:
                return
            word_index = mode.current_word_index or 0
            chunk_index, offset = state.locate(word_index)
            text = state.chunks[chunk_index].text

            result = session.index.cache.get(text)
            if result is None:
                try:
                    result = await fetch_chunk(self.service, text, self.settings.language,
                                               chunk_index=chunk_index)
                except ChunkSynthesisFailure as e:
                    self._check_current(session, token)
                    self._report(e)
                    return
                self._check_current(session, token)
                session.index.cache.put(text, result)

            try:
                self._start_chunk(session, region, state, chunk_index, result, offset)
            except UnsupportedAudio as e:
                self._dispose_audio(session)
                self._report(e)
        except StaleResult as e:
            logger.debug("Dropped stale roam result: %s", e)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def stop(self, reason: str = "cancelled") -> None:
        """
        End the session.

        reason "done" keeps the final highlight visible (see clear()); any
        other reason clears it and returns to idle.
        """
        session = self.session
        if session is None:
            return
        logger.debug("Stopping session (%s)", reason)

        mode = session.mode
        if isinstance(mode, LinearPlaying):
            if mode.producer is not None and not mode.producer.done():
                mode.producer.cancel()
            mode.buffer.close()
        session.debounce.cancel()
        self._dispose_audio(session)

        if reason == "done":
            session.done = True
            return

        session.cancelled = True
        self.sink.clear()
        self.session = None

    def clear(self) -> bool:
        """Release a completed session and remove its highlight."""
        session = self.session
        if session is None or not session.done:
            return False
        self.session = None
        self.sink.clear()
        return True
