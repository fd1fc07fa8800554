"""Playback session: one queue item at a time, synthesized and highlighted.

States run ``idle -> loading -> playing <-> paused -> completed``; failures and
stop/seek/item changes go back to ``idle``. The highlight index is driven by a
periodic tick against a wall-clock anchor, not by the audio device, so the
same code runs with real audio or with :class:`~lexio.audio.SilentPlayer`.

The lead-in and speed-drift corrections in :class:`SyncConfig` are empirical
values tuned by ear against the speech provider, not derived quantities.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .audio import AudioPlayer, AudioResource, SilentPlayer
from .errors import LexioError, PlaybackError
from .providers import DEFAULT_VOICE_ID, MODE_BUFFER, MODE_CHUNKED, MODE_STREAM, SynthesisResult
from .queue_store import QueueItem, QueueStore
from .timing import (
    WordTiming,
    clamp_speed,
    estimate,
    find_word_index,
    schedule_matches_text,
    split_words,
    total_duration,
)

IDLE = "idle"
LOADING = "loading"
PLAYING = "playing"
PAUSED = "paused"
COMPLETED = "completed"

GENERIC_SYNTH_ERROR = "Failed to generate audio"

Synthesizer = Callable[..., SynthesisResult]
CacheKey = Tuple[str, str, float]


@dataclass
class SyncConfig:
    tick_interval: float = 0.09
    lead_in_delay: float = 0.5
    lead_in_offset: float = -0.225
    speed_drift_factor: float = 0.3
    normal_tolerance: float = 0.1
    fast_tolerance: float = 0.05
    stream_threshold: int = 3000
    chunk_threshold: int = 2000

    def tolerance(self, speed: float) -> float:
        return self.fast_tolerance if speed > 1.0 else self.normal_tolerance

    def drift_offset(self, speed: float) -> float:
        if speed > 1.0:
            return (speed - 1.0) * self.speed_drift_factor
        return 0.0


def choose_request_mode(text_length: int, config: SyncConfig) -> str:
    if text_length < config.stream_threshold:
        return MODE_STREAM
    if text_length > config.chunk_threshold:
        return MODE_CHUNKED
    return MODE_BUFFER


class PlaybackClock:
    def __init__(self, now: float, speed: float) -> None:
        self.anchor = now
        self.pause_accumulator = 0.0
        self.speed = speed
        self._paused_at: Optional[float] = None
        self._elapsed_at_pause = 0.0

    @property
    def paused(self) -> bool:
        return self._paused_at is not None

    def elapsed(self, now: float) -> float:
        if self._paused_at is not None:
            return self._elapsed_at_pause
        return now - self.anchor

    def pause(self, now: float) -> None:
        if self._paused_at is None:
            self._elapsed_at_pause = now - self.anchor
            self._paused_at = now

    def resume(self, now: float) -> None:
        if self._paused_at is None:
            return
        self.pause_accumulator += now - self._paused_at
        self.anchor = now - self._elapsed_at_pause
        self._paused_at = None


class ThreadTicker:
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = float(interval)
        self.callback = callback
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        def run() -> None:
            while not self._stop.wait(self.interval):
                self.callback()

        self._thread = threading.Thread(target=run, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()

    @property
    def active(self) -> bool:
        return self._thread is not None and not self._stop.is_set()


@dataclass
class PreparedAudio:
    audio: AudioResource
    timings: Optional[List[WordTiming]] = None


@dataclass(frozen=True)
class SessionStatus:
    state: str
    item_id: Optional[str]
    title: Optional[str]
    highlight_index: int
    elapsed: float
    duration: float
    voice_id: str
    speed: float
    error: Optional[str] = None
    words: Tuple[str, ...] = field(default_factory=tuple)


class PlaybackSession:
    def __init__(
        self,
        queue: QueueStore,
        synthesize: Synthesizer,
        *,
        player: Optional[AudioPlayer] = None,
        voice_id: str = DEFAULT_VOICE_ID,
        speed: float = 1.0,
        config: Optional[SyncConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        ticker_factory: Callable[[float, Callable[[], None]], ThreadTicker] = ThreadTicker,
        background: bool = False,
        info_cb: Optional[Callable[[str], None]] = None,
        on_change: Optional[Callable[[SessionStatus], None]] = None,
    ) -> None:
        self.queue = queue
        self._synthesize = synthesize
        self.player = player or SilentPlayer()
        self.voice_id = voice_id or DEFAULT_VOICE_ID
        self.speed = clamp_speed(speed)
        self.config = config or SyncConfig()
        self._now = clock
        self._ticker_factory = ticker_factory
        self.background = background
        self.info_cb = info_cb
        self.on_change = on_change

        self._lock = threading.RLock()
        self.state = IDLE
        self.error: Optional[str] = None
        self.highlight_index = -1
        self.elapsed = 0.0
        self.schedule: List[WordTiming] = []
        self.duration = 0.0
        self.completed_count = 0

        self._item: Optional[QueueItem] = None
        self._clock: Optional[PlaybackClock] = None
        self._ticker: Optional[ThreadTicker] = None
        self._time_offset = 0.0
        self._lead_in_checked = False
        self._cache: Dict[CacheKey, PreparedAudio] = {}
        self._tokens = itertools.count(1)
        self._pending_token: Optional[int] = None
        self._pending_key: Optional[CacheKey] = None

        self._item = queue.current_item()
        self._unsubscribe = queue.subscribe(self._on_queue_change)

    # -- status -------------------------------------------------------------

    @property
    def item(self) -> Optional[QueueItem]:
        return self._item

    @property
    def words(self) -> List[str]:
        return split_words(self._item.content) if self._item else []

    def cache_keys(self) -> List[CacheKey]:
        return list(self._cache)

    def snapshot(self) -> SessionStatus:
        with self._lock:
            return SessionStatus(
                state=self.state,
                item_id=self._item.id if self._item else None,
                title=self._item.title if self._item else None,
                highlight_index=self.highlight_index,
                elapsed=self.elapsed,
                duration=self.duration,
                voice_id=self.voice_id,
                speed=self.speed,
                error=self.error,
                words=tuple(self.words),
            )

    def _log(self, message: str) -> None:
        if self.info_cb:
            self.info_cb(message)

    def _emit(self) -> None:
        if self.on_change:
            self.on_change(self.snapshot())

    def _key(self) -> Optional[CacheKey]:
        if self._item is None:
            return None
        return (self._item.id, self.voice_id, self.speed)

    # -- transitions --------------------------------------------------------

    def play(self) -> bool:
        with self._lock:
            if self.queue.current_item() is None and len(self.queue) > 0 and self.queue.current_index == -1:
                self.queue.set_current_index(0)
            item = self.queue.current_item()
            if item is None:
                return False
            if self.state == PAUSED:
                return self.resume()
            if self.state in (PLAYING, LOADING):
                return False

            self._item = item
            key = self._key()
            cached = self._cache.get(key) if key else None
            if cached is not None:
                self._log(f"play item={item.id} cached=yes")
                self._enter_playing(cached)
                return True

            token = next(self._tokens)
            self._pending_token = token
            self._pending_key = key
            mode = choose_request_mode(len(item.content), self.config)
            self.state = LOADING
            self.error = None
            self._log(f"play item={item.id} cached=no mode={mode} chars={len(item.content):,}")
            self._emit()
            args = (token, item.content, self.voice_id, self.speed, mode)

        if self.background:
            threading.Thread(target=self._run_synthesis, args=args, daemon=True).start()
        else:
            self._run_synthesis(*args)
        return True

    def _run_synthesis(self, token: int, text: str, voice_id: str, speed: float, mode: str) -> None:
        try:
            result = self._synthesize(text, voice_id, speed, mode=mode)
        except LexioError as e:
            self.fail_load(token, str(e) or GENERIC_SYNTH_ERROR)
            return
        except Exception as e:
            self._log(f"synthesis failed err={type(e).__name__}: {e}")
            self.fail_load(token, GENERIC_SYNTH_ERROR)
            return
        self.complete_load(token, result)

    def complete_load(self, token: int, result: SynthesisResult) -> bool:
        with self._lock:
            if token != self._pending_token or self.state != LOADING:
                self._log(f"discarding stale synthesis response token={token}")
                return False
            key = self._pending_key
            self._pending_token = None
            self._pending_key = None
            try:
                audio = result.playable()
            except LexioError as e:
                self._reset(error=str(e) or GENERIC_SYNTH_ERROR)
                return False
            prepared = PreparedAudio(audio=audio, timings=result.timings)
            if key is not None:
                self._cache[key] = prepared
            self._enter_playing(prepared)
            return True

    def fail_load(self, token: int, message: Optional[str] = None) -> bool:
        with self._lock:
            if token != self._pending_token or self.state != LOADING:
                self._log(f"discarding stale synthesis failure token={token}")
                return False
            self._log(f"synthesis error: {message}")
            self._reset(error=message or GENERIC_SYNTH_ERROR)
            return True

    def _enter_playing(self, prepared: PreparedAudio) -> None:
        words = self.words
        if prepared.timings and schedule_matches_text(prepared.timings, words):
            self.schedule = list(prepared.timings)
        else:
            self.schedule = estimate(words, self.speed)
        self.duration = total_duration(self.schedule)
        self._clock = PlaybackClock(self._now(), self.speed)
        self._time_offset = 0.0
        self._lead_in_checked = False
        self.highlight_index = -1
        self.elapsed = 0.0
        self.error = None
        self.state = PLAYING
        try:
            self.player.load(prepared.audio)
            self.player.play()
        except PlaybackError as e:
            self._reset(error=str(e))
            return
        self._start_ticker()
        self._emit()

    def pause(self) -> bool:
        with self._lock:
            if self.state != PLAYING or self._clock is None:
                return False
            self._clock.pause(self._now())
            self._cancel_ticker()
            self.player.pause()
            self.state = PAUSED
            self._emit()
            return True

    def resume(self) -> bool:
        with self._lock:
            if self.state != PAUSED or self._clock is None:
                return False
            self._clock.resume(self._now())
            try:
                self.player.resume()
            except PlaybackError as e:
                self._reset(error=str(e))
                return False
            self.state = PLAYING
            self._start_ticker()
            self._emit()
            return True

    def toggle(self) -> bool:
        with self._lock:
            if self.state == PLAYING:
                return self.pause()
            return self.play()

    def stop(self) -> None:
        with self._lock:
            self._reset()

    def seek(self) -> None:
        """Rewind to the beginning; the next ``play`` starts the item over."""
        with self._lock:
            self._reset()

    def next(self) -> bool:
        return self._step(1)

    def previous(self) -> bool:
        return self._step(-1)

    def _step(self, direction: int) -> bool:
        # Queue navigation shares the session lock with tick-driven completion.
        with self._lock:
            was_active = self.state not in (IDLE, COMPLETED)
            moved = self.queue.advance() if direction > 0 else self.queue.retreat()
            if moved and was_active:
                self.play()
            return moved

    def set_voice(self, voice_id: str) -> None:
        with self._lock:
            if voice_id == self.voice_id:
                return
            self.voice_id = voice_id
            self._invalidate("voice")

    def set_speed(self, speed: float) -> None:
        with self._lock:
            speed = clamp_speed(speed)
            if speed == self.speed:
                return
            self.speed = speed
            self._invalidate("speed")

    def _invalidate(self, reason: str) -> None:
        self._cache.clear()
        self._log(f"{reason} changed: cached audio invalidated")
        if self.state in (PLAYING, PAUSED, LOADING):
            self._reset()
        else:
            self.schedule = []
            self.duration = 0.0
            self._emit()

    def tick(self) -> None:
        with self._lock:
            if self.state != PLAYING or self._clock is None:
                return
            try:
                audio_ended = self.player.finished()
            except PlaybackError as e:
                self._reset(error=str(e))
                return

            raw = self._clock.elapsed(self._now())
            if not self._lead_in_checked and raw >= self.config.lead_in_delay:
                self._lead_in_checked = True
                if self.highlight_index < 2:
                    self._time_offset += self.config.lead_in_offset

            t = raw + self._time_offset + self.config.drift_offset(self.speed)
            self.elapsed = t
            self.highlight_index = find_word_index(
                self.schedule,
                t,
                speed=self.speed,
                previous=self.highlight_index,
                tolerance=self.config.tolerance(self.speed),
            )
            if t >= self.duration or audio_ended:
                self._complete()
                return
            self._emit()

    def _complete(self) -> None:
        self._cancel_ticker()
        self.player.stop()
        self._clock = None
        self.highlight_index = -1
        self.state = COMPLETED
        self.completed_count += 1
        self._log(f"completed item={self._item.id if self._item else None}")
        self._emit()

        self.queue.advance()
        if self.queue.play_intent and self.queue.current_item() is not None:
            self.play()

    def _reset(self, error: Optional[str] = None, drop_cache: bool = False) -> None:
        self._cancel_ticker()
        self.player.stop()
        self._pending_token = None
        self._pending_key = None
        self._clock = None
        self._time_offset = 0.0
        self._lead_in_checked = False
        self.highlight_index = -1
        self.elapsed = 0.0
        self.schedule = []
        self.duration = 0.0
        self.state = IDLE
        self.error = error
        if drop_cache:
            self._cache.clear()
        self._emit()

    def _start_ticker(self) -> None:
        self._cancel_ticker()
        self._ticker = self._ticker_factory(self.config.tick_interval, self.tick)
        self._ticker.start()

    def _cancel_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _on_queue_change(self, queue: QueueStore) -> None:
        with self._lock:
            item = queue.current_item()
            new_id = item.id if item else None
            old_id = self._item.id if self._item else None
            if new_id == old_id:
                return
            self._log(f"queue item changed {old_id} -> {new_id}")
            self._item = item
            self._reset(drop_cache=True)

    def close(self) -> None:
        with self._lock:
            self._reset(drop_cache=True)
            self._unsubscribe()
            self.player.close()
