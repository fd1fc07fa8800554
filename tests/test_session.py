import pytest

from lexio.audio import AudioChunk, AudioResource, SilentPlayer
from lexio.errors import PlaybackError, ProviderError
from lexio.providers import MODE_BUFFER, MODE_CHUNKED, MODE_STREAM, SynthesisResult
from lexio.queue_store import QueueItem, QueueStore
from lexio.session import (
    COMPLETED,
    IDLE,
    LOADING,
    PAUSED,
    PLAYING,
    PlaybackClock,
    PlaybackSession,
    SyncConfig,
    choose_request_mode,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class ManualTicker:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


class FakeSynth:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result
        self.error = error

    def __call__(self, text, voice_id, speed, *, mode):
        self.calls.append((text, voice_id, speed, mode))
        if self.error is not None:
            raise self.error
        return self.result or SynthesisResult(mode=mode, audio=AudioResource(data=b"mp3"))


class BrokenPlayer(SilentPlayer):
    def play(self):
        raise PlaybackError("Failed to play audio")


NO_CORRECTION = SyncConfig(lead_in_offset=0.0, speed_drift_factor=0.0)


def _session(*items, synth=None, config=NO_CORRECTION, player=None, **kw):
    q = QueueStore()
    for it in items:
        q.add(it)
    clock = FakeClock()
    tickers = []

    def ticker_factory(interval, cb):
        t = ManualTicker(interval, cb)
        tickers.append(t)
        return t

    s = PlaybackSession(
        q,
        synth or FakeSynth(),
        player=player or SilentPlayer(),
        config=config,
        clock=clock,
        ticker_factory=ticker_factory,
        **kw,
    )
    return s, q, clock, tickers


ITEM_A = QueueItem("section-0", "Intro", "one two three four five")
ITEM_B = QueueItem("section-1", "Trade", "silk road merchants")


def test_request_mode_selection():
    cfg = SyncConfig()
    assert choose_request_mode(100, cfg) == MODE_STREAM
    assert choose_request_mode(3500, cfg) == MODE_CHUNKED
    cfg = SyncConfig(stream_threshold=1000, chunk_threshold=2000)
    assert choose_request_mode(1500, cfg) == MODE_BUFFER


def test_play_loads_then_plays_and_starts_tick():
    synth = FakeSynth()
    s, q, clock, tickers = _session(ITEM_A, synth=synth)
    assert s.play() is True
    assert s.state == PLAYING
    assert q.current_index == 0
    assert synth.calls == [(ITEM_A.content, s.voice_id, 1.0, MODE_STREAM)]
    assert tickers[-1].started and tickers[-1].interval == pytest.approx(0.09)
    assert len(s.schedule) == 5
    assert s.player.playing


def test_tick_advances_highlight():
    s, q, clock, tickers = _session(ITEM_A)
    s.play()
    clock.now += 0.01
    s.tick()
    assert s.highlight_index == 0
    clock.now = 100.0 + s.schedule[2].start + 0.2
    s.tick()
    assert s.highlight_index == 2


def test_pause_resume_continues_from_same_elapsed():
    s, q, clock, tickers = _session(ITEM_A)
    s.play()
    clock.now += 0.5
    s.tick()
    before = s.highlight_index
    assert s.pause()
    assert s.state == PAUSED
    assert tickers[-1].cancelled
    clock.now += 5.0
    assert s.resume()
    assert s.state == PLAYING
    s.tick()
    assert s.elapsed == pytest.approx(0.5)
    assert s.highlight_index == before
    assert tickers[-1].started and not tickers[-1].cancelled


def test_clock_pause_accumulator():
    c = PlaybackClock(10.0, 1.0)
    c.pause(12.0)
    assert c.elapsed(20.0) == 2.0
    c.resume(17.0)
    assert c.pause_accumulator == 5.0
    assert c.elapsed(18.0) == 2.0 + 1.0


def test_natural_end_completes_and_plays_next_with_intent():
    synth = FakeSynth()
    s, q, clock, tickers = _session(ITEM_A, ITEM_B, synth=synth)
    q.play_from(0)
    s.play()
    clock.now += s.duration + 0.01
    s.tick()
    assert s.completed_count == 1
    assert q.current_index == 1
    assert s.state == PLAYING
    assert s.item.id == "section-1"
    assert synth.calls[-1][0] == ITEM_B.content


def test_last_item_completion_stops_queue():
    s, q, clock, tickers = _session(ITEM_A)
    q.play_from(0)
    s.play()
    clock.now += s.duration + 1
    s.tick()
    assert s.state == COMPLETED
    assert s.highlight_index == -1
    assert q.play_intent is False
    assert all(t.cancelled for t in tickers)


def test_replay_uses_cached_audio():
    synth = FakeSynth()
    s, q, clock, tickers = _session(ITEM_A, synth=synth)
    s.play()
    s.stop()
    assert s.state == IDLE
    s.play()
    assert s.state == PLAYING
    assert len(synth.calls) == 1


def test_voice_change_forces_idle_and_invalidates_cache():
    synth = FakeSynth()
    s, q, clock, tickers = _session(ITEM_A, synth=synth)
    s.play()
    s.set_voice("other-voice")
    assert s.state == IDLE
    assert s.cache_keys() == []
    s.play()
    assert len(synth.calls) == 2
    assert synth.calls[-1][1] == "other-voice"


def test_speed_is_clamped_and_changes_schedule():
    s, q, clock, tickers = _session(ITEM_A)
    s.set_speed(5.0)
    assert s.speed == 1.2
    s.play()
    fast = s.duration
    s.set_speed(0.7)
    assert s.state == IDLE
    s.play()
    assert s.duration > fast


def test_stale_response_is_discarded():
    s, q, clock, tickers = _session(ITEM_A)
    # Hold the load open so the response can arrive late.
    s._run_synthesis = lambda *args: None
    s.play()
    assert s.state == LOADING
    token = s._pending_token
    s.set_speed(1.1)
    assert s.state == IDLE
    late = SynthesisResult(mode=MODE_BUFFER, audio=AudioResource(b"old"))
    assert s.complete_load(token, late) is False
    assert s.state == IDLE
    assert s.cache_keys() == []


def test_provider_failure_surfaces_message_and_resets():
    s, q, clock, tickers = _session(ITEM_A, synth=FakeSynth(error=ProviderError("ElevenLabs API error: 500")))
    s.play()
    assert s.state == IDLE
    assert s.error == "ElevenLabs API error: 500"


def test_unexpected_failure_uses_generic_message():
    s, q, clock, tickers = _session(ITEM_A, synth=FakeSynth(error=KeyError("boom")))
    s.play()
    assert s.state == IDLE
    assert s.error == "Failed to generate audio"


def test_playback_start_failure_resets():
    s, q, clock, tickers = _session(ITEM_A, player=BrokenPlayer())
    s.play()
    assert s.state == IDLE
    assert s.error == "Failed to play audio"


def test_chunked_result_is_assembled_in_order():
    result = SynthesisResult(mode=MODE_CHUNKED, chunks=[AudioChunk(1, b"B"), AudioChunk(0, b"A")])
    player = SilentPlayer()
    s, q, clock, tickers = _session(ITEM_A, synth=FakeSynth(result=result), player=player)
    s.play()
    assert player.resource.data == b"AB"
    assert len(s.schedule) == len(ITEM_A.content.split())


def test_item_change_resets_session_and_drops_cache():
    s, q, clock, tickers = _session(ITEM_A, ITEM_B)
    s.play()
    assert s.cache_keys()
    q.set_current_index(1)
    assert s.state == IDLE
    assert s.cache_keys() == []
    assert s.item.id == "section-1"


def test_lead_in_correction_applied_once():
    s, q, clock, tickers = _session(ITEM_A, config=SyncConfig())
    s.play()
    clock.now += 0.5
    s.tick()
    assert s.elapsed == pytest.approx(0.5 - 0.225)
    clock.now += 0.5
    s.tick()
    assert s.elapsed == pytest.approx(1.0 - 0.225)


def test_speed_drift_only_above_normal_speed():
    cfg = SyncConfig(lead_in_offset=0.0)
    assert cfg.drift_offset(1.0) == 0.0
    assert cfg.drift_offset(1.2) == pytest.approx(0.06)


def test_snapshot_reports_status():
    s, q, clock, tickers = _session(ITEM_A)
    snap = s.snapshot()
    assert snap.state == IDLE
    s.play()
    snap = s.snapshot()
    assert snap.state == PLAYING
    assert snap.item_id == "section-0"
    assert snap.words == tuple(ITEM_A.content.split())


def test_next_and_previous_restart_an_active_session():
    synth = FakeSynth()
    s, q, clock, tickers = _session(ITEM_A, ITEM_B, synth=synth)
    q.play_from(0)
    s.play()
    assert s.next() is True
    assert q.current_index == 1
    assert s.state == PLAYING
    assert s.item.id == "section-1"
    assert synth.calls[-1][0] == ITEM_B.content

    assert s.next() is False
    assert q.current_index == 1

    s.stop()
    assert s.previous() is True
    assert q.current_index == 0
    assert s.state == IDLE
    assert s.item.id == "section-0"


def test_speed_change_leaves_session_idle_until_played():
    s, q, clock, tickers = _session(ITEM_A)
    s.play()
    s.set_speed(1.1)
    assert s.state == IDLE
    assert s.speed == pytest.approx(1.1)
