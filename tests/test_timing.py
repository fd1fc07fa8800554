import pytest

from lexio.timing import (
    WordTiming,
    chars_per_second,
    clamp_speed,
    estimate,
    find_word_index,
    normalize_timings,
    schedule_matches_text,
    split_words,
    timings_from_alignment,
    total_duration,
)


def test_cat_elephant_schedule():
    sched = estimate(["cat", "elephant"], 1.0)
    assert chars_per_second(1.0) == pytest.approx(13.333, abs=1e-3)
    assert sched[0].start == 0.0
    assert sched[0].duration == pytest.approx(0.240, abs=1e-3)
    assert sched[1].start == pytest.approx(0.240, abs=1e-3)
    assert sched[1].duration == pytest.approx(0.810, abs=1e-3)
    assert total_duration(sched) == pytest.approx(1.050, abs=1e-3)


@pytest.mark.parametrize("speed", [0.7, 0.85, 1.0, 1.1, 1.2])
def test_schedule_is_gap_free_and_increasing(speed):
    words = split_words("The Silk Road connected merchants across an enormous distance, a b.")
    sched = estimate(words, speed)
    assert len(sched) == len(words)
    assert sched[0].start == 0.0
    for prev, cur in zip(sched, sched[1:]):
        assert cur.start == prev.end
        assert cur.end > cur.start


def test_faster_speed_shortens_schedule():
    words = ["listening", "to", "the", "page"]
    assert total_duration(estimate(words, 1.2)) < total_duration(estimate(words, 1.0))


def test_estimate_rejects_non_positive_speed():
    with pytest.raises(ValueError):
        estimate(["word"], 0)


def test_clamp_speed_bounds():
    assert clamp_speed(0.2) == 0.7
    assert clamp_speed(3.0) == 1.2
    assert clamp_speed(1.1) == 1.1


def test_find_word_index_uses_tolerance_and_stays_put():
    sched = [WordTiming("a", 0.0, 0.5), WordTiming("b", 0.5, 1.0)]
    assert find_word_index(sched, 0.2) == 0
    assert find_word_index(sched, 0.45, tolerance=0.1) == 0
    assert find_word_index(sched, 0.75) == 1
    # Past the end nothing matches, so the previous highlight is kept.
    assert find_word_index(sched, 5.0, previous=1) == 1
    assert find_word_index(sched, -1.0, previous=-1) == -1


def test_fast_speed_tightens_tolerance():
    sched = [WordTiming("a", 1.0, 2.0)]
    assert find_word_index(sched, 0.93, speed=1.0) == 0
    assert find_word_index(sched, 0.93, speed=1.2) == -1


def test_normalize_timings_from_segments_repairs_end():
    payload = {"segments": [{"words": [{"word": " hi ", "start": 0.1, "end": 0.0}, {"text": "there", "start": 0.4, "end": 0.9}]}]}
    out = normalize_timings(payload)
    assert [w.word for w in out] == ["hi", "there"]
    assert out[0].end == out[0].start


def test_timings_from_alignment_groups_characters():
    alignment = {
        "characters": list("hi yo"),
        "character_start_times_seconds": [0.0, 0.1, 0.2, 0.3, 0.4],
        "character_end_times_seconds": [0.1, 0.2, 0.3, 0.4, 0.5],
    }
    out = timings_from_alignment(alignment)
    assert [(w.word, w.start, w.end) for w in out] == [("hi", 0.0, 0.2), ("yo", 0.3, 0.5)]
    assert schedule_matches_text(out, ["Hi", "yo!"])
    assert not schedule_matches_text(out, ["hi"])
