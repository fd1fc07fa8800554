"""Word timing schedules for highlight playback.

The estimate here is a speaking-rate heuristic, not an alignment against the
synthesized waveform: each word gets a duration from its character count and a
coarse complexity factor. When the speech provider returns character
alignment, :func:`timings_from_alignment` produces a schedule from it instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

BASE_WPM = 160.0
CHARS_PER_WORD = 5.0
LONG_WORD_CHARS = 6
SHORT_WORD_CHARS = 3
LONG_WORD_FACTOR = 1.2
SHORT_WORD_FACTOR = 0.8
NORMAL_TOLERANCE = 0.1
FAST_TOLERANCE = 0.05
MIN_SPEED = 0.7
MAX_SPEED = 1.2


@dataclass(frozen=True)
class WordTiming:
    word: str
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> Dict[str, Any]:
        return {"word": self.word, "start": self.start, "end": self.end}


def clamp_speed(speed: float) -> float:
    return max(MIN_SPEED, min(MAX_SPEED, float(speed)))


def split_words(text: str) -> List[str]:
    return (text or "").split()


def chars_per_second(speed: float) -> float:
    return (BASE_WPM * float(speed) * CHARS_PER_WORD) / 60.0


def _complexity(word: str) -> float:
    n = len(word)
    if n > LONG_WORD_CHARS:
        return LONG_WORD_FACTOR
    if n <= SHORT_WORD_CHARS:
        return SHORT_WORD_FACTOR
    return 1.0


def estimate(words: Sequence[str], speed: float = 1.0) -> List[WordTiming]:
    if float(speed) <= 0:
        raise ValueError(f"speed must be positive, got {speed}")
    cps = chars_per_second(speed)
    out: List[WordTiming] = []
    t = 0.0
    for w in words:
        dur = ((len(w) + 1) / cps) * _complexity(w)
        out.append(WordTiming(word=w, start=t, end=t + dur))
        t += dur
    return out


def total_duration(schedule: Sequence[WordTiming]) -> float:
    if not schedule:
        return 0.0
    return schedule[-1].end


def tolerance_for(speed: float) -> float:
    return FAST_TOLERANCE if float(speed) > 1.0 else NORMAL_TOLERANCE


def find_word_index(
    schedule: Sequence[WordTiming],
    t: float,
    *,
    speed: float = 1.0,
    previous: int = -1,
    tolerance: Optional[float] = None,
) -> int:
    tol = tolerance_for(speed) if tolerance is None else float(tolerance)
    for i, w in enumerate(schedule):
        if (w.start - tol) <= t < (w.end + tol):
            return i
    return previous


def _payload_to_words(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    words = payload.get("words")
    if isinstance(words, list) and words:
        return words
    out = []
    for seg in payload.get("segments") or []:
        out.extend(seg.get("words") or [])
    return out


def normalize_timings(payload: Dict[str, Any]) -> List[WordTiming]:
    out: List[WordTiming] = []
    for w in _payload_to_words(payload):
        token = (w.get("word") or w.get("text") or "").strip()
        if not token:
            continue
        start = max(0.0, float(w.get("start", 0.0)))
        end = float(w.get("end", start))
        if end < start:
            end = start
        out.append(WordTiming(word=token, start=start, end=end))
    return out


def timings_from_alignment(alignment: Dict[str, Any]) -> List[WordTiming]:
    chars: List[str] = list(alignment.get("characters") or [])
    starts: List[float] = [float(x) for x in alignment.get("character_start_times_seconds") or []]
    ends: List[float] = [float(x) for x in alignment.get("character_end_times_seconds") or []]
    n = min(len(chars), len(starts), len(ends))

    out: List[WordTiming] = []
    buf: List[str] = []
    w_start = 0.0
    w_end = 0.0
    for i in range(n):
        ch = chars[i]
        if ch.isspace():
            if buf:
                out.append(WordTiming(word="".join(buf), start=w_start, end=max(w_end, w_start)))
                buf = []
            continue
        if not buf:
            w_start = starts[i]
        buf.append(ch)
        w_end = ends[i]
    if buf:
        out.append(WordTiming(word="".join(buf), start=w_start, end=max(w_end, w_start)))
    return out


def schedule_matches_text(schedule: Sequence[WordTiming], words: Iterable[str]) -> bool:
    wl = list(words)
    if len(wl) != len(schedule):
        return False

    def norm(s: str) -> str:
        return re.sub(r"\W+", "", s.lower())

    return all(norm(a.word) == norm(b) for a, b in zip(schedule, wl))
