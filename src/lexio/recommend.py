"""Turn a free-text listening request into queue picks.

The chat provider is asked first; its reply is mined for "section N"
references. When that yields nothing (or the provider is unavailable) a local
keyword scorer takes over. Both paths return a :class:`Recommendation`, and
only :func:`apply_recommendation` touches the queue.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import LexioError, ValidationError
from .queue_store import QueueItem, QueueStore

DEFAULT_CONTEXT = "User is browsing content and wants to build a listening queue"
CHAT_CONTENT_CHARS = 300

MAX_MATCHES = 3
MIN_SCORE = 15
CANDIDATE_SCORE = 10
FALLBACK_FLOOR = 5
RELATIVE_CUTOFF = 0.6

PHRASE_WEIGHT = 15
CONCEPT_WEIGHT = 10
TITLE_WEIGHT = 8
TIER_WEIGHTS = {"primary": 25, "secondary": 15, "context": 10}

EVERYTHING_SIGNALS = ["everything", "all", "complete", "full", "entire", "whole"]
SUMMARY_SIGNALS = ["summary", "overview", "brief", "summarize", "main points", "key points"]

STOP_WORDS = {
    "about", "after", "also", "been", "before", "being", "could", "does", "from", "have",
    "into", "just", "like", "more", "most", "much", "only", "over", "some", "such", "than",
    "that", "their", "them", "then", "there", "these", "they", "this", "those", "want",
    "were", "what", "when", "where", "which", "while", "will", "with", "would", "your",
    "tell", "know", "learn", "hear", "listen", "please", "show", "give",
}

KEYWORD_CATEGORIES: Dict[str, Dict[str, List[str]]] = {
    "trade": {
        "primary": ["trade network", "trading route", "silk road", "commercial network", "trade route"],
        "secondary": ["trade", "trading", "commerce", "commercial", "merchant", "goods", "exchange", "market"],
        "context": ["facilitated", "enabled", "spread", "connected", "linked"],
    },
    "technology": {
        "primary": ["technological innovation", "technology transfer", "technological advancement", "innovation spread"],
        "secondary": ["technology", "innovation", "invention", "technical", "advancement", "development"],
        "context": ["facilitated", "enabled", "spread", "transferred", "adopted", "diffused"],
    },
    "mongol": {
        "primary": ["mongol empire", "pax mongolica", "mongol expansion", "genghis khan"],
        "secondary": ["mongol", "mongols", "khan", "yuan dynasty"],
        "context": ["conquered", "united", "controlled", "expanded"],
    },
    "islamic": {
        "primary": ["islamic expansion", "dar al-islam", "islamic golden age", "abbasid caliphate"],
        "secondary": ["islam", "islamic", "muslim", "caliphate", "sultanate"],
        "context": ["expansion", "spread", "influence", "culture"],
    },
    "environment": {
        "primary": ["black death", "bubonic plague", "demographic crisis", "climate change"],
        "secondary": ["plague", "disease", "epidemic", "climate", "environment", "weather"],
        "context": ["devastated", "affected", "spread", "killed", "changed"],
    },
}

CONCEPT_MAPPINGS: Dict[str, List[str]] = {
    "trade networks": ["economic exchange", "commercial routes", "merchant activity", "goods flow"],
    "technological innovation": ["new technology", "inventions", "technical advancement", "knowledge transfer"],
    "facilitated": ["enabled", "promoted", "encouraged", "supported", "helped spread"],
    "during this period": ["at this time", "in this era", "throughout this period", "during these years"],
}

# (query terms, section terms, penalty)
NEGATIVE_INDICATORS: List[Tuple[List[str], List[str], int]] = [
    (["trade", "network"], ["religion", "spiritual", "prayer"], -15),
    (["technology", "innovation"], ["political", "governance", "administration"], -10),
    (["economic"], ["warfare", "military", "battle"], -8),
]

_SECTION_REF = re.compile(r"(?:section\s+)?(\d+)", re.IGNORECASE)

ChatFn = Callable[[str, Sequence[Dict[str, Any]], Optional[str]], Dict[str, Any]]


@dataclass(frozen=True)
class Candidate:
    title: str
    content: str
    index: int

    @property
    def item_id(self) -> str:
        return section_item_id(self.index)

    def to_queue_item(self) -> QueueItem:
        return QueueItem(id=self.item_id, title=self.title, content=self.content)

    def to_chat_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "content": self.content[:CHAT_CONTENT_CHARS], "index": self.index}


@dataclass
class Recommendation:
    text: str
    indices: List[int] = field(default_factory=list)
    include_summary: bool = False
    source: str = "local"


def section_item_id(index: int) -> str:
    return f"section-{index}"


def _has_signal(message: str, signals: Sequence[str]) -> bool:
    return any(re.search(rf"\b{re.escape(s)}\b", message) for s in signals)


def wants_everything(message: str) -> bool:
    return _has_signal((message or "").lower(), EVERYTHING_SIGNALS)


def wants_summary(message: str) -> bool:
    return _has_signal((message or "").lower(), SUMMARY_SIGNALS)


def extract_topics(message: str) -> Tuple[List[str], List[str]]:
    """Return (two-word phrases, single words) worth matching from a query."""
    tokens = re.findall(r"[a-z0-9][a-z0-9'-]*", (message or "").lower())
    words = [w for w in tokens if len(w) > 3 and w not in STOP_WORDS]
    phrases = [f"{a} {b}" for a, b in zip(words, words[1:])]
    return phrases, words


def _contains_any(text: str, terms: Sequence[str]) -> bool:
    return any(t in text for t in terms)


def score_candidate(message: str, candidate: Candidate) -> int:
    message = (message or "").lower()
    section_text = f"{candidate.title} {candidate.content}".lower()
    phrases, words = extract_topics(message)
    score = 0

    for phrase in phrases:
        if phrase in section_text:
            score += PHRASE_WEIGHT

    for concept, related in CONCEPT_MAPPINGS.items():
        if concept in message:
            score += CONCEPT_WEIGHT * sum(1 for term in related if term in section_text)

    for tiers in KEYWORD_CATEGORIES.values():
        hits = {
            tier: (_contains_any(message, terms), _contains_any(section_text, terms))
            for tier, terms in tiers.items()
        }
        for tier in ("primary", "secondary"):
            if all(hits[tier]):
                score += TIER_WEIGHTS[tier]
        user_core = hits["primary"][0] or hits["secondary"][0]
        section_core = hits["primary"][1] or hits["secondary"][1]
        if user_core and section_core and all(hits["context"]):
            score += TIER_WEIGHTS["context"]

    title_words = [w for w in re.split(r"\s+", candidate.title.lower()) if w]
    for word in words:
        if any(word in tw or tw in word for tw in title_words):
            score += TITLE_WEIGHT

    for user_terms, section_terms, penalty in NEGATIVE_INDICATORS:
        if _contains_any(message, user_terms) and _contains_any(section_text, section_terms):
            score += penalty

    return score


def _describe(titles: List[str], include_summary: bool) -> str:
    if not titles:
        text = (
            "I couldn't find content that closely matches that request. "
            "Try more specific key terms, or say 'everything' to queue all of it."
        )
    elif len(titles) == 1:
        text = f'Found 1 relevant section: "{titles[0]}".'
    else:
        text = f"Found {len(titles)} relevant sections: {', '.join(titles)}."
    if include_summary:
        text += " The summary is included for an overview."
    return text


def _select_everything(candidates: Sequence[Candidate]) -> Recommendation:
    return Recommendation(
        text=f"Queued all available content ({len(candidates)} sections + summary).",
        indices=[c.index for c in candidates],
        include_summary=True,
        source="local",
    )


def recommend_locally(message: str, candidates: Sequence[Candidate]) -> Recommendation:
    if wants_everything(message):
        return _select_everything(candidates)
    include_summary = wants_summary(message)

    scored = sorted(
        ((score_candidate(message, c), pos, c) for pos, c in enumerate(candidates)),
        key=lambda t: (-t[0], t[1]),
    )
    relevant = [t for t in scored if t[0] > CANDIDATE_SCORE]
    cutoff = max(relevant[0][0] * RELATIVE_CUTOFF, MIN_SCORE) if relevant else MIN_SCORE

    picked = [c for score, _, c in relevant if score >= cutoff][:MAX_MATCHES]
    if not picked and scored and scored[0][0] > FALLBACK_FLOOR:
        picked = [scored[0][2]]

    return Recommendation(
        text=_describe([c.title for c in picked], include_summary),
        indices=[c.index for c in picked],
        include_summary=include_summary,
        source="local",
    )


def parse_section_numbers(reply: str, candidates: Sequence[Candidate]) -> List[int]:
    """Map 1-based section numbers in a chat reply to candidate indices."""
    out: List[int] = []
    for m in _SECTION_REF.finditer(reply or ""):
        n = int(m.group(1))
        if 1 <= n <= len(candidates):
            index = candidates[n - 1].index
            if index not in out:
                out.append(index)
    return out


def recommend(
    message: str,
    candidates: Sequence[Candidate],
    *,
    chat: Optional[ChatFn] = None,
    context: Optional[str] = DEFAULT_CONTEXT,
    info_cb: Optional[Callable[[str], None]] = None,
) -> Recommendation:
    if not message or not message.strip():
        raise ValidationError("Message is required")
    if wants_everything(message):
        return _select_everything(candidates)
    if chat is None or not candidates:
        return recommend_locally(message, candidates)

    try:
        data = chat(message, [c.to_chat_dict() for c in candidates], context)
    except LexioError as e:
        if info_cb:
            info_cb(f"recommend: chat failed ({e}); using local scorer")
        return recommend_locally(message, candidates)

    reply = str(data.get("response") or "")
    indices = parse_section_numbers(reply, candidates)
    if not indices:
        if info_cb:
            info_cb("recommend: chat reply named no sections; using local scorer")
        local = recommend_locally(message, candidates)
        local.text = reply or local.text
        return local

    include_summary = "summary" in reply.lower() or "summary" in message.lower()
    return Recommendation(text=reply, indices=indices, include_summary=include_summary, source="chat")


def apply_recommendation(
    queue: QueueStore,
    recommendation: Recommendation,
    candidates: Sequence[Candidate],
    summary_item: Optional[QueueItem] = None,
) -> List[str]:
    """Enqueue what a recommendation picked. Returns the ids actually added."""
    by_index = {c.index: c for c in candidates}
    added: List[str] = []
    for index in recommendation.indices:
        cand = by_index.get(index)
        if cand is None:
            continue
        item = cand.to_queue_item()
        if queue.add(item):
            added.append(item.id)
    if recommendation.include_summary and summary_item is not None:
        if queue.add(summary_item):
            added.append(summary_item.id)
    return added
