from __future__ import annotations

import time
from typing import Callable, List, Optional, Tuple

from .audio import AudioPlayer
from .errors import ValidationError
from .providers import DEFAULT_VOICE_ID, MODE_BUFFER, ChatClient, ElevenLabsClient, FirecrawlClient, SynthesisResult, Voice
from .queue_store import QueueItem, QueueStore
from .recommend import Candidate, Recommendation, apply_recommendation, recommend, section_item_id
from .session import PlaybackSession, SessionStatus, SyncConfig, ThreadTicker
from .text import SUMMARY_ITEM_ID, SUMMARY_TITLE, ScrapeResult, Section, extract_summary

SUMMARY_CHARS = 1000


class Lexio:
    """Programmatic API: scrape a page, build a listening queue, play it back."""

    def __init__(
        self,
        *,
        firecrawl: Optional[FirecrawlClient] = None,
        tts: Optional[ElevenLabsClient] = None,
        chat: Optional[ChatClient] = None,
        queue: Optional[QueueStore] = None,
        voice_id: str = DEFAULT_VOICE_ID,
        speed: float = 1.0,
        info_cb: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.firecrawl = firecrawl or FirecrawlClient()
        self.tts = tts or ElevenLabsClient()
        self.chat = chat or ChatClient()
        self.queue = queue or QueueStore()
        self.voice_id = voice_id or DEFAULT_VOICE_ID
        self.speed = float(speed)
        self.info_cb = info_cb
        self.content: Optional[ScrapeResult] = None

    def load_url(self, url: str, *, use_llm_extraction: bool = True) -> ScrapeResult:
        return self.load_content(self.firecrawl.scrape(url, use_llm_extraction=use_llm_extraction, info_cb=self.info_cb))

    def load_content(self, content: ScrapeResult) -> ScrapeResult:
        if self.content is not None and self.content is not content:
            self.queue.clear()
        self.content = content
        return content

    def _require_content(self) -> ScrapeResult:
        if self.content is None:
            raise ValidationError("No content loaded; scrape a URL first")
        return self.content

    def sections(self) -> List[Section]:
        return list(self._require_content().sections)

    def section_item(self, index: int) -> QueueItem:
        sections = self.sections()
        if not (0 <= index < len(sections)):
            raise IndexError(f"section {index} out of range (0-{len(sections) - 1})")
        s = sections[index]
        return QueueItem(id=section_item_id(index), title=s.title, content=s.content)

    def summary_item(self) -> QueueItem:
        content = self._require_content()
        return QueueItem(
            id=SUMMARY_ITEM_ID,
            title=SUMMARY_TITLE,
            content=extract_summary(content.clean_text or content.text, SUMMARY_CHARS),
        )

    def candidates(self, *, include_queued: bool = False) -> List[Candidate]:
        out: List[Candidate] = []
        for i, s in enumerate(self.sections()):
            if not include_queued and self.queue.is_present(section_item_id(i)):
                continue
            out.append(Candidate(title=s.title, content=s.content, index=i))
        return out

    def add_section(self, index: int) -> bool:
        return self.queue.add(self.section_item(index))

    def add_summary(self) -> bool:
        return self.queue.add(self.summary_item())

    def recommend(self, message: str, *, use_chat: bool = True) -> Recommendation:
        return recommend(
            message,
            self.candidates(),
            chat=self.chat.chat if use_chat else None,
            info_cb=self.info_cb,
        )

    def recommend_and_enqueue(self, message: str, *, use_chat: bool = True) -> Tuple[Recommendation, List[str]]:
        candidates = self.candidates()
        rec = recommend(message, candidates, chat=self.chat.chat if use_chat else None, info_cb=self.info_cb)
        added = apply_recommendation(self.queue, rec, candidates, self.summary_item())
        return rec, added

    def voices(self) -> List[Voice]:
        return self.tts.list_voices(info_cb=self.info_cb)

    def synthesize(self, text: str, *, mode: str = MODE_BUFFER) -> SynthesisResult:
        return self.tts.synthesize(text, self.voice_id, self.speed, mode=mode, info_cb=self.info_cb)

    def _session_synthesize(self, text: str, voice_id: str, speed: float, *, mode: str) -> SynthesisResult:
        return self.tts.synthesize(text, voice_id, speed, mode=mode, info_cb=self.info_cb)

    def create_session(
        self,
        *,
        player: Optional[AudioPlayer] = None,
        config: Optional[SyncConfig] = None,
        background: bool = True,
        clock: Callable[[], float] = time.monotonic,
        ticker_factory=ThreadTicker,
        on_change: Optional[Callable[[SessionStatus], None]] = None,
    ) -> PlaybackSession:
        return PlaybackSession(
            self.queue,
            self._session_synthesize,
            player=player,
            voice_id=self.voice_id,
            speed=self.speed,
            config=config,
            clock=clock,
            ticker_factory=ticker_factory,
            background=background,
            info_cb=self.info_cb,
            on_change=on_change,
        )
