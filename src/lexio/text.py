from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

SUMMARY_ITEM_ID = "summary"
SUMMARY_TITLE = "Summary"

_WEB_NOISE = [
    r"\b(click here|learn more|read more|see more|view all|show more)\b",
    r"\b(home|back to top|skip to content|menu|search)\b",
    r"\b(share|tweet|like|follow|subscribe)\b",
    r"\b(next|previous|prev|continue reading)\b",
]


@dataclass(frozen=True)
class Section:
    title: str
    content: str
    level: int

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "content": self.content, "level": self.level}


@dataclass(frozen=True)
class ScrapeResult:
    title: str
    text: str
    clean_text: str
    sections: Tuple[Section, ...]
    html: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "text": self.text,
            "cleanText": self.clean_text,
            "sections": [s.to_dict() for s in self.sections],
        }


def _extract_md_links(line: str) -> Tuple[str, List[str]]:
    urls: List[str] = []

    def _repl(m: re.Match[str]) -> str:
        urls.append(m.group(2))
        return m.group(1)

    s = re.sub(r"\[([^\]]+)\]\(([^)\s]+)[^)]*\)", _repl, line or "")
    return s, urls


def _strip_inline_markdown(text: str) -> str:
    t = text or ""
    # Inline code, bold, italics -> keep text only.
    t = re.sub(r"`([^`]+)`", r"\1", t)
    t = re.sub(r"\*\*([^*]+)\*\*", r"\1", t)
    t = re.sub(r"__([^_]+)__", r"\1", t)
    t = re.sub(r"(?<!\*)\*([^*]+)\*(?!\*)", r"\1", t)
    t = re.sub(r"(?<!_)_([^_]+)_(?!_)", r"\1", t)
    return t


def clean_markdown_for_tts(markdown: str) -> str:
    t = markdown or ""
    t = re.sub(r"```[\s\S]*?```", "", t)
    t = re.sub(r"!\[[^\]]*\]\([^)]+\)", "", t)
    t, _ = _extract_md_links(t)
    t = re.sub(r"^\s*#{1,6}\s+", "", t, flags=re.MULTILINE)
    t = _strip_inline_markdown(t)
    t = re.sub(r"^\s*>\s?", "", t, flags=re.MULTILINE)
    t = re.sub(r"^\s*[-*+]\s+", "", t, flags=re.MULTILINE)
    t = re.sub(r"^\s*\d+\.\s+", "", t, flags=re.MULTILINE)
    t = re.sub(r"\|[^|\n]*\|", "", t)
    t = re.sub(r"-{3,}", "", t)
    return " ".join(t.split())


def sanitize_text_for_tts(text: str) -> str:
    t = text or ""
    for pattern in _WEB_NOISE:
        t = re.sub(pattern, "", t, flags=re.IGNORECASE)
    t = re.sub(r"[«»“”‘’]", '"', t)
    t = re.sub(r"[–—]", "-", t)
    t = re.sub(r"\s*\|\s*", ". ", t)
    t = re.sub(r"\s*>\s*", ". ", t)
    t = " ".join(t.split())
    t = re.sub(r"\.\s*\.", ".", t)
    t = re.sub(r"\s+([.!?])", r"\1", t)
    return t.strip()


def parse_markdown_sections(markdown: str) -> List[Section]:
    sections: List[Section] = []
    title: Optional[str] = None
    level = 0
    buf: List[str] = []

    def flush() -> None:
        if title is None:
            return
        content = sanitize_text_for_tts(" ".join(buf))
        if content:
            sections.append(Section(title=title, content=content, level=level))

    for raw_line in (markdown or "").splitlines():
        line = raw_line.strip()
        hm = re.match(r"^(#{1,6})\s+(.+)$", line)
        if hm:
            flush()
            title = sanitize_text_for_tts(_strip_inline_markdown(hm.group(2)))
            level = len(hm.group(1))
            buf = []
            continue
        if title is not None and line:
            cleaned = clean_markdown_for_tts(line)
            if cleaned:
                buf.append(cleaned)
    flush()
    return sections


def extract_summary(text: str, max_length: int = 200) -> str:
    cleaned = " ".join((text or "").split())
    if len(cleaned) <= max_length:
        return cleaned
    truncated = cleaned[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > 0:
        return truncated[:last_space] + "..."
    return truncated + "..."


def split_text(text: str, max_chars: int = 1500) -> List[str]:
    """Split on sentence boundaries into pieces of at most ``max_chars``."""
    t = " ".join((text or "").split())
    if len(t) <= max_chars:
        return [t] if t else []

    out: List[str] = []
    cur: List[str] = []
    cur_len = 0
    for s in re.split(r"(?<=[.!?])\s+", t):
        s = s.strip()
        if not s:
            continue
        if len(s) > max_chars:
            if cur:
                out.append(" ".join(cur))
                cur, cur_len = [], 0
            words = s.split()
            chunk: List[str] = []
            wlen = 0
            for w in words:
                add = len(w) + (1 if chunk else 0)
                if wlen + add > max_chars and chunk:
                    out.append(" ".join(chunk))
                    chunk = [w]
                    wlen = len(w)
                else:
                    chunk.append(w)
                    wlen += add
            if chunk:
                out.append(" ".join(chunk))
            continue

        add = len(s) + (1 if cur else 0)
        if cur_len + add > max_chars and cur:
            out.append(" ".join(cur))
            cur = [s]
            cur_len = len(s)
        else:
            cur.append(s)
            cur_len += add
    if cur:
        out.append(" ".join(cur))
    return out


def scrape_result_from_firecrawl(data: Dict[str, Any], *, use_llm_extraction: bool = True) -> ScrapeResult:
    metadata = data.get("metadata") or {}
    title = sanitize_text_for_tts(str(metadata.get("title") or "Untitled")) or "Untitled"
    markdown = str(data.get("markdown") or "")

    clean_text = ""
    extracted = data.get("json") if data.get("json") is not None else data.get("extract")
    if use_llm_extraction and extracted:
        if isinstance(extracted, dict):
            clean_text = str(extracted.get("mainContent") or "")
        elif isinstance(extracted, str):
            try:
                parsed = json.loads(extracted)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict) and parsed.get("mainContent"):
                clean_text = str(parsed["mainContent"])
            else:
                clean_text = extracted
        clean_text = sanitize_text_for_tts(clean_text)

    text = clean_markdown_for_tts(markdown) if markdown else ""
    if not clean_text:
        clean_text = text

    return ScrapeResult(
        title=title,
        text=text,
        clean_text=clean_text,
        sections=tuple(parse_markdown_sections(markdown)),
        html=str(data.get("html") or ""),
    )
