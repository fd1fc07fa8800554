from __future__ import annotations

import base64
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import requests
from dotenv import load_dotenv
from openai import APIError, AuthenticationError, OpenAI
from openai import RateLimitError as OpenAIRateLimitError

from .audio import DEFAULT_CONTENT_TYPE, AudioChunk, AudioResource, assemble_chunks, assemble_stream
from .errors import ConfigurationError, LexioError, ProviderError, QuotaError, RateLimitError, ValidationError
from .text import ScrapeResult, scrape_result_from_firecrawl, split_text
from .timing import WordTiming, clamp_speed, timings_from_alignment

load_dotenv()

FIRECRAWL_URL = "https://api.firecrawl.dev/v1/scrape"
ELEVENLABS_BASE = "https://api.elevenlabs.io/v1"
DEFAULT_VOICE_ID = "4tRn1lSkEn13EVTuqb0g"
DEFAULT_TTS_MODEL = "eleven_turbo_v2"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
CHUNK_MAX_CHARS = 1500

MODE_STREAM = "stream"
MODE_BUFFER = "buffer"
MODE_CHUNKED = "chunked"

EXCLUDE_TAGS = [
    "nav", "footer", "header", "aside", "script", "style", "noscript",
    ".navigation", ".nav", ".menu", ".sidebar", ".footer", ".header",
    ".ads", ".advertisement", ".social-media", ".share-buttons",
    ".breadcrumb", ".pagination", ".tags", ".categories",
    "#nav", "#footer", "#header", "#sidebar", "#ads",
]
INCLUDE_TAGS = [
    "main", "article", "section", "div.content", "div.main",
    "h1", "h2", "h3", "h4", "h5", "h6", "p", "ul", "ol", "li",
    ".content", ".main-content", ".article-content", ".post-content",
]
EXTRACTION_PROMPT = (
    "Extract the main content from this webpage in a clean, readable format optimized for text-to-speech. "
    "Focus on the main article or content, exclude navigation, ads, footers, and other non-essential elements. "
    "Structure the content with clear paragraphs and maintain logical flow. "
    "Remove any formatting that would sound awkward when read aloud (like \"Click here\", \"Learn more\", navigation elements, etc.). "
    "Return the content as clean, flowing text that would sound natural when spoken."
)

POPULAR_VOICES: List[Dict[str, str]] = [
    {"voice_id": "4tRn1lSkEn13EVTuqb0g", "name": "Serafina", "gender": "female", "accent": "american", "description": "Warm and expressive narrator"},
    {"voice_id": "kdmDKE6EkgrWrrykO9Qt", "name": "Alexandra", "gender": "female", "accent": "american", "description": "Super realistic, young female voice that likes to chat"},
    {"voice_id": "L0Dsvb3SLTyegXwtm47J", "name": "Archer", "gender": "male", "accent": "british", "description": "Grounded and friendly young British male with charm"},
    {"voice_id": "g6xIsTj2HwM6VR4iXFCw", "name": "Jessica Anne Bogart", "gender": "female", "accent": "american", "description": "Empathetic and expressive, great for wellness coaches"},
    {"voice_id": "OYTbf65OHHFELVut7v2H", "name": "Hope", "gender": "female", "accent": "american", "description": "Bright and uplifting, perfect for positive interactions"},
    {"voice_id": "dj3G1R1ilKoFKhBnWOzG", "name": "Eryn", "gender": "female", "accent": "american", "description": "Friendly and relatable, ideal for casual interactions"},
    {"voice_id": "HDA9tsk27wYi3uq0fPcK", "name": "Stuart", "gender": "male", "accent": "australian", "description": "Professional & friendly Aussie, ideal for technical assistance"},
    {"voice_id": "1SM7GgM6IMuvQlz2BwM3", "name": "Mark", "gender": "male", "accent": "american", "description": "Relaxed and laid back, suitable for nonchalant chats"},
    {"voice_id": "PT4nqlKZfc06VW1BuClj", "name": "Angela", "gender": "female", "accent": "american", "description": "Raw and relatable, great listener and down to earth"},
    {"voice_id": "vBKc2FfBKJfcZNyEt1n6", "name": "Finn", "gender": "male", "accent": "american", "description": "Tenor pitched, excellent for podcasts and light chats"},
    {"voice_id": "56AoDkrOh6qfVPDXZ7Pt", "name": "Cassidy", "gender": "female", "accent": "american", "description": "Engaging and energetic, good for entertainment contexts"},
]

InfoCb = Optional[Callable[[str], None]]


@dataclass
class Voice:
    voice_id: str
    name: str
    gender: str = ""
    accent: str = ""
    description: str = ""
    preview_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "voice_id": self.voice_id,
            "name": self.name,
            "gender": self.gender,
            "accent": self.accent,
            "description": self.description,
        }
        if self.preview_url:
            out["preview_url"] = self.preview_url
        return out


@dataclass
class SynthesisResult:
    mode: str
    audio: Optional[AudioResource] = None
    chunks: List[AudioChunk] = field(default_factory=list)
    content_type: str = DEFAULT_CONTENT_TYPE
    timings: Optional[List[WordTiming]] = None

    def playable(self) -> AudioResource:
        if self.audio is not None:
            return self.audio
        return assemble_chunks(self.chunks, self.content_type)


def _require_key(env_name: str, provider: str, explicit: Optional[str] = None) -> str:
    key = explicit or os.getenv(env_name)
    if not key:
        raise ConfigurationError(f"{env_name} environment variable is required", provider=provider)
    return key


def is_valid_url(url: str) -> bool:
    try:
        p = urlparse(url or "")
    except ValueError:
        return False
    return p.scheme in {"http", "https"} and bool(p.netloc)


def _error_for_response(resp: requests.Response, provider: str) -> LexioError:
    body = resp.text or ""
    status = int(resp.status_code)
    lowered = body.lower()
    if status == 401:
        return ConfigurationError(f"{provider} API key is invalid or missing", provider=provider, status=401)
    if status == 402 or "quota" in lowered or "billing" in lowered:
        return QuotaError(f"{provider} API quota exceeded or billing issue", status=status, details=body)
    if status == 429:
        return RateLimitError(f"{provider} API rate limit exceeded.", status=status, details=body)
    return ProviderError(f"{provider} API error: {status} {resp.reason or ''}".strip(), status=status, details=body)


class FirecrawlClient:
    def __init__(self, api_key: Optional[str] = None, *, timeout: float = 60.0, session: Optional[requests.Session] = None) -> None:
        self.api_key = api_key
        self.timeout = float(timeout)
        self.http = session or requests.Session()

    def scrape(self, url: str, *, use_llm_extraction: bool = True, info_cb: InfoCb = None) -> ScrapeResult:
        if not url or not isinstance(url, str) or not is_valid_url(url):
            raise ValidationError("Valid URL is required")
        key = _require_key("FIRECRAWL_API_KEY", "Firecrawl", self.api_key)

        body: Dict[str, Any] = {
            "url": url,
            "formats": ["markdown", "json"] if use_llm_extraction else ["markdown", "html"],
            "onlyMainContent": True,
            "excludeTags": EXCLUDE_TAGS,
            "includeTags": INCLUDE_TAGS,
        }
        if use_llm_extraction:
            body["jsonOptions"] = {"prompt": EXTRACTION_PROMPT}

        if info_cb:
            info_cb(f"scrape url={url} llm_extraction={use_llm_extraction}")
        try:
            resp = self.http.post(
                FIRECRAWL_URL,
                headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Failed to scrape website: {e}") from e
        if not resp.ok:
            err = _error_for_response(resp, "Firecrawl")
            if type(err) is ProviderError:
                err = ProviderError(f"Firecrawl API error ({resp.status_code}): {resp.text}", status=resp.status_code)
            raise err

        try:
            payload = resp.json()
        except ValueError as e:
            raise ProviderError(f"Firecrawl returned an invalid response: {e}", status=resp.status_code) from e
        if not isinstance(payload, dict):
            raise ProviderError("Firecrawl returned an invalid response", status=resp.status_code)
        if not payload.get("success") or not payload.get("data"):
            raise ProviderError(f"Firecrawl API error: {payload.get('error') or 'Unknown error'}", status=400)
        result = scrape_result_from_firecrawl(payload["data"], use_llm_extraction=use_llm_extraction)
        if info_cb:
            info_cb(f"scrape done title={result.title!r} sections={len(result.sections)} chars={len(result.clean_text):,}")
        return result


class ElevenLabsClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = DEFAULT_TTS_MODEL,
        timeout: float = 90.0,
        chunk_max_chars: int = CHUNK_MAX_CHARS,
        workers: int = 4,
        with_timestamps: bool = False,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = float(timeout)
        self.chunk_max_chars = int(chunk_max_chars)
        self.workers = max(1, int(workers))
        self.with_timestamps = bool(with_timestamps)
        self.http = session or requests.Session()

    def _body(self, text: str, speed: float) -> Dict[str, Any]:
        return {
            "text": text,
            "model_id": self.model,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
                "style": 0.0,
                "use_speaker_boost": True,
                "speed": clamp_speed(speed),
            },
        }

    def _post(self, path: str, key: str, body: Dict[str, Any], *, accept: str, stream: bool = False) -> requests.Response:
        try:
            resp = self.http.post(
                f"{ELEVENLABS_BASE}{path}",
                headers={"Accept": accept, "Content-Type": "application/json", "xi-api-key": key},
                json=body,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.RequestException as e:
            raise ProviderError(f"ElevenLabs request failed: {e}") from e
        if not resp.ok:
            raise _error_for_response(resp, "ElevenLabs")
        return resp

    def synthesize(
        self,
        text: str,
        voice_id: str = DEFAULT_VOICE_ID,
        speed: float = 1.0,
        *,
        mode: str = MODE_BUFFER,
        info_cb: InfoCb = None,
    ) -> SynthesisResult:
        if not text or not text.strip():
            raise ValidationError("Text is required")
        key = _require_key("ELEVENLABS_API_KEY", "ElevenLabs", self.api_key)
        voice_id = voice_id or DEFAULT_VOICE_ID
        if info_cb:
            info_cb(f"tts chars={len(text):,} voice={voice_id} speed={clamp_speed(speed):.2f} mode={mode}")

        if mode == MODE_STREAM:
            resp = self._post(f"/text-to-speech/{voice_id}/stream", key, self._body(text, speed), accept="audio/mpeg", stream=True)
            try:
                audio = assemble_stream(resp.iter_content(chunk_size=8192))
            except requests.RequestException as e:
                raise ProviderError(f"ElevenLabs stream interrupted: {e}") from e
            return SynthesisResult(mode=MODE_STREAM, audio=audio)

        if mode == MODE_CHUNKED and len(text) > self.chunk_max_chars:
            return self._synthesize_chunked(text, voice_id, speed, key, info_cb=info_cb)

        if self.with_timestamps:
            resp = self._post(f"/text-to-speech/{voice_id}/with-timestamps", key, self._body(text, speed), accept="application/json")
            try:
                payload = resp.json()
                data = base64.b64decode(payload.get("audio_base64") or "", validate=True)
            except (ValueError, AttributeError) as e:
                raise ProviderError(f"ElevenLabs returned an invalid response: {e}", status=resp.status_code) from e
            timings = timings_from_alignment(payload.get("alignment") or {}) or None
            return SynthesisResult(mode=MODE_BUFFER, audio=AudioResource(data=data), timings=timings)

        resp = self._post(f"/text-to-speech/{voice_id}", key, self._body(text, speed), accept="audio/mpeg")
        return SynthesisResult(mode=MODE_BUFFER, audio=AudioResource(data=resp.content))

    def _synthesize_chunked(self, text: str, voice_id: str, speed: float, key: str, *, info_cb: InfoCb = None) -> SynthesisResult:
        pieces = split_text(text, self.chunk_max_chars)
        if info_cb:
            info_cb(f"tts chunked pieces={len(pieces)} workers={self.workers}")

        def _one(idx: int, piece: str) -> AudioChunk:
            try:
                resp = self._post(f"/text-to-speech/{voice_id}", key, self._body(piece, speed), accept="audio/mpeg")
            except ProviderError as e:
                if type(e) is ProviderError:
                    raise ProviderError(f"Chunk {idx} failed: {e}", status=e.status, details=e.details) from e
                raise
            return AudioChunk(sequence_index=idx, data=resp.content, source_text=piece)

        chunks: List[AudioChunk] = []
        with ThreadPoolExecutor(max_workers=min(self.workers, max(1, len(pieces)))) as ex:
            futs = [ex.submit(_one, i, p) for i, p in enumerate(pieces)]
            for fut in as_completed(futs):
                chunks.append(fut.result())
        return SynthesisResult(mode=MODE_CHUNKED, chunks=chunks)

    def list_voices(self, *, info_cb: InfoCb = None) -> List[Voice]:
        fallback = [Voice(**v) for v in POPULAR_VOICES]
        key = self.api_key or os.getenv("ELEVENLABS_API_KEY")
        if not key:
            if info_cb:
                info_cb("voices: ELEVENLABS_API_KEY not set, using built-in list")
            return fallback
        try:
            resp = self.http.get(f"{ELEVENLABS_BASE}/voices", headers={"xi-api-key": key}, timeout=self.timeout)
            if not resp.ok:
                raise _error_for_response(resp, "ElevenLabs")
            api_voices = {v.get("voice_id"): v for v in (resp.json().get("voices") or []) if isinstance(v, dict)}
        except (requests.RequestException, ValueError, LexioError) as e:
            if info_cb:
                info_cb(f"voices: provider call failed ({e}), using built-in list")
            return fallback

        merged: List[Voice] = []
        for v in POPULAR_VOICES:
            api = api_voices.get(v["voice_id"])
            if api:
                merged.append(
                    Voice(
                        voice_id=api["voice_id"],
                        name=str(api.get("name") or v["name"]),
                        gender=v["gender"],
                        accent=v["accent"],
                        description=v["description"],
                        preview_url=api.get("preview_url"),
                    )
                )
            else:
                merged.append(Voice(**v))
        return merged


def build_chat_system_prompt(sections: Sequence[Dict[str, Any]], context: Optional[str] = None) -> str:
    sections_context = ""
    if sections:
        lines = [f'{i + 1}. "{s.get("title", "")}" - {str(s.get("content", ""))[:150]}...' for i, s in enumerate(sections)]
        sections_context = "\n\nAvailable content sections:\n" + "\n".join(lines)
    return (
        "You are Lexio AI, a smart learning assistant that helps users discover and organize content for "
        "text-to-speech listening. Your role is to:\n\n"
        "1. Analyze user requests to understand what they want to learn about\n"
        "2. Recommend specific content sections that best match their interests\n"
        "3. Provide helpful, encouraging responses that guide users toward relevant learning materials\n"
        "4. Be concise but friendly - keep responses under 200 words\n\n"
        "IMPORTANT: You should ANALYZE the available content sections and recommend the most relevant ones by "
        "their INDEX NUMBERS (1, 2, 3, etc.) based on the user's request.\n\n"
        "When recommending content:\n"
        "- Mention specific section titles that match the user's interests\n"
        "- Explain briefly why those sections are relevant\n"
        "- If asking about multiple topics, prioritize the most relevant sections\n"
        "- If no sections match well, acknowledge this and suggest alternatives\n"
        "- Use encouraging, educational language\n\n"
        f"Context about the user's current session: {context or 'New conversation'}{sections_context}"
    )


class ChatClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = DEFAULT_CHAT_MODEL,
        max_tokens: int = 300,
        temperature: float = 0.7,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        self._client = client

    def chat(self, message: str, sections: Sequence[Dict[str, Any]], context: Optional[str] = None) -> Dict[str, Any]:
        if not message or not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required")
        client = self._client
        if client is None:
            client = OpenAI(api_key=_require_key("OPENAI_API_KEY", "OpenAI", self.api_key))
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": build_chat_system_prompt(sections, context)},
                    {"role": "user", "content": message},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except AuthenticationError as e:
            raise ConfigurationError("OpenAI API key is invalid or missing", provider="OpenAI", status=401) from e
        except OpenAIRateLimitError as e:
            text = str(e).lower()
            if "quota" in text or "billing" in text or "insufficient_quota" in text:
                raise QuotaError("OpenAI API quota exceeded or billing issue", details=str(e)) from e
            raise RateLimitError("OpenAI API rate limit exceeded.", details=str(e)) from e
        except APIError as e:
            raise ProviderError("Failed to generate chat response", details=str(e)) from e

        content = (completion.choices[0].message.content or "").strip() if completion.choices else ""
        if not content:
            raise ProviderError("No response generated")
        usage = getattr(completion, "usage", None)
        return {"response": content, "usage": usage.model_dump() if hasattr(usage, "model_dump") else usage}
