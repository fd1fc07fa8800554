import base64
from types import SimpleNamespace

import pytest
import requests

from lexio.errors import ConfigurationError, ProviderError, QuotaError, RateLimitError, ValidationError
from lexio.providers import (
    DEFAULT_VOICE_ID,
    MODE_BUFFER,
    MODE_CHUNKED,
    MODE_STREAM,
    POPULAR_VOICES,
    ChatClient,
    ElevenLabsClient,
    FirecrawlClient,
    build_chat_system_prompt,
    is_valid_url,
)


class FakeResponse:
    def __init__(self, status=200, *, json_data=None, content=b"", text="", reason="OK"):
        self.status_code = status
        self._json = json_data
        self.content = content
        self.text = text
        self.reason = reason

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), 2):
            yield self.content[i : i + 2]


class FakeHTTP:
    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def post(self, url, **kw):
        self.calls.append(("POST", url, kw))
        return self.handler(url, kw)

    def get(self, url, **kw):
        self.calls.append(("GET", url, kw))
        return self.handler(url, kw)


def test_url_validation_happens_before_network():
    http = FakeHTTP(lambda url, kw: pytest.fail("no request expected"))
    client = FirecrawlClient("key", session=http)
    with pytest.raises(ValidationError):
        client.scrape("not a url")
    assert is_valid_url("https://example.com/a")
    assert not is_valid_url("ftp://example.com")


def test_scrape_missing_key(monkeypatch):
    monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        FirecrawlClient(session=FakeHTTP(lambda u, k: None)).scrape("https://example.com")


def test_scrape_builds_result():
    payload = {
        "success": True,
        "data": {"markdown": "# Intro\n\nHello world.", "json": {"mainContent": "Hello world."}, "metadata": {"title": "Page"}},
    }
    http = FakeHTTP(lambda url, kw: FakeResponse(json_data=payload))
    res = FirecrawlClient("key", session=http).scrape("https://example.com")
    assert res.title == "Page"
    assert res.clean_text == "Hello world."
    assert [s.title for s in res.sections] == ["Intro"]
    body = http.calls[0][2]["json"]
    assert body["onlyMainContent"] is True
    assert body["formats"] == ["markdown", "json"]
    assert http.calls[0][2]["headers"]["Authorization"] == "Bearer key"


def test_scrape_error_statuses_map_to_taxonomy():
    cases = [
        (FakeResponse(401, text="unauthorized"), ConfigurationError),
        (FakeResponse(402, text="payment required"), QuotaError),
        (FakeResponse(429, text="slow down"), RateLimitError),
        (FakeResponse(500, text="boom", reason="Server Error"), ProviderError),
    ]
    for resp, exc in cases:
        client = FirecrawlClient("key", session=FakeHTTP(lambda u, k, r=resp: r))
        with pytest.raises(exc):
            client.scrape("https://example.com")


def test_scrape_unsuccessful_payload():
    http = FakeHTTP(lambda url, kw: FakeResponse(json_data={"success": False, "error": "blocked"}))
    with pytest.raises(ProviderError, match="blocked"):
        FirecrawlClient("key", session=http).scrape("https://example.com")


def test_synthesize_stream_and_buffer():
    def handler(url, kw):
        return FakeResponse(content=b"stream-bytes" if url.endswith("/stream") else b"buffer-bytes")

    http = FakeHTTP(handler)
    client = ElevenLabsClient("key", session=http)
    out = client.synthesize("Hello there.", "voice-1", 2.0, mode=MODE_STREAM)
    assert out.mode == MODE_STREAM
    assert out.playable().data == b"stream-bytes"
    assert http.calls[0][2]["json"]["voice_settings"]["speed"] == 1.2
    assert http.calls[0][2]["headers"]["xi-api-key"] == "key"

    out = client.synthesize("Hello there.", "voice-1", 1.0, mode=MODE_BUFFER)
    assert out.playable().data == b"buffer-bytes"
    assert http.calls[1][1].endswith("/text-to-speech/voice-1")


def test_synthesize_chunked_reassembles_in_order():
    def handler(url, kw):
        text = kw["json"]["text"]
        return FakeResponse(content=text[:1].encode())

    text = "Alpha sentence here. Beta sentence here. Gamma sentence here."
    client = ElevenLabsClient("key", chunk_max_chars=25, workers=3, session=FakeHTTP(handler))
    out = client.synthesize(text, mode=MODE_CHUNKED)
    assert out.mode == MODE_CHUNKED
    audio = out.playable()
    assert audio.data == b"ABG"
    assert audio.chunk_count == 3


def test_synthesize_with_timestamps_returns_timings():
    payload = {
        "audio_base64": base64.b64encode(b"mp3").decode(),
        "alignment": {
            "characters": list("hi yo"),
            "character_start_times_seconds": [0.0, 0.1, 0.2, 0.3, 0.4],
            "character_end_times_seconds": [0.1, 0.2, 0.3, 0.4, 0.5],
        },
    }
    http = FakeHTTP(lambda url, kw: FakeResponse(json_data=payload))
    out = ElevenLabsClient("key", with_timestamps=True, session=http).synthesize("hi yo")
    assert out.playable().data == b"mp3"
    assert [t.word for t in out.timings] == ["hi", "yo"]
    assert http.calls[0][1].endswith("/with-timestamps")


def test_synthesize_rejects_empty_text():
    with pytest.raises(ValidationError):
        ElevenLabsClient("key", session=FakeHTTP(lambda u, k: None)).synthesize("   ")


def test_voices_fall_back_without_key_or_on_error(monkeypatch):
    monkeypatch.delenv("ELEVENLABS_API_KEY", raising=False)
    voices = ElevenLabsClient(session=FakeHTTP(lambda u, k: pytest.fail("no request"))).list_voices()
    assert len(voices) == len(POPULAR_VOICES)
    assert voices[0].voice_id == DEFAULT_VOICE_ID

    def boom(url, kw):
        raise requests.ConnectionError("down")

    assert len(ElevenLabsClient("key", session=FakeHTTP(boom)).list_voices()) == len(POPULAR_VOICES)
    bad_key = FakeHTTP(lambda u, k: FakeResponse(401, text="bad"))
    assert len(ElevenLabsClient("key", session=bad_key).list_voices()) == len(POPULAR_VOICES)


def test_voices_merge_provider_names():
    api = {"voices": [{"voice_id": DEFAULT_VOICE_ID, "name": "Serafina v2", "preview_url": "https://p/1.mp3"}]}
    voices = ElevenLabsClient("key", session=FakeHTTP(lambda u, k: FakeResponse(json_data=api))).list_voices()
    assert voices[0].name == "Serafina v2"
    assert voices[0].to_dict()["preview_url"] == "https://p/1.mp3"
    assert voices[0].gender == "female"


def _fake_openai(content):
    def create(**kw):
        create.kwargs = kw
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create))), create


def test_chat_sends_numbered_sections():
    client, create = _fake_openai("Section 2 covers this.")
    out = ChatClient(client=client).chat(
        "plague?", [{"title": "A", "content": "x" * 400, "index": 0}, {"title": "B", "content": "y", "index": 1}]
    )
    assert out["response"] == "Section 2 covers this."
    assert create.kwargs["model"] == "gpt-4o-mini"
    assert create.kwargs["max_tokens"] == 300
    system = create.kwargs["messages"][0]["content"]
    assert '1. "A" - ' + "x" * 150 + "..." in system
    assert '2. "B" - y...' in system


def test_chat_validation_and_empty_reply():
    client, _ = _fake_openai("   ")
    with pytest.raises(ValidationError):
        ChatClient(client=client).chat("", [])
    with pytest.raises(ProviderError, match="No response generated"):
        ChatClient(client=client).chat("hello", [])


def test_system_prompt_without_sections():
    prompt = build_chat_system_prompt([], None)
    assert "New conversation" in prompt
    assert "Available content sections" not in prompt


def test_scrape_non_json_body_is_provider_error():
    http = FakeHTTP(lambda url, kw: FakeResponse(text="<html>gateway page</html>"))
    with pytest.raises(ProviderError, match="invalid response"):
        FirecrawlClient("key", session=http).scrape("https://example.com")
    listing = FakeHTTP(lambda url, kw: FakeResponse(json_data=["not", "a", "dict"]))
    with pytest.raises(ProviderError, match="invalid response"):
        FirecrawlClient("key", session=listing).scrape("https://example.com")


def test_timestamps_with_bad_payload_is_provider_error():
    http = FakeHTTP(lambda url, kw: FakeResponse(text="oops"))
    client = ElevenLabsClient("key", with_timestamps=True, session=http)
    with pytest.raises(ProviderError, match="invalid response"):
        client.synthesize("hi yo")
    bad_audio = FakeHTTP(lambda url, kw: FakeResponse(json_data={"audio_base64": "***"}))
    with pytest.raises(ProviderError, match="invalid response"):
        ElevenLabsClient("key", with_timestamps=True, session=bad_audio).synthesize("hi yo")
