from __future__ import annotations

import argparse
from datetime import datetime
import json
import os
from pathlib import Path
import shutil
import sys
import threading
from typing import Any, Callable, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .api import Lexio
from .audio import AudioPlayer, FfplayPlayer, SilentPlayer, write_audio
from .errors import ConfigurationError, LexioError, ValidationError, user_message
from .providers import (
    DEFAULT_CHAT_MODEL,
    DEFAULT_TTS_MODEL,
    DEFAULT_VOICE_ID,
    MODE_BUFFER,
    MODE_CHUNKED,
    MODE_STREAM,
    ChatClient,
    ElevenLabsClient,
    FirecrawlClient,
)
from .queue_store import QueueStore
from .session import COMPLETED, PlaybackSession, SyncConfig
from .text import extract_summary

console = Console()

SPEED_PRESETS: dict[int, float] = {1: 0.70, 2: 0.85, 3: 1.00, 4: 1.10, 5: 1.20}

DEFAULT_CONFIG: dict[str, Any] = {
    "global": {
        "display": "normal",
        "verbose": 2,
        "logging": 0,
        "logging_file": None,
        "logging_clear": False,
    },
    "scrape": {
        "use_llm_extraction": True,
        "timeout_seconds": 60,
    },
    "tts": {
        "model": DEFAULT_TTS_MODEL,
        "request_timeout_seconds": 90,
        "chunk_max_chars": 1500,
        "multi_thread": 4,
        "with_timestamps": False,
    },
    "sync": {
        "tick_interval": 0.09,
        "lead_in_delay": 0.5,
        "lead_in_offset": -0.225,
        "speed_drift_factor": 0.3,
        "normal_tolerance": 0.1,
        "fast_tolerance": 0.05,
        "stream_threshold": 3000,
        "chunk_threshold": 2000,
    },
    "recommend": {
        "use_chat": True,
        "model": DEFAULT_CHAT_MODEL,
        "max_tokens": 300,
        "temperature": 0.7,
    },
    "read": {
        "player": "auto",
        "window": 8,
        "speed_preset": 3,
    },
}


def _merge_config(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            nested = dict(out[k])
            nested.update(v)
            out[k] = nested
        else:
            out[k] = v
    return out


def _config_path() -> Path:
    explicit = os.getenv("LEXIO_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".config" / "lexio" / "config.json"


def _load_config() -> dict[str, Any]:
    path = _config_path()
    if not path.exists():
        return _merge_config(DEFAULT_CONFIG, {})
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigurationError(f"Config file is not valid JSON: {path} ({e})") from e
    if not isinstance(data, dict):
        return _merge_config(DEFAULT_CONFIG, {})
    return _merge_config(DEFAULT_CONFIG, data)


def _save_config(cfg: dict[str, Any]) -> Path:
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg, indent=2), encoding="utf-8")
    return path


def _runtime_state_path() -> Path:
    return Path.home() / ".config" / "lexio" / "runtime.json"


def _load_runtime_state() -> dict[str, Any]:
    p = _runtime_state_path()
    if not p.exists():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _save_runtime_state(state: dict[str, Any]) -> Path:
    p = _runtime_state_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(state, indent=2), encoding="utf-8")
    return p


def _selected_voice(runtime: dict[str, Any]) -> str:
    voice = runtime.get("voice") if isinstance(runtime.get("voice"), dict) else {}
    return str(voice.get("selected_voice_id") or DEFAULT_VOICE_ID)


def _coerce_scalar(text: str) -> Any:
    t = text.strip()
    tl = t.lower()
    if tl in {"true", "false"}:
        return tl == "true"
    if tl in {"null", "none"}:
        return None
    try:
        if "." in t:
            return float(t)
        return int(t)
    except ValueError:
        pass
    if (t.startswith("{") and t.endswith("}")) or (t.startswith("[") and t.endswith("]")):
        try:
            return json.loads(t)
        except ValueError:
            pass
    return text


def _cfg_get(cfg: dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _cfg_set(cfg: dict[str, Any], path: str, value: Any) -> None:
    cur: dict[str, Any] = cfg
    parts = path.split(".")
    for p in parts[:-1]:
        nxt = cur.get(p)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[p] = nxt
        cur = nxt
    cur[parts[-1]] = value


def _cfg_flatten_keys(d: dict[str, Any], prefix: str = "") -> list[str]:
    keys: list[str] = []
    for k, v in d.items():
        p = f"{prefix}.{k}" if prefix else k
        if isinstance(v, dict):
            keys.extend(_cfg_flatten_keys(v, p))
        else:
            keys.append(p)
    return keys


def _resolve(cli_value: Any, cfg: dict[str, Any], path: str, fallback: Any) -> Any:
    if cli_value is not None:
        return cli_value
    return _cfg_get(cfg, path, fallback)


class _CliLogger:
    def __init__(self, level: int, log_path: Optional[Path]) -> None:
        self.level = max(0, min(3, int(level)))
        self.log_path = log_path
        self._enabled = self.level > 0 and self.log_path is not None
        self._lock = threading.Lock()

    def write(self, level: int, message: str) -> None:
        if not self._enabled or int(level) > self.level:
            return
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(f"[{ts}] {message}\n")


def _resolve_log_file_path(args: argparse.Namespace, raw: Optional[str]) -> Optional[Path]:
    if int(getattr(args, "logging", 0) or 0) <= 0:
        return None

    ts = datetime.now().strftime("%y%m%d.%H%M")
    default_name = f"lexio-{ts}.log"

    if raw:
        p = Path(raw).expanduser()
        # Existing directory, trailing slash, or no suffix means "folder target".
        if p.exists() and p.is_dir():
            return p / default_name
        if str(raw).endswith("/") or p.suffix == "":
            return p / default_name
        return p
    return Path.cwd() / default_name


def _setup_logger(args: argparse.Namespace, cfg: dict[str, Any]) -> _CliLogger:
    cli_logging = getattr(args, "logging", None)
    if getattr(args, "l0", False):
        level = 0
    elif getattr(args, "l1", False):
        level = 1
    elif getattr(args, "l2", False):
        level = 2
    elif getattr(args, "l3", False):
        level = 3
    else:
        level = int(cli_logging if cli_logging is not None else _cfg_get(cfg, "global.logging", 0) or 0)
    args.logging = level
    log_file_raw = getattr(args, "logging_file", None)
    if log_file_raw is None:
        log_file_raw = _cfg_get(cfg, "global.logging_file", None)
    log_path = _resolve_log_file_path(args, log_file_raw)
    clear = bool(getattr(args, "logging_clear", False)) or bool(_cfg_get(cfg, "global.logging_clear", False))
    if log_path and clear:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("", encoding="utf-8")
    logger = _CliLogger(level=level, log_path=log_path)
    if logger.log_path is not None and logger.level > 0:
        logger.write(1, f"log_file={logger.log_path}")
    return logger


def _display_mode(args: argparse.Namespace, cfg: dict[str, Any]) -> str:
    cli = getattr(args, "display", None)
    if cli is None:
        cli = _cfg_get(cfg, "global.display", "normal")
    if cli in {"r", "rich"}:
        return "rich"
    return "normal"


def _verbosity(args: argparse.Namespace, cfg: dict[str, Any]) -> int:
    if getattr(args, "quiet", False):
        return 0
    for level in (0, 1, 2, 3):
        if getattr(args, f"v{level}", False):
            return level
    if getattr(args, "verbose", None) is not None:
        return max(0, min(3, int(args.verbose)))
    return int(_cfg_get(cfg, "global.verbose", 2))


def _print(obj: Any, *, verbosity: int, display: str) -> None:
    if verbosity <= 0:
        return
    if verbosity == 1:
        if isinstance(obj, dict):
            for v in obj.values():
                if isinstance(v, str) and v:
                    print(v)
        else:
            print(obj)
        return
    if display == "rich":
        console.print_json(json.dumps(obj, indent=2))
    else:
        print(json.dumps(obj, indent=2))


def _info_cb(logger: _CliLogger, verbosity: int, display: str) -> Callable[[str], None]:
    def info_cb(message: str) -> None:
        logger.write(2, message)
        if verbosity >= 3:
            if display == "rich":
                console.log(message)
            else:
                print(message, file=sys.stderr)

    return info_cb


def _sync_config(cfg: dict[str, Any]) -> SyncConfig:
    base = SyncConfig()
    return SyncConfig(
        tick_interval=float(_cfg_get(cfg, "sync.tick_interval", base.tick_interval)),
        lead_in_delay=float(_cfg_get(cfg, "sync.lead_in_delay", base.lead_in_delay)),
        lead_in_offset=float(_cfg_get(cfg, "sync.lead_in_offset", base.lead_in_offset)),
        speed_drift_factor=float(_cfg_get(cfg, "sync.speed_drift_factor", base.speed_drift_factor)),
        normal_tolerance=float(_cfg_get(cfg, "sync.normal_tolerance", base.normal_tolerance)),
        fast_tolerance=float(_cfg_get(cfg, "sync.fast_tolerance", base.fast_tolerance)),
        stream_threshold=int(_cfg_get(cfg, "sync.stream_threshold", base.stream_threshold)),
        chunk_threshold=int(_cfg_get(cfg, "sync.chunk_threshold", base.chunk_threshold)),
    )


def _build_app(
    args: argparse.Namespace,
    cfg: dict[str, Any],
    info_cb: Optional[Callable[[str], None]] = None,
    *,
    speed: float = 1.0,
) -> Lexio:
    runtime = _load_runtime_state()
    voice_id = getattr(args, "voice", None) or _selected_voice(runtime)
    return Lexio(
        firecrawl=FirecrawlClient(timeout=float(_cfg_get(cfg, "scrape.timeout_seconds", 60))),
        tts=ElevenLabsClient(
            model=str(_cfg_get(cfg, "tts.model", DEFAULT_TTS_MODEL)),
            timeout=float(_cfg_get(cfg, "tts.request_timeout_seconds", 90)),
            chunk_max_chars=int(_cfg_get(cfg, "tts.chunk_max_chars", 1500)),
            workers=int(_cfg_get(cfg, "tts.multi_thread", 4)),
            with_timestamps=bool(_cfg_get(cfg, "tts.with_timestamps", False)),
        ),
        chat=ChatClient(
            model=str(_cfg_get(cfg, "recommend.model", DEFAULT_CHAT_MODEL)),
            max_tokens=int(_cfg_get(cfg, "recommend.max_tokens", 300)),
            temperature=float(_cfg_get(cfg, "recommend.temperature", 0.7)),
        ),
        queue=QueueStore(),
        voice_id=voice_id,
        speed=speed,
        info_cb=info_cb,
    )


def _load_with_progress(app: Lexio, url: str, *, use_llm: bool, display: str, verbosity: int) -> None:
    if display == "rich" and verbosity >= 2:
        with Progress(SpinnerColumn(), TextColumn("[bold]{task.description}"), TimeElapsedColumn(), console=console) as progress:
            progress.add_task(f"Scraping {url}", total=None)
            app.load_url(url, use_llm_extraction=use_llm)
    else:
        app.load_url(url, use_llm_extraction=use_llm)


def _parse_index_list(raw: Optional[str]) -> list[int]:
    if not raw:
        return []
    out: list[int] = []
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            out.append(int(token))
        except ValueError as e:
            raise ValidationError(f"Section index must be an integer: {token!r}") from e
    return out


def _cmd_scrape(args: argparse.Namespace) -> None:
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=scrape url={args.url}")
    app = _build_app(args, cfg, _info_cb(logger, verbosity, display))
    use_llm = not args.no_extract and bool(_cfg_get(cfg, "scrape.use_llm_extraction", True))
    _load_with_progress(app, args.url, use_llm=use_llm, display=display, verbosity=verbosity)
    content = app.content
    out = content.to_dict()
    if args.output:
        p = Path(args.output).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(out, indent=2), encoding="utf-8")
        logger.write(1, f"scrape saved: {p}")
        out = {"title": content.title, "sections": len(content.sections), "output": str(p)}
    _print(out, verbosity=verbosity, display=display)


def _cmd_sections(args: argparse.Namespace) -> None:
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=sections url={args.url}")
    app = _build_app(args, cfg, _info_cb(logger, verbosity, display))
    _load_with_progress(app, args.url, use_llm=False, display=display, verbosity=verbosity)
    sections = app.sections()
    if verbosity <= 0:
        return
    if display == "rich":
        table = Table(title=app.content.title)
        table.add_column("#", justify="right")
        table.add_column("Level", justify="right")
        table.add_column("Title")
        table.add_column("Preview")
        for i, s in enumerate(sections):
            table.add_row(str(i), str(s.level), s.title, extract_summary(s.content, 80))
        console.print(table)
        return
    for i, s in enumerate(sections):
        print(f"{i:>3}  {'#' * s.level} {s.title}")


def _cmd_voices(args: argparse.Namespace) -> None:
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    logger.write(1, "command=voices")
    app = _build_app(args, cfg, _info_cb(logger, verbosity, display))
    voices = app.voices()
    if verbosity <= 0:
        return
    if display == "rich":
        table = Table(title="Voices")
        for col in ("", "Voice ID", "Name", "Gender", "Accent", "Description"):
            table.add_column(col)
        for v in voices:
            mark = "*" if v.voice_id == app.voice_id else ""
            table.add_row(mark, v.voice_id, v.name, v.gender, v.accent, v.description)
        console.print(table)
        return
    _print({"selected": app.voice_id, "voices": [v.to_dict() for v in voices]}, verbosity=verbosity, display=display)


def _cmd_voice(args: argparse.Namespace) -> None:
    cfg = _load_config()
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=voice action={args.voice_action}")
    runtime = _load_runtime_state()
    if args.voice_action == "show":
        print(_selected_voice(runtime))
        return
    if args.voice_action == "set":
        voice_id = (args.voice_id or "").strip()
        if not voice_id:
            raise ValidationError("Voice id is required")
        runtime["voice"] = {"selected_voice_id": voice_id}
        saved = _save_runtime_state(runtime)
        logger.write(2, f"voice saved: {voice_id} in {saved}")
        print(f"Selected voice {voice_id} (saved in {saved})")
        return
    raise ValueError(f"Unknown voice action: {args.voice_action}")


def _cmd_recommend(args: argparse.Namespace) -> None:
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=recommend url={args.url} query={args.query!r}")
    app = _build_app(args, cfg, _info_cb(logger, verbosity, display))
    _load_with_progress(app, args.url, use_llm=True, display=display, verbosity=verbosity)
    use_chat = not args.local and bool(_cfg_get(cfg, "recommend.use_chat", True))
    rec, added = app.recommend_and_enqueue(args.query, use_chat=use_chat)
    logger.write(2, f"recommend source={rec.source} indices={rec.indices} summary={rec.include_summary}")
    _print(
        {
            "response": rec.text,
            "source": rec.source,
            "sections": rec.indices,
            "include_summary": rec.include_summary,
            "queue": [{"id": it.id, "title": it.title} for it in app.queue.items],
            "added": added,
        },
        verbosity=verbosity,
        display=display,
    )


def _synth_text(args: argparse.Namespace, app: Lexio, display: str, verbosity: int) -> str:
    if args.text:
        return args.text
    if not args.url:
        raise ValidationError("Pass a URL or --text")
    _load_with_progress(app, args.url, use_llm=True, display=display, verbosity=verbosity)
    if args.summary:
        return app.summary_item().content
    indices = _parse_index_list(args.sections)
    if indices:
        return " ".join(app.section_item(i).content for i in indices)
    content = app.content
    return content.clean_text or content.text


def _cmd_synth(args: argparse.Namespace) -> None:
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    speed = float(args.speed) if args.speed is not None else 1.0
    app = _build_app(args, cfg, _info_cb(logger, verbosity, display), speed=speed)
    text = _synth_text(args, app, display, verbosity)
    mode = args.mode or (MODE_CHUNKED if len(text) > int(_cfg_get(cfg, "tts.chunk_max_chars", 1500)) else MODE_BUFFER)
    logger.write(1, f"command=synth chars={len(text)} voice={app.voice_id} speed={speed} mode={mode}")

    if display == "rich" and verbosity >= 2:
        with Progress(SpinnerColumn(), TextColumn("[bold]{task.description}"), TimeElapsedColumn(), console=console) as progress:
            progress.add_task(f"Synthesizing {len(text):,} chars ({mode})", total=None)
            result = app.synthesize(text, mode=mode)
    else:
        result = app.synthesize(text, mode=mode)

    audio = result.playable()
    out_path = write_audio(audio, Path(args.output).expanduser())
    logger.write(1, f"synth saved: {out_path} bytes={len(audio)} chunks={audio.chunk_count}")
    _print(
        {"mp3": str(out_path), "bytes": len(audio), "chunks": audio.chunk_count, "mode": result.mode, "voice": app.voice_id},
        verbosity=verbosity,
        display=display,
    )


def _make_player(kind: str) -> AudioPlayer:
    kind = (kind or "auto").strip().lower()
    if kind == "silent":
        return SilentPlayer()
    if kind == "ffplay":
        if not FfplayPlayer.available():
            raise ConfigurationError("ffplay not found on PATH (install ffmpeg or use --player silent)")
        return FfplayPlayer()
    return FfplayPlayer() if FfplayPlayer.available() else SilentPlayer()


def _build_queue(app: Lexio, args: argparse.Namespace, *, use_chat: bool) -> Optional[str]:
    reply: Optional[str] = None
    for i in _parse_index_list(args.sections):
        app.add_section(i)
    if args.query:
        rec, _ = app.recommend_and_enqueue(args.query, use_chat=use_chat)
        reply = rec.text
    if args.summary:
        app.add_summary()
    if len(app.queue) == 0:
        for i in range(len(app.sections())):
            app.add_section(i)
    return reply


def _run_reader(session: PlaybackSession, *, window: int = 8, speed_preset: int = 3) -> None:
    from prompt_toolkit.application import Application
    from prompt_toolkit.key_binding import KeyBindings
    from prompt_toolkit.layout import Layout
    from prompt_toolkit.layout.containers import HSplit, Window
    from prompt_toolkit.layout.controls import FormattedTextControl
    from prompt_toolkit.styles import Style

    queue = session.queue
    state = {"quit": False, "window": max(0, int(window)), "speed_preset": max(1, min(5, int(speed_preset)))}
    kb = KeyBindings()

    @kb.add(" ")
    def _(event: Any) -> None:
        session.toggle()

    @kb.add("q")
    @kb.add("Q")
    @kb.add("escape")
    def _(event: Any) -> None:
        state["quit"] = True
        event.app.exit()

    @kb.add("n")
    @kb.add("right")
    def _(event: Any) -> None:
        session.next()

    @kb.add("p")
    @kb.add("left")
    def _(event: Any) -> None:
        session.previous()

    @kb.add("s")
    def _(event: Any) -> None:
        if queue.play_intent:
            queue.toggle_play_intent()
        session.stop()

    @kb.add("r")
    def _(event: Any) -> None:
        queue.toggle_repeat()

    @kb.add("+")
    @kb.add("=")
    def _(event: Any) -> None:
        state["window"] = min(200, int(state["window"]) + 1)

    @kb.add("-")
    @kb.add("_")
    def _(event: Any) -> None:
        state["window"] = max(0, int(state["window"]) - 1)

    def set_speed(p: int) -> None:
        state["speed_preset"] = p
        session.set_speed(SPEED_PRESETS[p])

    for preset in SPEED_PRESETS:
        kb.add(str(preset))(lambda event, p=preset: set_speed(p))

    def _distance_style(dist: int) -> str:
        if dist <= 2:
            return "class:near"
        if dist <= 5:
            return "class:mid"
        return "class:far"

    def _word_line(words: tuple[str, ...], idx: int, ww: int) -> list[tuple[str, str]]:
        if not words:
            return [("class:meta", "(nothing queued)")]
        focus = idx if idx >= 0 else 0
        lo = max(0, focus - ww)
        hi = min(len(words) - 1, focus + ww)
        segments: list[tuple[str, str]] = []
        if lo > 0:
            segments.append(("class:edge", "... "))
        for i in range(lo, hi + 1):
            if i == idx:
                segments.append(("class:focus", words[i]))
            elif idx < 0:
                segments.append(("class:far", words[i]))
            else:
                segments.append((_distance_style(abs(i - idx)), words[i]))
            if i < hi:
                segments.append(("class:space", " "))
        if hi < len(words) - 1:
            segments.append(("class:edge", " ..."))
        cols = max(40, shutil.get_terminal_size((120, 30)).columns)
        width = sum(len(t) for _, t in segments)
        pad = max(0, (cols - width) // 2)
        if pad:
            segments.insert(0, ("", " " * pad))
        return segments

    def render() -> list[tuple[str, str]]:
        snap = session.snapshot()
        pos = queue.current_index + 1
        sp = int(state["speed_preset"])
        info = (
            f"{snap.state.upper():<9} {snap.title or '-'}  [{pos}/{len(queue)}]  "
            f"{max(0.0, snap.elapsed):6.2f}s/{snap.duration:6.2f}s  speed={snap.speed:.2f}x({sp})  "
            f"repeat={'on' if queue.repeat else 'off'}"
        )
        controls = "space pause/resume | n/p next/prev | s stop | r repeat | +/- context | 1-5 speed | q quit"
        body: list[tuple[str, str]] = [("class:header", info + "\n")]
        if snap.error:
            body.append(("class:error", f"error: {snap.error}\n"))
        body.append(("", "\n"))
        body.extend(_word_line(snap.words, snap.highlight_index, int(state["window"])))
        body.append(("", "\n\n"))
        body.append(("class:meta", controls))
        return body

    control = FormattedTextControl(render)
    root = HSplit([Window(control, wrap_lines=False)])
    style = Style.from_dict(
        {
            "header": "bold",
            "meta": "fg:#888888",
            "error": "bold fg:#ff3b30",
            "space": "",
            "focus": "bold fg:#3b82f6",
            "near": "fg:#b8b8b8",
            "mid": "fg:#7a7a7a",
            "far": "fg:#4b4b4b",
            "edge": "fg:#2f2f2f",
        }
    )
    app = Application(layout=Layout(root), key_bindings=kb, style=style, full_screen=False)

    stop = threading.Event()

    def ticker() -> None:
        while not stop.wait(0.05):
            if state["quit"]:
                return
            if session.state == COMPLETED and not queue.play_intent:
                state["quit"] = True
                app.exit()
                return
            app.invalidate()

    t = threading.Thread(target=ticker, daemon=True)
    t.start()
    queue.play_from(max(0, queue.current_index))
    session.play()
    try:
        app.run()
    finally:
        stop.set()
        session.close()


def _read_settings(args: argparse.Namespace, cfg: dict[str, Any]) -> tuple[int, int]:
    window = int(_resolve(args.window, cfg, "read.window", 8))
    speed_preset = max(1, min(5, int(_resolve(args.speed, cfg, "read.speed_preset", 3))))
    return max(0, window), speed_preset


def _cmd_read(args: argparse.Namespace) -> None:
    if not sys.stdin.isatty():
        raise ConfigurationError("Read mode needs an interactive terminal")
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)

    window, speed_preset = _read_settings(args, cfg)

    app = _build_app(args, cfg, lambda m: logger.write(2, m), speed=SPEED_PRESETS[speed_preset])
    _load_with_progress(app, args.url, use_llm=True, display=display, verbosity=verbosity)
    use_chat = not args.local and bool(_cfg_get(cfg, "recommend.use_chat", True))
    reply = _build_queue(app, args, use_chat=use_chat)
    if reply and verbosity >= 2:
        print(reply)
    logger.write(1, f"command=read url={args.url} queue={[it.id for it in app.queue.items]}")

    player = _make_player(_resolve(args.player, cfg, "read.player", "auto"))
    session = app.create_session(player=player, config=_sync_config(cfg), background=True)
    _run_reader(session, window=window, speed_preset=speed_preset)


def _cmd_config(args: argparse.Namespace) -> None:
    cfg = _load_config()
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=config action={args.config_action}")
    if args.config_action == "path":
        print(_config_path())
        return
    if args.config_action == "show":
        print(json.dumps(cfg, indent=2))
        print("\nHow to change settings:")
        print("  lexio config set <dotted.key> <value>")
        print("  lexio config get <dotted.key>")
        print("\nExamples:")
        print("  lexio config set tts.multi_thread 4")
        print("  lexio config set sync.lead_in_offset -0.2")
        print("  lexio config set recommend.use_chat false")
        print("  lexio config set global.display rich")
        print("\nEditable keys:")
        for k in sorted(_cfg_flatten_keys(cfg)):
            print(f"  - {k}")
        return
    if args.config_action == "get":
        val = _cfg_get(cfg, args.key, None)
        print(json.dumps(val, indent=2))
        return
    if args.config_action == "set":
        val = _coerce_scalar(args.value)
        _cfg_set(cfg, args.key, val)
        path = _save_config(cfg)
        print(f"Saved {args.key} in {path}")
        return
    raise ValueError(f"Unknown config action: {args.config_action}")


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--quiet", action="store_true", help="Minimal output")
    parser.add_argument("-d", "--display", choices=["rich", "normal", "r", "n"], default=None, help="Display style")
    parser.add_argument("--verbose", type=int, choices=[0, 1, 2, 3], default=None, help="Verbosity level")
    parser.add_argument("-v0", action="store_true", help="Verbosity 0 (silent)")
    parser.add_argument("-v1", action="store_true", help="Verbosity 1 (minimal)")
    parser.add_argument("-v2", action="store_true", help="Verbosity 2 (default info)")
    parser.add_argument("-v3", action="store_true", help="Verbosity 3 (debug)")
    parser.add_argument("--logging", type=int, choices=[0, 1, 2, 3], default=None, help="File logging level")
    parser.add_argument("-l0", action="store_true", help="Logging level 0 (off)")
    parser.add_argument("-l1", action="store_true", help="Logging level 1")
    parser.add_argument("-l2", action="store_true", help="Logging level 2")
    parser.add_argument("-l3", action="store_true", help="Logging level 3")
    parser.add_argument("--logging-file", default=None, help="Log file path or folder")
    parser.add_argument("--logging-clear", action="store_true", help="Clear log file before writing")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="lexio", description="Lexio: listen to web pages with word highlighting")
    _add_common_options(p)

    sub = p.add_subparsers(dest="command", required=True)

    sc = sub.add_parser("scrape", help="Scrape a URL into title, text and sections")
    _add_common_options(sc)
    sc.add_argument("url")
    sc.add_argument("--output", "-o", help="Write the scrape result JSON here")
    sc.add_argument("--no-extract", action="store_true", help="Skip LLM main-content extraction")
    sc.set_defaults(func=_cmd_scrape)

    se = sub.add_parser("sections", help="List the sections of a page")
    _add_common_options(se)
    se.add_argument("url")
    se.set_defaults(func=_cmd_sections)

    vo = sub.add_parser("voices", help="List available voices")
    _add_common_options(vo)
    vo.set_defaults(func=_cmd_voices)

    vc = sub.add_parser("voice", help="Show or set the preferred voice")
    _add_common_options(vc)
    vc_sub = vc.add_subparsers(dest="voice_action", required=True)
    vc_show = vc_sub.add_parser("show", help="Show the selected voice id")
    _add_common_options(vc_show)
    vc_set = vc_sub.add_parser("set", help="Persist the selected voice id")
    _add_common_options(vc_set)
    vc_set.add_argument("voice_id")
    vc.set_defaults(func=_cmd_voice)

    rc = sub.add_parser("recommend", help="Pick sections of a page for a listening request")
    _add_common_options(rc)
    rc.add_argument("url")
    rc.add_argument("query")
    rc.add_argument("--local", action="store_true", help="Use the local scorer only")
    rc.set_defaults(func=_cmd_recommend)

    sy = sub.add_parser("synth", help="Synthesize page content or text to MP3")
    _add_common_options(sy)
    sy.add_argument("url", nargs="?")
    sy.add_argument("--text", help="Synthesize this text instead of a page")
    sy.add_argument("--sections", help="Comma list of section indices")
    sy.add_argument("--summary", action="store_true", help="Synthesize the page summary")
    sy.add_argument("--output", "-o", default="lexio.mp3", help="Output mp3 path")
    sy.add_argument("--voice", default=None, help="Voice id (default: saved preference)")
    sy.add_argument("--speed", default=None, help="Speech speed 0.7-1.2")
    sy.add_argument("--mode", choices=[MODE_BUFFER, MODE_STREAM, MODE_CHUNKED], default=None)
    sy.set_defaults(func=_cmd_synth)

    rd = sub.add_parser("read", help="Play a page's queue with a live word highlight")
    _add_common_options(rd)
    rd.add_argument("url")
    rd.add_argument("--sections", help="Comma list of section indices to queue")
    rd.add_argument("--query", help="Queue sections recommended for this request")
    rd.add_argument("--summary", action="store_true", help="Also queue the summary")
    rd.add_argument("--local", action="store_true", help="Use the local scorer only")
    rd.add_argument("--voice", default=None, help="Voice id (default: saved preference)")
    rd.add_argument("--player", choices=["auto", "ffplay", "silent"], default=None)
    rd.add_argument("--window", default=None, help="Words of context around the highlighted word")
    rd.add_argument("--speed", choices=[str(i) for i in SPEED_PRESETS], default=None, help="Speed preset: 1=0.7x, 2=0.85x, 3=1x, 4=1.1x, 5=1.2x")
    rd.set_defaults(func=_cmd_read)

    cfg = sub.add_parser("config", help="Show or update lexio defaults config")
    _add_common_options(cfg)
    cfg_sub = cfg.add_subparsers(dest="config_action", required=True)
    cfg_path = cfg_sub.add_parser("path", help="Show config file path")
    _add_common_options(cfg_path)
    cfg_show = cfg_sub.add_parser("show", help="Show effective config")
    _add_common_options(cfg_show)
    cfg_get = cfg_sub.add_parser("get", help="Get config value by dotted path")
    _add_common_options(cfg_get)
    cfg_get.add_argument("key")
    cfg_set = cfg_sub.add_parser("set", help="Set config value by dotted path")
    _add_common_options(cfg_set)
    cfg_set.add_argument("key")
    cfg_set.add_argument("value")
    cfg.set_defaults(func=_cmd_config)

    return p


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    try:
        args.func(args)
    except (LexioError, IndexError) as e:
        print(user_message(e), file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("Cancelled.")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
