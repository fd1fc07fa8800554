from __future__ import annotations

import base64
import os
import shutil
import signal
import subprocess
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import PlaybackError, ProviderError

DEFAULT_CONTENT_TYPE = "audio/mpeg"


@dataclass(frozen=True)
class AudioChunk:
    sequence_index: int
    data: bytes
    source_text: str = ""

    def __post_init__(self) -> None:
        if self.sequence_index < 0:
            raise ValueError(f"sequence_index must be >= 0, got {self.sequence_index}")


@dataclass
class AudioResource:
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE
    chunk_count: int = 1
    source_texts: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.data)


def assemble_chunks(chunks: Iterable[AudioChunk], content_type: str = DEFAULT_CONTENT_TYPE) -> AudioResource:
    ordered = sorted(chunks, key=lambda c: c.sequence_index)
    if not ordered:
        raise ProviderError("No audio chunks were generated")
    seen = set()
    for c in ordered:
        if c.sequence_index in seen:
            raise ProviderError(f"Duplicate audio chunk index {c.sequence_index}")
        seen.add(c.sequence_index)
    return AudioResource(
        data=b"".join(c.data for c in ordered),
        content_type=content_type,
        chunk_count=len(ordered),
        source_texts=[c.source_text for c in ordered],
    )


def assemble_stream(parts: Iterable[bytes], content_type: str = DEFAULT_CONTENT_TYPE) -> AudioResource:
    data = b"".join(p for p in parts if p)
    if not data:
        raise ProviderError("Audio stream was empty")
    return AudioResource(data=data, content_type=content_type)


def _b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as e:
        raise ProviderError(f"Audio payload is not valid base64: {e}") from e


def chunks_from_payload(items: Sequence[Dict[str, Any]]) -> List[AudioChunk]:
    out: List[AudioChunk] = []
    for item in items:
        out.append(
            AudioChunk(
                sequence_index=int(item["index"]),
                data=_b64(str(item.get("audio") or "")),
                source_text=str(item.get("text") or ""),
            )
        )
    return out


def decode_tts_payload(payload: Dict[str, Any]) -> AudioResource:
    """Decode a JSON speech payload: ``{"audio": b64}`` or ``{"chunks": [...]}``."""
    if payload.get("error"):
        raise ProviderError(str(payload["error"]), details=payload.get("details"))
    content_type = str(payload.get("contentType") or DEFAULT_CONTENT_TYPE)
    if isinstance(payload.get("chunks"), list):
        return assemble_chunks(chunks_from_payload(payload["chunks"]), content_type)
    audio = payload.get("audio") or payload.get("audio_base64")
    if not audio:
        raise ProviderError("Speech payload contained no audio")
    return AudioResource(data=_b64(str(audio)), content_type=content_type)


def write_audio(resource: AudioResource, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(resource.data)
    return output_path


class AudioPlayer:
    """Minimal playback surface the session drives."""

    def load(self, resource: AudioResource) -> None:
        raise NotImplementedError

    def play(self) -> None:
        raise NotImplementedError

    def pause(self) -> None:
        raise NotImplementedError

    def resume(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def finished(self) -> bool:
        return False

    def close(self) -> None:
        self.stop()


class SilentPlayer(AudioPlayer):
    """Player that produces no sound; the highlight runs on the estimated clock only."""

    def __init__(self) -> None:
        self.resource: Optional[AudioResource] = None
        self.playing = False

    def load(self, resource: AudioResource) -> None:
        self.resource = resource

    def play(self) -> None:
        self.playing = True

    def pause(self) -> None:
        self.playing = False

    def resume(self) -> None:
        self.playing = True

    def stop(self) -> None:
        self.playing = False


class FfplayPlayer(AudioPlayer):
    """Plays audio through an ``ffplay`` subprocess; pause/resume use SIGSTOP/SIGCONT."""

    def __init__(self, binary: str = "ffplay") -> None:
        self.binary = binary
        self._path: Optional[Path] = None
        self._proc: Optional[subprocess.Popen] = None
        self._paused = False

    @staticmethod
    def available(binary: str = "ffplay") -> bool:
        return shutil.which(binary) is not None

    def load(self, resource: AudioResource) -> None:
        self.stop()
        self._discard_file()
        if not resource.data:
            raise PlaybackError("Cannot play empty audio")
        suffix = ".mp3" if "mpeg" in resource.content_type else ".audio"
        self._path = Path(tempfile.gettempdir()) / f"lexio_{uuid.uuid4().hex}{suffix}"
        self._path.write_bytes(resource.data)

    def play(self) -> None:
        if self._path is None:
            raise PlaybackError("No audio loaded")
        self.stop()
        cmd = [self.binary, "-nodisp", "-autoexit", "-hide_banner", "-loglevel", "error", str(self._path)]
        try:
            self._proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise PlaybackError(f"Failed to start audio: {e}") from e
        self._paused = False

    def _signal(self, sig: int, action: str) -> None:
        try:
            os.kill(self._proc.pid, sig)
        except OSError as e:
            raise PlaybackError(f"Failed to {action} audio: {e}") from e

    def pause(self) -> None:
        if self._proc is not None and self._proc.poll() is None and not self._paused:
            self._signal(signal.SIGSTOP, "pause")
            self._paused = True

    def resume(self) -> None:
        if self._proc is not None and self._proc.poll() is None and self._paused:
            self._signal(signal.SIGCONT, "resume")
            self._paused = False

    def stop(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None:
            return
        try:
            if proc.poll() is None:
                if self._paused:
                    os.kill(proc.pid, signal.SIGCONT)
                proc.terminate()
                try:
                    proc.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    proc.kill()
        except ProcessLookupError:
            # exited between poll and signal
            pass
        finally:
            if proc.stderr is not None:
                proc.stderr.close()
            self._paused = False

    def finished(self) -> bool:
        proc = self._proc
        if proc is None or proc.poll() is None:
            return False
        if proc.returncode != 0:
            err = (proc.stderr.read().decode("utf-8", errors="replace") if proc.stderr else "").strip()
            self._proc = None
            if proc.stderr is not None:
                proc.stderr.close()
            raise PlaybackError(f"Failed to play audio: {err or f'ffplay exited with {proc.returncode}'}")
        return True

    def _discard_file(self) -> None:
        if self._path is not None:
            self._path.unlink(missing_ok=True)
            self._path = None

    def close(self) -> None:
        self.stop()
        self._discard_file()
