"""
Level Import Service - Audio Preprocessor

Transcodes any supported upload into 44.1 kHz mono WAV with ``ffmpeg`` so
the downstream analysis tools see one consistent format, then reads basic
stream metadata with ``ffprobe``.

Transcoding failures are fatal for the job.  Metadata failures only add a
warning.
"""

from __future__ import annotations

import json
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from level_import.config import EXTERNAL_TOOL_TIMEOUT, MEDIA_PROBE_TIMEOUT
from level_import.services.capabilities import get_audio_import_capability
from level_import.utils import summarize_process_output

TARGET_SAMPLE_RATE = 44100


class AudioPreprocessError(RuntimeError):
    """Raised when the input audio cannot be converted to WAV."""


@dataclass
class AudioMetadata:
    duration_sec: float | None = None
    sample_rate_hz: int | None = None
    channels: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "durationSec": self.duration_sec,
            "sampleRateHz": self.sample_rate_hz,
            "channels": self.channels,
        }


@dataclass
class PreprocessResult:
    wav_path: Path
    metadata: AudioMetadata
    warnings: list[str] = field(default_factory=list)


def _failure_message(technical: str) -> str:
    capability = get_audio_import_capability(force_refresh=True)
    if capability.available:
        base = "Audio preprocessing failed in the server media pipeline."
    else:
        base = capability.message
    return f"{base} Technical details: {technical}"


def transcode_to_wav(input_path: Path, output_path: Path) -> None:
    """Convert *input_path* to 44.1 kHz mono WAV at *output_path*."""
    cmd = [
        "ffmpeg",
        "-y",
        "-i",
        str(input_path),
        "-ac",
        "1",
        "-ar",
        str(TARGET_SAMPLE_RATE),
        "-vn",
        str(output_path),
    ]
    logger.debug("🎚️ Running: {}", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=EXTERNAL_TOOL_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise AudioPreprocessError(_failure_message(str(e))) from e
    except subprocess.TimeoutExpired as e:
        raise AudioPreprocessError(
            _failure_message(f"ffmpeg timed out after {EXTERNAL_TOOL_TIMEOUT}s")
        ) from e

    if result.returncode != 0 or not output_path.exists():
        stderr = summarize_process_output(result.stderr.decode(errors="replace"))
        raise AudioPreprocessError(
            _failure_message(stderr or f"ffmpeg exited with code {result.returncode}")
        )


def probe_metadata(wav_path: Path) -> AudioMetadata:
    """Read duration, sample rate and channel count with ffprobe."""
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration:stream=sample_rate,channels",
        "-of",
        "json",
        str(wav_path),
    ]
    result = subprocess.run(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        timeout=MEDIA_PROBE_TIMEOUT,
        check=True,
    )
    payload = json.loads(result.stdout.decode(errors="replace") or "{}")
    streams = payload.get("streams") or [{}]
    stream = streams[0]
    duration = payload.get("format", {}).get("duration")
    sample_rate = stream.get("sample_rate")
    channels = stream.get("channels")
    return AudioMetadata(
        duration_sec=float(duration) if duration is not None else None,
        sample_rate_hz=int(sample_rate) if sample_rate is not None else None,
        channels=int(channels) if channels is not None else None,
    )


def preprocess_audio(input_path: str | Path, work_dir: str | Path) -> PreprocessResult:
    """
    Transcode *input_path* into ``<work_dir>/processed/`` and probe it.

    Raises
    ------
    AudioPreprocessError
        If ffmpeg is missing or fails.  The message tells the user whether
        the server is misconfigured or the file itself could not be decoded.
    """
    input_path = Path(input_path)
    processed_dir = Path(work_dir) / "processed"
    processed_dir.mkdir(parents=True, exist_ok=True)
    wav_path = processed_dir / f"{input_path.stem}_{uuid.uuid4().hex[:8]}.wav"

    transcode_to_wav(input_path, wav_path)

    warnings: list[str] = []
    try:
        metadata = probe_metadata(wav_path)
    except (OSError, ValueError, subprocess.SubprocessError) as e:
        logger.warning("⚠️ ffprobe failed for {}: {}", wav_path.name, e)
        warnings.append("Audio metadata extraction failed. Continuing with default metadata.")
        metadata = AudioMetadata(sample_rate_hz=TARGET_SAMPLE_RATE, channels=1)

    logger.info(
        "🎧 Preprocessed {} → {} ({}s, {} Hz)",
        input_path.name,
        wav_path.name,
        metadata.duration_sec,
        metadata.sample_rate_hz,
    )
    return PreprocessResult(wav_path=wav_path, metadata=metadata, warnings=warnings)
