"""
Level Import Service - Capability Probe

Answers two questions about the server runtime:

    - Can audio imports run at all?  That needs ``ffmpeg`` and ``ffprobe``
      on ``PATH``.  Audio submissions are rejected up front when they are
      missing, before any job row exists.
    - Which optional analysis tools are installed?  ``demucs`` for stem
      separation and ``basic-pitch`` (as a CLI or importable module) for
      transcription.

Both answers are cached for ``CAPABILITY_CACHE_TTL`` seconds so polling
clients don't spawn a process per request.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from loguru import logger

from level_import.config import APP_ENV, CAPABILITY_CACHE_TTL

REQUIRED_AUDIO_COMMANDS = ("ffmpeg", "ffprobe")


class AudioImportUnavailableError(Exception):
    """Raised when an audio import is submitted but the media tools are missing."""

    code = "AUDIO_IMPORT_UNAVAILABLE"
    status_code = 503

    def __init__(self, capability: AudioImportCapability):
        super().__init__(capability.message)
        self.capability = capability


@dataclass
class AudioImportCapability:
    available: bool
    environment: str
    message: str
    missing_commands: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "environment": self.environment,
            "message": self.message,
            "missingCommands": list(self.missing_commands),
        }


@dataclass
class RuntimeDependencyStatus:
    demucs: bool
    basic_pitch: str  # "cli" | "python_module" | "missing"

    def to_dict(self) -> dict[str, Any]:
        return {"demucs": self.demucs, "basicPitch": self.basic_pitch}


_capability_cache: tuple[float, AudioImportCapability] | None = None
_dependency_cache: tuple[float, RuntimeDependencyStatus] | None = None


def _environment() -> str:
    return "production" if APP_ENV == "production" else "development"


def _unavailable_message(environment: str, missing: list[str]) -> str:
    joined = ", ".join(missing)
    if environment == "production":
        return (
            "Audio import is temporarily unavailable due to a production server "
            f"configuration issue ({joined} missing)."
        )
    return (
        "Audio import is unavailable in this local development environment "
        f"({joined} missing on the server runtime)."
    )


def get_audio_import_capability(force_refresh: bool = False) -> AudioImportCapability:
    """Check whether the media tools audio imports depend on are installed."""
    global _capability_cache

    now = time.monotonic()
    if (
        not force_refresh
        and _capability_cache is not None
        and now - _capability_cache[0] < CAPABILITY_CACHE_TTL
    ):
        return _capability_cache[1]

    environment = _environment()
    missing = [cmd for cmd in REQUIRED_AUDIO_COMMANDS if shutil.which(cmd) is None]
    if missing:
        capability = AudioImportCapability(
            available=False,
            environment=environment,
            message=_unavailable_message(environment, missing),
            missing_commands=missing,
        )
        logger.warning("⚠️ Audio import unavailable: {} missing", ", ".join(missing))
    else:
        capability = AudioImportCapability(
            available=True,
            environment=environment,
            message="Audio import is available.",
        )

    _capability_cache = (now, capability)
    return capability


def require_audio_import_capability() -> AudioImportCapability:
    """Return the capability, raising AudioImportUnavailableError when unavailable."""
    capability = get_audio_import_capability()
    if not capability.available:
        raise AudioImportUnavailableError(capability)
    return capability


def _basic_pitch_mode() -> str:
    if shutil.which("basic-pitch"):
        return "cli"
    try:
        probe = subprocess.run(
            [sys.executable, "-c", "import basic_pitch"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "missing"
    return "python_module" if probe.returncode == 0 else "missing"


def get_runtime_dependency_status(force_refresh: bool = False) -> RuntimeDependencyStatus:
    """Report which optional analysis tools are installed."""
    global _dependency_cache

    now = time.monotonic()
    if (
        not force_refresh
        and _dependency_cache is not None
        and now - _dependency_cache[0] < CAPABILITY_CACHE_TTL
    ):
        return _dependency_cache[1]

    status = RuntimeDependencyStatus(
        demucs=shutil.which("demucs") is not None,
        basic_pitch=_basic_pitch_mode(),
    )
    logger.debug("🔎 Runtime dependencies: {}", asdict(status))
    _dependency_cache = (now, status)
    return status


def clear_capability_cache() -> None:
    """Forget cached probe results."""
    global _capability_cache, _dependency_cache
    _capability_cache = None
    _dependency_cache = None
