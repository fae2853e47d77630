"""
Level Import Service - Source File Type Detection

Classifies uploaded assets as MIDI or audio from their asset kind, MIME type
and filename, and maps a detected file kind to the import source type.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from level_import.config import AUDIO_EXTENSIONS, MIDI_EXTENSIONS
from level_import.models import AssetKind, SourceType

MIDI_MIME_TYPES = {"audio/midi", "audio/x-midi", "audio/mid", "application/x-midi"}


def detect_file_kind(mime_type: str | None, filename: str | None) -> str:
    """Return ``"midi"``, ``"audio"`` or ``"unknown"`` for a MIME type / filename."""
    mime = (mime_type or "").lower()
    ext = Path(filename or "").suffix.lower()

    if mime in MIDI_MIME_TYPES or ext in MIDI_EXTENSIONS:
        return "midi"
    if mime.startswith("audio/") or ext in AUDIO_EXTENSIONS:
        return "audio"
    return "unknown"


def detect_asset_kind(asset: dict[str, Any]) -> str:
    """Classify a stored asset, trusting its upload kind first."""
    kind = asset.get("kind")
    if kind == AssetKind.MIDI_SOURCE.value:
        return "midi"
    if kind in (
        AssetKind.AUDIO_SOURCE.value,
        AssetKind.AUDIO_STEM.value,
        AssetKind.AUDIO_PREVIEW.value,
    ):
        return "audio"
    return detect_file_kind(asset.get("mime_type"), asset.get("original_filename"))


def resolve_import_source_type(
    file_kind: str, preferred: SourceType | str | None = None
) -> SourceType:
    """
    Map a detected file kind to the pipeline source type.

    MIDI always imports as ``midi``.  Audio imports as ``full_mix_audio``
    only when the caller asked for it, otherwise as ``isolated_audio``.
    """
    if file_kind == "midi":
        return SourceType.MIDI
    if file_kind == "audio":
        if preferred is not None and SourceType(preferred) == SourceType.FULL_MIX_AUDIO:
            return SourceType.FULL_MIX_AUDIO
        return SourceType.ISOLATED_AUDIO
    raise ValueError(f"Unsupported file kind: {file_kind}")


def guess_asset_kind(filename: str, mime_type: str | None = None) -> AssetKind | None:
    """Pick the upload kind for a local file, or None when it isn't importable."""
    file_kind = detect_file_kind(mime_type, filename)
    if file_kind == "midi":
        return AssetKind.MIDI_SOURCE
    if file_kind == "audio":
        return AssetKind.AUDIO_SOURCE
    return None
