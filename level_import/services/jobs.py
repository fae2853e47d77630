"""
Level Import Service - Job Admission & Serialization

Validates import submissions and turns stored job rows into the JSON shape
clients poll.  Every admission check runs before the job row is inserted,
so a rejected submission leaves nothing behind.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from level_import.database import get_asset, insert_import_job
from level_import.models import (
    AssetKind,
    ImportParams,
    InstrumentPreset,
    Quantization,
    SourceType,
    StemName,
    TranscriptionTuning,
)
from level_import.services.capabilities import require_audio_import_capability
from level_import.services.file_types import detect_asset_kind, resolve_import_source_type

SOURCE_ASSET_KINDS = {AssetKind.MIDI_SOURCE.value, AssetKind.AUDIO_SOURCE.value}
AUDIO_ASSET_KINDS = {AssetKind.AUDIO_PREVIEW.value, AssetKind.AUDIO_SOURCE.value}


class ImportValidationError(ValueError):
    """The submission is malformed; maps to HTTP 400."""

    status_code = 400


class AssetNotFoundError(LookupError):
    """A referenced asset doesn't exist for this owner; maps to HTTP 404."""

    status_code = 404


@dataclass
class ImportJobRequest:
    source_asset_id: str
    title: str
    source_type: str | None = None
    audio_asset_id: str | None = None
    manual_bpm: float | None = None
    quantization: str = Quantization.OFF.value
    instrument_preset: str = InstrumentPreset.GUITAR.value
    transcription_tuning: str = TranscriptionTuning.BALANCED.value
    selected_stem: str = StemName.GUITAR.value


def _parse_enum(enum_cls, value: Any, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ImportValidationError(f"Invalid {label} '{value}'. Expected one of: {allowed}.") from None


def build_params(request: ImportJobRequest) -> ImportParams:
    """Validate the user-tunable fields of a submission."""
    title = (request.title or "").strip()
    if len(title) < 2:
        raise ImportValidationError("Title must be at least 2 characters.")
    if request.manual_bpm is not None and request.manual_bpm <= 0:
        raise ImportValidationError("Manual BPM must be a positive number.")

    return ImportParams(
        title=title,
        manual_bpm=request.manual_bpm,
        quantization=_parse_enum(Quantization, request.quantization, "quantization"),
        instrument_preset=_parse_enum(
            InstrumentPreset, request.instrument_preset, "instrument preset"
        ),
        transcription_tuning=_parse_enum(
            TranscriptionTuning, request.transcription_tuning, "transcription tuning"
        ),
        selected_stem=_parse_enum(StemName, request.selected_stem, "stem"),
    )


async def create_import_job(owner_id: str, request: ImportJobRequest) -> str:
    """
    Validate a submission and enqueue it.

    Raises
    ------
    ImportValidationError
        Bad parameters or an asset of the wrong kind.
    AssetNotFoundError
        A referenced asset doesn't exist or belongs to someone else.
    AudioImportUnavailableError
        An audio import was submitted while ffmpeg/ffprobe are missing.
    """
    if not request.source_asset_id:
        raise ImportValidationError("A source asset is required.")
    params = build_params(request)
    preferred = (
        _parse_enum(SourceType, request.source_type, "source type")
        if request.source_type
        else None
    )

    source_asset = await get_asset(request.source_asset_id, owner_id)
    if source_asset is None:
        raise AssetNotFoundError("Source asset not found.")
    if source_asset["kind"] not in SOURCE_ASSET_KINDS:
        raise ImportValidationError("Source asset must be uploaded as a level source file.")

    file_kind = detect_asset_kind(source_asset)
    if file_kind == "unknown":
        raise ImportValidationError(
            "Unable to detect source file type. Please upload a MIDI or audio file."
        )
    if file_kind == "audio":
        require_audio_import_capability()
    source_type = resolve_import_source_type(file_kind, preferred)

    audio_asset_id = request.audio_asset_id or None
    if audio_asset_id:
        audio_asset = await get_asset(audio_asset_id, owner_id)
        if audio_asset is None:
            raise AssetNotFoundError("Audio asset not found.")
        if audio_asset["kind"] not in AUDIO_ASSET_KINDS or detect_asset_kind(audio_asset) != "audio":
            raise ImportValidationError("Audio asset must be an uploaded audio file.")

    job_id = await insert_import_job(
        owner_id=owner_id,
        source_type=source_type.value,
        source_asset_id=request.source_asset_id,
        audio_asset_id=audio_asset_id,
        params=params.to_dict(),
    )
    logger.info("📥 Import submitted by {}: {} ({})", owner_id, params.title, source_type.value)
    return job_id


def serialize_job(job: dict[str, Any]) -> dict[str, Any]:
    """Client-facing view of an import job."""
    return {
        "id": job["id"],
        "status": job["status"],
        "stage": job["stage"],
        "progressPercent": job["progress_percent"],
        "sourceType": job["source_type"],
        "levelId": job.get("level_id"),
        "result": job.get("result"),
        "error": job.get("error"),
        "createdAt": job["created_at"],
        "updatedAt": job["updated_at"],
        "completedAt": job.get("completed_at"),
    }
