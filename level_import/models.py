"""
Level Import Service - Domain Models

Enums and dataclasses shared by the import pipeline.  Python code works
with snake_case attributes; ``to_dict`` / ``from_dict`` produce and accept
the camelCase documents stored in the database and returned by the API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SourceType(str, Enum):
    MIDI = "midi"
    ISOLATED_AUDIO = "isolated_audio"
    FULL_MIX_AUDIO = "full_mix_audio"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStage(str, Enum):
    """Pipeline stages, in the order an audio import walks through them."""

    QUEUED = "queued"
    VALIDATING_ASSETS = "validating_assets"
    PREPROCESSING_AUDIO = "preprocessing_audio"
    STEM_SEPARATION = "stem_separation"
    TRANSCRIBING = "transcribing"
    CLEANUP = "cleanup"
    BEAT_TRACKING = "beat_tracking"
    QUANTIZATION = "quantization"
    CHART_BUILD = "chart_build"
    DRAFT_SAVED = "draft_saved"
    COMPLETE = "complete"
    FAILED = "failed"


class AssetKind(str, Enum):
    MIDI_SOURCE = "midi_source"
    AUDIO_SOURCE = "audio_source"
    AUDIO_STEM = "audio_stem"
    AUDIO_PREVIEW = "audio_preview"


class Quantization(str, Enum):
    OFF = "off"
    EIGHTH = "1/8"
    SIXTEENTH = "1/16"


class InstrumentPreset(str, Enum):
    GUITAR = "guitar"
    BASS = "bass"


class TranscriptionTuning(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    SENSITIVE = "sensitive"


class StemName(str, Enum):
    GUITAR = "guitar"
    BASS = "bass"
    VOCALS = "vocals"
    DRUMS = "drums"
    OTHER = "other"


class BpmSource(str, Enum):
    DETECTED = "detected"
    MANUAL_FALLBACK = "manual_fallback"
    NONE = "none"


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------


@dataclass
class ChartEvent:
    """One playable event: a single note or a chord sharing an onset."""

    time_ms: int
    duration_ms: int
    notes: list[int]
    velocity: float = 0.8
    confidence: float = 1.0
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timeMs": self.time_ms,
            "durationMs": self.duration_ms,
            "notes": list(self.notes),
            "velocity": self.velocity,
            "confidence": self.confidence,
        }
        if self.id is not None:
            data = {"id": self.id, **data}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChartEvent:
        return cls(
            time_ms=int(data["timeMs"]),
            duration_ms=int(data["durationMs"]),
            notes=[int(n) for n in data.get("notes", [])],
            velocity=float(data.get("velocity", 0.8)),
            confidence=float(data.get("confidence", 1.0)),
            id=data.get("id"),
        )


def sort_events(events: list[ChartEvent]) -> list[ChartEvent]:
    """Return *events* in chart order: by onset, then duration, then pitch."""
    return sorted(events, key=lambda e: (e.time_ms, e.duration_ms, tuple(e.notes)))


@dataclass
class LevelChart:
    """A playable chart: an audio track plus its timed note events."""

    id: str
    title: str
    audio_url: str | None
    offset_ms: int = 0
    bpm_hint: float | None = None
    events: list[ChartEvent] = field(default_factory=list)
    analysis_audio_url: str | None = None
    analysis_stem: str | None = None
    analysis_first_activity_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "audioUrl": self.audio_url,
            "offsetMs": self.offset_ms,
            "bpmHint": self.bpm_hint,
            "events": [e.to_dict() for e in self.events],
        }
        if self.analysis_audio_url is not None:
            data["analysisAudioUrl"] = self.analysis_audio_url
        if self.analysis_stem is not None:
            data["analysisStem"] = self.analysis_stem
        if self.analysis_first_activity_ms is not None:
            data["analysisFirstActivityMs"] = self.analysis_first_activity_ms
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LevelChart:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            audio_url=data.get("audioUrl"),
            offset_ms=int(data.get("offsetMs", 0)),
            bpm_hint=data.get("bpmHint"),
            events=[ChartEvent.from_dict(e) for e in data.get("events", [])],
            analysis_audio_url=data.get("analysisAudioUrl"),
            analysis_stem=data.get("analysisStem"),
            analysis_first_activity_ms=data.get("analysisFirstActivityMs"),
        )

    def with_event_ids(self) -> LevelChart:
        """Copy of this chart with events sorted and numbered "1".."n"."""
        numbered = [
            ChartEvent(
                time_ms=e.time_ms,
                duration_ms=e.duration_ms,
                notes=list(e.notes),
                velocity=e.velocity,
                confidence=e.confidence,
                id=str(index),
            )
            for index, e in enumerate(sort_events(self.events), start=1)
        ]
        return LevelChart(
            id=self.id,
            title=self.title,
            audio_url=self.audio_url,
            offset_ms=self.offset_ms,
            bpm_hint=self.bpm_hint,
            events=numbered,
            analysis_audio_url=self.analysis_audio_url,
            analysis_stem=self.analysis_stem,
            analysis_first_activity_ms=self.analysis_first_activity_ms,
        )


# ---------------------------------------------------------------------------
# Job parameters
# ---------------------------------------------------------------------------


@dataclass
class ImportParams:
    """User-supplied knobs for an import job."""

    title: str
    manual_bpm: float | None = None
    quantization: Quantization = Quantization.OFF
    instrument_preset: InstrumentPreset = InstrumentPreset.GUITAR
    transcription_tuning: TranscriptionTuning = TranscriptionTuning.BALANCED
    selected_stem: StemName = StemName.GUITAR

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "manualBpm": self.manual_bpm,
            "quantization": self.quantization.value,
            "instrumentPreset": self.instrument_preset.value,
            "transcriptionTuning": self.transcription_tuning.value,
            "selectedStem": self.selected_stem.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImportParams:
        return cls(
            title=data.get("title", ""),
            manual_bpm=data.get("manualBpm"),
            quantization=Quantization(data.get("quantization") or "off"),
            instrument_preset=InstrumentPreset(data.get("instrumentPreset") or "guitar"),
            transcription_tuning=TranscriptionTuning(
                data.get("transcriptionTuning") or "balanced"
            ),
            selected_stem=StemName(data.get("selectedStem") or "guitar"),
        )
