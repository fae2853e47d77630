"""
Level Import Service - Audio Transcriber

Turns a preprocessed WAV into chart events.

    - **BasicPitchTranscriber** runs Spotify's Basic Pitch (the
      ``basic-pitch`` CLI, or ``python -m basic_pitch.inference`` when only
      the module is installed), reads its note-events CSV (falling back to
      the MIDI it also writes), then post-filters the raw notes for the
      chosen instrument preset and tuning.
    - **PlaceholderTranscriber** produces no events; it lets the rest of
      the pipeline run on hosts without Basic Pitch.

Post-filters run in a fixed order and each one reports how many notes it
removed:

    1. confidence floor
    2. preset pitch range
    3. intro gate (notes before the first detected activity)
    4. same-pitch merge (overlapping or within 20 ms)
    5. minimum duration

Frequency limits handed to Basic Pitch (approximate instrument ranges):
    Guitar : 70 Hz – 1400 Hz
    Bass   : 35 Hz –  500 Hz
"""

from __future__ import annotations

import csv
import subprocess
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from loguru import logger

from level_import.config import EXTERNAL_TOOL_TIMEOUT, TRANSCRIBER
from level_import.models import ChartEvent, InstrumentPreset, TranscriptionTuning
from level_import.services.activity import detect_first_activity_ms
from level_import.services.capabilities import get_runtime_dependency_status
from level_import.services.midi_import import read_all_notes
from level_import.services.note_events import RawNote, group_chords
from level_import.utils import round_half_up, summarize_process_output

# ---------------------------------------------------------------------------
# Preset / tuning tables
# ---------------------------------------------------------------------------

# (min_hz, max_hz) passed to Basic Pitch
PRESET_FREQUENCY_LIMITS: dict[str, tuple[float, float]] = {
    "guitar": (70.0, 1400.0),
    "bass": (35.0, 500.0),
}


@dataclass(frozen=True)
class PresetFilterBase:
    min_confidence: float
    min_duration_ms: int
    min_pitch: int
    max_pitch: int


PRESET_POST_FILTER_BASE: dict[str, PresetFilterBase] = {
    "guitar": PresetFilterBase(min_confidence=0.5, min_duration_ms=70, min_pitch=40, max_pitch=88),
    "bass": PresetFilterBase(min_confidence=0.6, min_duration_ms=90, min_pitch=28, max_pitch=67),
}


@dataclass(frozen=True)
class TuningAdjustment:
    confidence_delta: float
    min_duration_delta_ms: int
    intro_gate_margin_ms: int


TUNING_ADJUSTMENTS: dict[str, TuningAdjustment] = {
    "conservative": TuningAdjustment(0.07, 20, 60),
    "balanced": TuningAdjustment(0.0, 0, 120),
    "sensitive": TuningAdjustment(-0.10, -25, 180),
}

MERGE_GAP_TOLERANCE_MS = 20
MIN_POST_FILTER_DURATION_MS = 20


@dataclass(frozen=True)
class PostFilterConfig:
    tuning: str
    min_confidence: float
    min_duration_ms: int
    min_pitch: int
    max_pitch: int
    intro_gate_margin_ms: int


@dataclass
class PostFilterStats:
    raw: int = 0
    dropped_low_confidence: int = 0
    dropped_out_of_range: int = 0
    dropped_pre_activity: int = 0
    merged_overlap: int = 0
    dropped_short_duration: int = 0
    final: int = 0


def resolve_post_filter_config(
    preset: InstrumentPreset | str, tuning: TranscriptionTuning | str
) -> PostFilterConfig:
    """Combine the preset's base thresholds with the tuning adjustments."""
    preset_name = InstrumentPreset(preset).value
    tuning_name = TranscriptionTuning(tuning).value
    base = PRESET_POST_FILTER_BASE[preset_name]
    adjustment = TUNING_ADJUSTMENTS[tuning_name]
    return PostFilterConfig(
        tuning=tuning_name,
        min_confidence=max(0.0, min(1.0, base.min_confidence + adjustment.confidence_delta)),
        min_duration_ms=max(
            MIN_POST_FILTER_DURATION_MS,
            round_half_up(base.min_duration_ms + adjustment.min_duration_delta_ms),
        ),
        min_pitch=base.min_pitch,
        max_pitch=base.max_pitch,
        intro_gate_margin_ms=max(0, adjustment.intro_gate_margin_ms),
    )


# ---------------------------------------------------------------------------
# Output types / interface
# ---------------------------------------------------------------------------


@dataclass
class TranscriptionOutput:
    events: list[ChartEvent]
    warnings: list[str] = field(default_factory=list)
    first_activity_ms: int | None = None


class Transcriber(Protocol):
    name: str

    def transcribe(
        self,
        wav_path: Path,
        preset: InstrumentPreset | str,
        tuning: TranscriptionTuning | str,
        work_dir: Path,
    ) -> TranscriptionOutput: ...


class TranscriptionError(RuntimeError):
    """Raised when the transcription tool is missing or fails."""


# ---------------------------------------------------------------------------
# Note helpers
# ---------------------------------------------------------------------------


def to_velocity_unit(value: float) -> float:
    """Scale a velocity to [0, 1]; values above 1 are treated as MIDI 0–127."""
    if value != value or value <= 0:  # NaN or non-positive
        return 0.0
    if value <= 1:
        return float(value)
    return min(1.0, value / 127)


def _normalize_note(note: RawNote) -> RawNote:
    return RawNote(
        time_ms=max(0, round_half_up(note.time_ms)),
        duration_ms=max(1, round_half_up(note.duration_ms)),
        pitch=min(127, max(0, round_half_up(note.pitch))),
        velocity=min(1.0, max(0.0, note.velocity)),
        confidence=min(1.0, max(0.0, note.confidence)),
    )


def parse_note_events_csv(csv_path: Path) -> list[RawNote]:
    """
    Parse a Basic Pitch note-events CSV.

    Columns are ``start_time_s, end_time_s, pitch_midi, velocity`` (extra
    pitch-bend columns are ignored).  Rows that don't parse are skipped.
    """
    notes: list[RawNote] = []
    with open(csv_path, newline="", encoding="utf-8") as f:
        rows = [row for row in csv.reader(f) if any(cell.strip() for cell in row)]

    for row in rows[1:]:
        if len(row) < 4:
            continue
        try:
            start_s, end_s, pitch, velocity_raw = (float(cell) for cell in row[:4])
        except ValueError:
            continue
        velocity = to_velocity_unit(velocity_raw)
        notes.append(
            RawNote(
                time_ms=round_half_up(start_s * 1000),
                duration_ms=round_half_up((end_s - start_s) * 1000),
                pitch=round_half_up(pitch),
                velocity=velocity,
                confidence=velocity,
            )
        )
    return notes


def merge_overlapping_same_pitch(notes: list[RawNote]) -> list[RawNote]:
    """Merge same-pitch notes that overlap or are separated by ≤ 20 ms."""
    ordered = sorted(
        (_normalize_note(n) for n in notes),
        key=lambda n: (n.pitch, n.time_ms, n.duration_ms),
    )
    merged: list[RawNote] = []
    for note in ordered:
        previous = merged[-1] if merged else None
        if previous is None or previous.pitch != note.pitch:
            merged.append(note)
            continue

        previous_end = previous.time_ms + previous.duration_ms
        if note.time_ms > previous_end + MERGE_GAP_TOLERANCE_MS:
            merged.append(note)
            continue

        note_end = note.time_ms + note.duration_ms
        previous.duration_ms = max(previous_end, note_end) - previous.time_ms
        previous.velocity = max(previous.velocity, note.velocity)
        previous.confidence = max(previous.confidence, note.confidence)

    return sorted(merged, key=lambda n: (n.time_ms, n.pitch))


def apply_post_filters(
    notes: list[RawNote],
    config: PostFilterConfig,
    preset: str,
    first_activity_ms: int | None = None,
) -> tuple[list[RawNote], list[str], PostFilterStats]:
    """Run the post-filter chain.  Returns ``(notes, warnings, stats)``."""
    warnings: list[str] = []
    filtered = [_normalize_note(n) for n in notes]
    stats = PostFilterStats(raw=len(filtered))

    kept = [n for n in filtered if n.confidence >= config.min_confidence]
    stats.dropped_low_confidence = len(filtered) - len(kept)
    filtered = kept
    if stats.dropped_low_confidence:
        warnings.append(
            f"Dropped {stats.dropped_low_confidence} low-confidence notes "
            f"(threshold {config.min_confidence:.2f})."
        )

    kept = [n for n in filtered if config.min_pitch <= n.pitch <= config.max_pitch]
    stats.dropped_out_of_range = len(filtered) - len(kept)
    filtered = kept
    if stats.dropped_out_of_range:
        warnings.append(
            f"Dropped {stats.dropped_out_of_range} notes outside {preset} pitch range "
            f"({config.min_pitch}-{config.max_pitch})."
        )

    if first_activity_ms is not None:
        gate_ms = max(0, first_activity_ms - config.intro_gate_margin_ms)
        kept = [n for n in filtered if n.time_ms >= gate_ms]
        stats.dropped_pre_activity = len(filtered) - len(kept)
        filtered = kept
        if stats.dropped_pre_activity:
            warnings.append(
                f"Dropped {stats.dropped_pre_activity} pre-activity notes before {gate_ms}ms "
                f"(first activity {first_activity_ms}ms)."
            )

    merged = merge_overlapping_same_pitch(filtered)
    stats.merged_overlap = len(filtered) - len(merged)
    filtered = merged
    if stats.merged_overlap:
        warnings.append(f"Merged {stats.merged_overlap} overlapping same-pitch note events.")

    kept = [n for n in filtered if n.duration_ms >= config.min_duration_ms]
    stats.dropped_short_duration = len(filtered) - len(kept)
    filtered = kept
    if stats.dropped_short_duration:
        warnings.append(
            f"Dropped {stats.dropped_short_duration} short notes below {config.min_duration_ms}ms."
        )

    stats.final = len(filtered)
    warnings.append(
        f"Post-filter stats (preset={preset}, tuning={config.tuning}): raw={stats.raw}, "
        f"drop_confidence={stats.dropped_low_confidence}, drop_range={stats.dropped_out_of_range}, "
        f"drop_intro={stats.dropped_pre_activity}, merged_overlap={stats.merged_overlap}, "
        f"drop_short={stats.dropped_short_duration}, final={stats.final}."
    )
    warnings.append(
        f"Post-filter thresholds: confidence>={config.min_confidence:.2f}, "
        f"minDuration>={config.min_duration_ms}ms, introGateMargin={config.intro_gate_margin_ms}ms, "
        f"pitchRange={config.min_pitch}-{config.max_pitch}."
    )
    return filtered, warnings, stats


# ---------------------------------------------------------------------------
# Basic Pitch
# ---------------------------------------------------------------------------


def _find_output(output_dir: Path, wav_path: Path, suffixes: tuple[str, ...]) -> Path | None:
    for suffix in suffixes:
        expected = output_dir / f"{wav_path.stem}_basic_pitch{suffix}"
        if expected.exists():
            return expected
    for candidate in sorted(output_dir.iterdir()):
        if candidate.suffix.lower() in suffixes:
            return candidate
    return None


class BasicPitchTranscriber:
    """Transcribes audio with Basic Pitch and post-filters the result."""

    name = "basic-pitch"

    def _resolve_invocation(self) -> tuple[list[str], list[str]]:
        """Return ``(command prefix, warnings)`` for running Basic Pitch."""
        status = get_runtime_dependency_status(force_refresh=True)
        if status.basic_pitch == "cli":
            return ["basic-pitch"], []
        if status.basic_pitch == "python_module":
            return [sys.executable, "-m", "basic_pitch.inference"], [
                "Basic Pitch CLI was unavailable, so the Python module entrypoint "
                "was used for transcription."
            ]
        raise TranscriptionError(
            "Audio transcription failed: Basic Pitch is not available on the server runtime."
        )

    def _run(self, cmd: list[str]) -> None:
        logger.debug("🎼 Running: {}", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=EXTERNAL_TOOL_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise TranscriptionError(
                "Audio transcription failed while running Basic Pitch. "
                f"Timed out after {EXTERNAL_TOOL_TIMEOUT}s."
            ) from e
        except OSError as e:
            raise TranscriptionError(
                f"Audio transcription failed while running Basic Pitch. {e}"
            ) from e

        if result.returncode != 0:
            output = result.stderr.decode(errors="replace") or result.stdout.decode(errors="replace")
            message = summarize_process_output(output) or f"exited with code {result.returncode}"
            raise TranscriptionError(
                f"Audio transcription failed while running Basic Pitch. {message}"
            )

    def transcribe(
        self,
        wav_path: Path,
        preset: InstrumentPreset | str,
        tuning: TranscriptionTuning | str,
        work_dir: Path,
    ) -> TranscriptionOutput:
        wav_path = Path(wav_path)
        preset_name = InstrumentPreset(preset).value
        config = resolve_post_filter_config(preset_name, tuning)

        prefix, warnings = self._resolve_invocation()
        warnings.append(
            f"Transcription tuning: {config.tuning} (confidence>={config.min_confidence:.2f}, "
            f"minDuration>={config.min_duration_ms}ms, "
            f"introGateMargin={config.intro_gate_margin_ms}ms)."
        )

        output_dir = Path(work_dir) / "transcription" / uuid.uuid4().hex[:8]
        output_dir.mkdir(parents=True, exist_ok=True)
        min_hz, max_hz = PRESET_FREQUENCY_LIMITS[preset_name]
        cmd = [
            *prefix,
            "--save-midi",
            "--save-note-events",
            "--minimum-note-length",
            str(config.min_duration_ms),
            "--minimum-frequency",
            str(min_hz),
            "--maximum-frequency",
            str(max_hz),
            str(output_dir),
            str(wav_path),
        ]

        logger.info("🎼 Transcribing {} (preset={}, tuning={})", wav_path.name, preset_name, config.tuning)
        self._run(cmd)

        notes: list[RawNote] = []
        csv_path = _find_output(output_dir, wav_path, (".csv",))
        if csv_path is not None:
            try:
                notes = parse_note_events_csv(csv_path)
            except (OSError, csv.Error, UnicodeDecodeError):
                warnings.append(
                    "Failed to parse Basic Pitch note-events CSV. Falling back to MIDI output."
                )
        else:
            warnings.append(
                "Basic Pitch note-events CSV was not found. Falling back to MIDI output."
            )

        if not notes:
            midi_path = _find_output(output_dir, wav_path, (".mid", ".midi"))
            if midi_path is None:
                raise TranscriptionError("Basic Pitch did not emit a MIDI output file.")
            notes = read_all_notes(midi_path)

        first_activity_ms = detect_first_activity_ms(wav_path)
        if first_activity_ms is not None:
            warnings.append(f"Detected first analysis activity at {first_activity_ms}ms.")

        filtered, filter_warnings, stats = apply_post_filters(
            notes, config, preset_name, first_activity_ms
        )
        warnings.extend(filter_warnings)
        events = group_chords(filtered)

        if not events:
            warnings.append("Basic Pitch completed but no notes were detected in this audio segment.")

        logger.info(
            "🎼 Transcription finished: {} raw notes → {} events", stats.raw, len(events)
        )
        return TranscriptionOutput(
            events=events, warnings=warnings, first_activity_ms=first_activity_ms
        )


# ---------------------------------------------------------------------------
# Placeholder
# ---------------------------------------------------------------------------


class PlaceholderTranscriber:
    """Produces no events so the pipeline can run without Basic Pitch."""

    name = "placeholder"

    def transcribe(
        self,
        wav_path: Path,
        preset: InstrumentPreset | str,
        tuning: TranscriptionTuning | str,
        work_dir: Path,
    ) -> TranscriptionOutput:
        return TranscriptionOutput(
            events=[],
            warnings=[
                "Audio transcription is running in placeholder mode. "
                "No notes were generated; add notes manually in the editor."
            ],
        )


def get_transcriber(name: str | None = None) -> Transcriber:
    """Build the configured transcriber."""
    name = (name or TRANSCRIBER).lower()
    if name == "placeholder":
        return PlaceholderTranscriber()
    if name != "basic_pitch":
        logger.warning("⚠️ Unknown TRANSCRIBER '{}', using basic_pitch", name)
    return BasicPitchTranscriber()
