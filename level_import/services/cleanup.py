"""
Level Import Service - Cleanup Filter

Second-pass cleanup for transcribed events before beat tracking:
normalisation, confidence floor, preset pitch range, duplicate-chord
merging, duration clamping and optional monophonic simplification.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from level_import.models import ChartEvent, InstrumentPreset, sort_events
from level_import.utils import round_half_up

# (min_pitch, max_pitch) MIDI note numbers per preset
PRESET_PITCH_RANGES: dict[str, tuple[int, int]] = {
    "guitar": (40, 88),
    "bass": (28, 67),
}

DEFAULT_MIN_CONFIDENCE = 0.2
DEFAULT_MIN_DURATION_MS = 60
MAX_DURATION_MS = 60_000
MERGE_WINDOW_MS = 10


@dataclass
class CleanupResult:
    events: list[ChartEvent]
    warnings: list[str] = field(default_factory=list)


def _normalize(events: list[ChartEvent]) -> list[ChartEvent]:
    normalized = []
    for event in events:
        notes = sorted({round_half_up(n) for n in event.notes if 0 <= round_half_up(n) <= 127})
        if not notes:
            continue
        normalized.append(
            ChartEvent(
                time_ms=max(0, round_half_up(event.time_ms)),
                duration_ms=max(1, round_half_up(event.duration_ms)),
                notes=notes,
                velocity=event.velocity,
                confidence=event.confidence,
            )
        )
    return normalized


def _merge_duplicates(events: list[ChartEvent]) -> list[ChartEvent]:
    """Merge events within 10 ms of each other that play the same pitch set."""
    merged: list[ChartEvent] = []
    for event in sort_events(events):
        previous = merged[-1] if merged else None
        if (
            previous is not None
            and event.time_ms - previous.time_ms <= MERGE_WINDOW_MS
            and previous.notes == event.notes
        ):
            previous.duration_ms = max(previous.duration_ms, event.duration_ms)
            previous.velocity = max(previous.velocity, event.velocity)
            previous.confidence = max(previous.confidence, event.confidence)
            continue
        merged.append(event)
    return merged


def run_cleanup(
    events: list[ChartEvent],
    preset: InstrumentPreset | str = InstrumentPreset.GUITAR,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    min_duration_ms: int = DEFAULT_MIN_DURATION_MS,
    simplify_monophonic: bool = False,
) -> CleanupResult:
    """
    Clean a list of transcribed events.

    Events without a confidence value count as fully confident.  Pitches
    outside the preset range are removed note by note; an event left with
    no notes is dropped.  Durations are clamped to
    ``[min_duration_ms, 60000]``.  With *simplify_monophonic* each chord is
    reduced to its highest note.
    """
    warnings: list[str] = []
    min_pitch, max_pitch = PRESET_PITCH_RANGES[InstrumentPreset(preset).value]

    cleaned = _normalize(events)
    cleaned = [
        e for e in cleaned
        if (e.confidence if e.confidence is not None else 1.0) >= min_confidence
    ]

    in_range = []
    for event in cleaned:
        event.notes = [n for n in event.notes if min_pitch <= n <= max_pitch]
        if event.notes:
            in_range.append(event)
    cleaned = _merge_duplicates(in_range)

    for event in cleaned:
        event.duration_ms = min(MAX_DURATION_MS, max(min_duration_ms, event.duration_ms))
        if simplify_monophonic and len(event.notes) > 1:
            event.notes = [max(event.notes)]

    cleaned = sort_events(cleaned)
    if events and not cleaned:
        warnings.append(
            "Cleanup removed all detected notes. Try lowering filters in a future iteration."
        )
    return CleanupResult(events=cleaned, warnings=warnings)
