"""
Level Import Service - Note Event Helpers

Raw single-pitch notes come out of both the MIDI importer and the audio
transcriber.  This module folds them into chart events, merging notes whose
onsets fall within a few milliseconds of each other into one chord.
"""

from __future__ import annotations

from dataclasses import dataclass

from level_import.models import ChartEvent, sort_events
from level_import.utils import round_half_up

# Notes starting within this many ms of a chord's onset join the chord.
CHORD_WINDOW_MS = 12


@dataclass
class RawNote:
    """A single pitched note with timing already in milliseconds."""

    time_ms: int
    duration_ms: int
    pitch: int
    velocity: float = 0.8
    confidence: float = 1.0


def group_chords(
    notes: list[RawNote],
    window_ms: int = CHORD_WINDOW_MS,
    fixed_confidence: float | None = None,
) -> list[ChartEvent]:
    """
    Group onset-sorted notes into chord events.

    A note joins the current chord when its onset is within *window_ms* of
    the chord's onset.  A chord takes the longest duration of its notes, the
    unique pitches in ascending order, and the mean velocity (and mean
    confidence unless *fixed_confidence* is given), rounded to 3 decimals.
    """
    ordered = sorted(notes, key=lambda n: (n.time_ms, n.pitch))
    groups: list[list[RawNote]] = []
    for note in ordered:
        if groups and abs(groups[-1][0].time_ms - note.time_ms) <= window_ms:
            groups[-1].append(note)
        else:
            groups.append([note])

    events: list[ChartEvent] = []
    for group in groups:
        velocity = round(sum(n.velocity for n in group) / len(group), 3)
        if fixed_confidence is None:
            confidence = round(sum(n.confidence for n in group) / len(group), 3)
        else:
            confidence = fixed_confidence
        events.append(
            ChartEvent(
                time_ms=group[0].time_ms,
                duration_ms=max(n.duration_ms for n in group),
                notes=sorted({n.pitch for n in group}),
                velocity=velocity,
                confidence=confidence,
            )
        )
    return sort_events(events)


def seconds_to_ms(seconds: float) -> int:
    return max(0, round_half_up(seconds * 1000))


def duration_to_ms(seconds: float) -> int:
    return max(1, round_half_up(seconds * 1000))
