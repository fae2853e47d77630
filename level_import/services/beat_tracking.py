"""
Level Import Service - Beat Tracker

Estimates tempo from the inter-onset intervals of chart events and decides
whether to trust it or fall back to the user's manual BPM.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from level_import.models import BpmSource, ChartEvent

MIN_EVENTS = 4
MIN_DELTAS = 3
MIN_DELTA_MS = 120
MAX_DELTA_MS = 2000
CONFIDENCE_THRESHOLD = 0.45
# Deltas needed for full confidence
CONFIDENCE_SATURATION = 64
BPM_FLOOR = 70
BPM_CEILING = 190


@dataclass
class BeatTrackingResult:
    bpm: float | None
    confidence: float
    source: BpmSource
    warnings: list[str] = field(default_factory=list)


def detect_bpm(events: list[ChartEvent]) -> tuple[float | None, float]:
    """
    Estimate ``(bpm, confidence)`` from event onsets.

    Intervals outside 120–2000 ms are ignored.  The median interval is the
    beat period; the BPM is folded once into 70–190 by doubling or halving.
    """
    if len(events) < MIN_EVENTS:
        return None, 0.0

    onsets = sorted(e.time_ms for e in events)
    deltas = [
        b - a for a, b in zip(onsets, onsets[1:]) if MIN_DELTA_MS <= b - a <= MAX_DELTA_MS
    ]
    if len(deltas) < MIN_DELTAS:
        return None, 0.0

    period = float(np.median(deltas))
    bpm = 60_000 / period
    if bpm < BPM_FLOOR:
        bpm *= 2
    elif bpm > BPM_CEILING:
        bpm /= 2

    confidence = min(1.0, len(deltas) / CONFIDENCE_SATURATION)
    return round(bpm, 2), confidence


def run_beat_tracking(
    events: list[ChartEvent], manual_bpm: float | None = None
) -> BeatTrackingResult:
    """Detect BPM and resolve it against the optional manual BPM."""
    bpm, confidence = detect_bpm(events)

    if confidence >= CONFIDENCE_THRESHOLD:
        return BeatTrackingResult(bpm=bpm, confidence=confidence, source=BpmSource.DETECTED)

    if manual_bpm is not None and manual_bpm > 0:
        return BeatTrackingResult(
            bpm=float(manual_bpm),
            confidence=confidence,
            source=BpmSource.MANUAL_FALLBACK,
            warnings=["Automatic beat tracking was weak. Manual BPM was applied."],
        )

    return BeatTrackingResult(
        bpm=bpm,
        confidence=confidence,
        source=BpmSource.DETECTED if bpm is not None else BpmSource.NONE,
        warnings=["Beat tracking confidence was low and no manual BPM was provided."],
    )
