"""
Level Import Service - Quantizer

Snaps event onsets and durations to a 1/8 or 1/16 note grid.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from level_import.models import ChartEvent, Quantization, sort_events
from level_import.utils import round_half_up

# Grid subdivisions per beat
DIVISIONS: dict[str, int] = {
    "1/8": 2,
    "1/16": 4,
}


@dataclass
class QuantizationResult:
    events: list[ChartEvent]
    warnings: list[str] = field(default_factory=list)


def grid_step_ms(bpm: float, quantization: Quantization | str) -> float:
    return 60_000 / bpm / DIVISIONS[Quantization(quantization).value]


def run_quantization(
    events: list[ChartEvent],
    quantization: Quantization | str,
    bpm: float | None,
) -> QuantizationResult:
    """
    Quantize *events* to the grid implied by *bpm*.

    Onsets snap to the nearest grid line; durations snap too but never drop
    below one grid step.  Grid values are integers so running this twice
    changes nothing the second time.
    """
    mode = Quantization(quantization)
    if mode == Quantization.OFF:
        return QuantizationResult(events=sort_events(events))
    if not bpm or bpm <= 0:
        return QuantizationResult(
            events=sort_events(events),
            warnings=["Quantization skipped because BPM is unavailable."],
        )

    step = grid_step_ms(bpm, mode)
    quantized = [
        ChartEvent(
            time_ms=round_half_up(max(0.0, round_half_up(e.time_ms / step) * step)),
            duration_ms=round_half_up(max(step, round_half_up(e.duration_ms / step) * step)),
            notes=list(e.notes),
            velocity=e.velocity,
            confidence=e.confidence,
            id=e.id,
        )
        for e in events
    ]
    return QuantizationResult(events=sort_events(quantized))
