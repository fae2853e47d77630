"""
Level Import Service - MIDI Importer

Builds a chart from a Standard MIDI File:

    - Reads every track with ``mido``, pairing note-on / note-off events
      per (channel, pitch).
    - Picks the track with the most notes as the playable part.
    - Converts ticks to milliseconds through the full tempo map, so files
      with tempo changes stay in sync.
    - Folds notes starting within 12 ms of each other into chords.

The BPM hint is the file's first tempo event, falling back to the manual
BPM the user supplied, and otherwise left empty with a warning.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

import mido
from loguru import logger

from level_import.models import LevelChart
from level_import.services.note_events import (
    RawNote,
    duration_to_ms,
    group_chords,
    seconds_to_ms,
)

DEFAULT_MICROSECONDS_PER_BEAT = 500_000  # 120 BPM


@dataclass
class TempoEvent:
    """A tempo change at an absolute tick."""

    tick: int
    microseconds_per_beat: int
    # Time in seconds when this tempo takes effect
    time_seconds: float = 0.0


@dataclass
class TrackNote:
    tick: int
    duration_ticks: int
    pitch: int
    velocity: int


@dataclass
class MidiImportResult:
    chart: LevelChart
    warnings: list[str] = field(default_factory=list)
    header_bpm: float | None = None
    track_index: int | None = None


def _build_tempo_map_seconds(
    tempo_events: list[TempoEvent], ticks_per_beat: int
) -> list[TempoEvent]:
    """Compute absolute time in seconds for each tempo event."""
    if not tempo_events:
        return [TempoEvent(tick=0, microseconds_per_beat=DEFAULT_MICROSECONDS_PER_BEAT)]

    events = sorted(tempo_events, key=lambda e: e.tick)
    if events[0].tick > 0:
        # The default tempo applies until the first explicit change
        events.insert(0, TempoEvent(tick=0, microseconds_per_beat=DEFAULT_MICROSECONDS_PER_BEAT))

    current_time = 0.0
    prev_tick = 0
    prev_uspb = events[0].microseconds_per_beat

    for evt in events:
        delta_ticks = evt.tick - prev_tick
        if delta_ticks > 0 and ticks_per_beat > 0:
            current_time += (delta_ticks / ticks_per_beat) * (prev_uspb / 1_000_000)
        evt.time_seconds = current_time
        prev_tick = evt.tick
        prev_uspb = evt.microseconds_per_beat

    return events


def _tick_to_seconds(tick: int, tempo_map: list[TempoEvent], ticks_per_beat: int) -> float:
    """Convert a MIDI tick position to seconds using the tempo map."""
    active = tempo_map[0]
    for evt in tempo_map:
        if evt.tick <= tick:
            active = evt
        else:
            break

    if ticks_per_beat <= 0:
        return active.time_seconds
    delta_ticks = tick - active.tick
    return active.time_seconds + (delta_ticks / ticks_per_beat) * (
        active.microseconds_per_beat / 1_000_000
    )


def _read_tracks(
    midi: mido.MidiFile,
) -> tuple[list[TempoEvent], dict[int, list[TrackNote]]]:
    tempo_events: list[TempoEvent] = []
    track_notes: dict[int, list[TrackNote]] = defaultdict(list)

    for track_idx, track in enumerate(midi.tracks):
        abs_tick = 0
        # (channel, pitch) → (start_tick, velocity)
        pending: dict[tuple[int, int], tuple[int, int]] = {}

        for msg in track:
            abs_tick += msg.time  # msg.time is delta ticks

            if msg.type == "set_tempo":
                tempo_events.append(
                    TempoEvent(tick=abs_tick, microseconds_per_beat=msg.tempo)
                )

            elif msg.type == "note_on" and msg.velocity > 0:
                pending[(msg.channel, msg.note)] = (abs_tick, msg.velocity)

            elif msg.type == "note_off" or (msg.type == "note_on" and msg.velocity == 0):
                key = (msg.channel, msg.note)
                if key in pending:
                    start_tick, velocity = pending.pop(key)
                    track_notes[track_idx].append(
                        TrackNote(
                            tick=start_tick,
                            duration_ticks=max(abs_tick - start_tick, 1),
                            pitch=msg.note,
                            velocity=velocity,
                        )
                    )

    return tempo_events, track_notes


def _to_raw_notes(
    notes: list[TrackNote], tempo_map: list[TempoEvent], ticks_per_beat: int
) -> list[RawNote]:
    raw_notes: list[RawNote] = []
    for note in sorted(notes, key=lambda n: (n.tick, n.pitch)):
        start = _tick_to_seconds(note.tick, tempo_map, ticks_per_beat)
        end = _tick_to_seconds(note.tick + note.duration_ticks, tempo_map, ticks_per_beat)
        raw_notes.append(
            RawNote(
                time_ms=seconds_to_ms(start),
                duration_ms=duration_to_ms(end - start),
                pitch=note.pitch,
                velocity=note.velocity / 127,
            )
        )
    return raw_notes


def _open_midi(midi_path: str | Path) -> mido.MidiFile:
    try:
        return mido.MidiFile(str(midi_path))
    except (OSError, EOFError, ValueError, KeyError, IndexError) as e:
        raise ValueError(f"Unable to read MIDI file: {e}") from e


def read_all_notes(midi_path: str | Path) -> list[RawNote]:
    """
    Read every note from every track of a MIDI file, in milliseconds.

    Confidence mirrors the normalised velocity, which is how transcription
    tools encode note strength in their MIDI output.
    """
    midi = _open_midi(midi_path)
    tempo_events, track_notes = _read_tracks(midi)
    tempo_map = _build_tempo_map_seconds(tempo_events, midi.ticks_per_beat)
    notes = [note for idx in sorted(track_notes) for note in track_notes[idx]]
    raw_notes = _to_raw_notes(notes, tempo_map, midi.ticks_per_beat)
    for note in raw_notes:
        note.confidence = note.velocity
    return raw_notes


def import_midi(
    midi_path: str | Path,
    level_id: str,
    title: str,
    audio_url: str = "",
    manual_bpm: float | None = None,
) -> MidiImportResult:
    """
    Convert a MIDI file into a chart.

    Parameters
    ----------
    midi_path : str or Path
        Path to the ``.mid`` / ``.midi`` file.
    level_id, title, audio_url : str
        Copied into the chart.
    manual_bpm : float, optional
        Used as the BPM hint when the file carries no tempo event.

    Returns
    -------
    MidiImportResult
        The chart plus advisory warnings.  An empty chart is valid.

    Raises
    ------
    ValueError
        If the file cannot be parsed as MIDI.
    """
    midi = _open_midi(midi_path)
    ticks_per_beat = midi.ticks_per_beat
    tempo_events, track_notes = _read_tracks(midi)
    warnings: list[str] = []

    header_bpm: float | None = None
    if tempo_events:
        first = min(tempo_events, key=lambda e: e.tick)
        header_bpm = round(mido.tempo2bpm(first.microseconds_per_beat), 2)

    tempo_map = _build_tempo_map_seconds(tempo_events, ticks_per_beat)

    track_index: int | None = None
    notes: list[TrackNote] = []
    if track_notes:
        # Most notes wins; earliest track breaks ties
        track_index = max(track_notes, key=lambda idx: (len(track_notes[idx]), -idx))
        notes = track_notes[track_index]

    raw_notes = _to_raw_notes(notes, tempo_map, ticks_per_beat)
    events = group_chords(raw_notes, fixed_confidence=1.0)
    if not events:
        warnings.append("No MIDI notes were detected in the selected file.")

    bpm_hint: float | None = header_bpm
    if bpm_hint is None and manual_bpm is not None and manual_bpm > 0:
        bpm_hint = float(manual_bpm)
    if bpm_hint is None:
        warnings.append(
            "No BPM was detected in MIDI metadata. You can set BPM manually in the editor."
        )

    logger.info(
        "🎹 MIDI import: {} notes → {} events (track {}, bpm={})",
        len(raw_notes),
        len(events),
        track_index,
        bpm_hint,
    )

    chart = LevelChart(
        id=level_id,
        title=title,
        audio_url=audio_url,
        offset_ms=0,
        bpm_hint=bpm_hint,
        events=events,
    )
    return MidiImportResult(
        chart=chart, warnings=warnings, header_bpm=header_bpm, track_index=track_index
    )
