"""
Tests for the MIDI importer.

Tests cover:
    - Chord grouping of near-simultaneous notes
    - Tick → millisecond conversion with constant and changing tempo
    - BPM hint precedence (file tempo, manual BPM, warning)
    - Track selection and empty files
    - Reading every note for transcription fallback
"""

import mido
import pytest

from level_import.services.midi_import import (
    TempoEvent,
    _build_tempo_map_seconds,
    _tick_to_seconds,
    import_midi,
    read_all_notes,
)
from level_import.services.note_events import RawNote, group_chords

BPM_WARNING = "No BPM was detected in MIDI metadata"


def _warned(warnings, fragment):
    return any(fragment in w for w in warnings)


# ---------------------------------------------------------------------------
# Tempo map
# ---------------------------------------------------------------------------


class TestTempoMap:
    def test_empty_map_defaults_to_120_bpm(self):
        tempo_map = _build_tempo_map_seconds([], 480)
        assert len(tempo_map) == 1
        assert _tick_to_seconds(480, tempo_map, 480) == pytest.approx(0.5)

    def test_default_tempo_until_first_change(self):
        tempo_map = _build_tempo_map_seconds([TempoEvent(tick=960, microseconds_per_beat=1_000_000)], 480)
        assert tempo_map[0].tick == 0
        assert tempo_map[1].time_seconds == pytest.approx(1.0)

    def test_tempo_change_is_respected(self):
        events = [
            TempoEvent(tick=0, microseconds_per_beat=500_000),
            TempoEvent(tick=960, microseconds_per_beat=1_000_000),
        ]
        tempo_map = _build_tempo_map_seconds(events, 480)
        # 2 beats at 120 BPM + 1 beat at 60 BPM
        assert _tick_to_seconds(1440, tempo_map, 480) == pytest.approx(2.0)


# ---------------------------------------------------------------------------
# import_midi
# ---------------------------------------------------------------------------


class TestImportMidi:
    def test_notes_five_ticks_apart_form_one_chord(self, midi_factory):
        path = midi_factory([[(0, 480, 60, 100), (5, 480, 64, 100)]], bpm=120)

        result = import_midi(path, level_id="lvl", title="Chord")

        assert len(result.chart.events) == 1
        event = result.chart.events[0]
        assert event.notes == [60, 64]
        assert event.time_ms == 0
        assert event.confidence == 1.0

    def test_header_bpm_becomes_hint_without_warning(self, midi_factory):
        path = midi_factory([[(0, 480, 60, 100), (480, 480, 62, 100)]], bpm=100)

        result = import_midi(path, level_id="lvl", title="Tempo")

        assert result.chart.bpm_hint == 100.0
        assert result.header_bpm == 100.0
        assert not _warned(result.warnings, BPM_WARNING)
        # One beat at 100 BPM is 600 ms
        assert [e.time_ms for e in result.chart.events] == [0, 600]
        assert result.chart.events[0].duration_ms == 600

    def test_header_bpm_beats_manual_bpm(self, midi_factory):
        path = midi_factory([[(0, 480, 60, 100)]], bpm=100)
        result = import_midi(path, level_id="lvl", title="Tempo", manual_bpm=140)
        assert result.chart.bpm_hint == 100.0

    def test_manual_bpm_used_without_tempo_event(self, midi_factory):
        path = midi_factory([[(0, 480, 60, 100)]])

        result = import_midi(path, level_id="lvl", title="Manual", manual_bpm=90)

        assert result.chart.bpm_hint == 90.0
        assert result.header_bpm is None
        assert not _warned(result.warnings, BPM_WARNING)

    def test_missing_bpm_warns(self, midi_factory):
        path = midi_factory([[(0, 480, 60, 100)]])

        result = import_midi(path, level_id="lvl", title="No Tempo")

        assert result.chart.bpm_hint is None
        assert _warned(result.warnings, BPM_WARNING)
        # Default 120 BPM timing still applies
        assert result.chart.events[0].duration_ms == 500

    def test_empty_file_is_valid_with_warning(self, midi_factory):
        path = midi_factory([], bpm=120)

        result = import_midi(path, level_id="lvl", title="Empty")

        assert result.chart.events == []
        assert result.track_index is None
        assert _warned(result.warnings, "No MIDI notes were detected")

    def test_track_with_most_notes_is_used(self, midi_factory):
        path = midi_factory(
            [
                [(0, 240, 40, 100)],
                [(0, 240, 60, 100), (480, 240, 62, 100), (960, 240, 64, 100)],
            ],
            bpm=120,
        )

        result = import_midi(path, level_id="lvl", title="Tracks")

        assert result.track_index == 2
        assert [e.notes for e in result.chart.events] == [[60], [62], [64]]

    def test_chart_fields_are_copied(self, midi_factory):
        path = midi_factory([[(0, 480, 60, 127)]], bpm=120)

        chart = import_midi(
            path, level_id="my-level", title="My Level", audio_url="/uploads/a.mp3"
        ).chart

        assert chart.id == "my-level"
        assert chart.title == "My Level"
        assert chart.audio_url == "/uploads/a.mp3"
        assert chart.offset_ms == 0
        assert chart.events[0].velocity == 1.0

    def test_tempo_change_shifts_later_notes(self, tmp_path):
        midi = mido.MidiFile(type=1, ticks_per_beat=480)
        tempo = mido.MidiTrack()
        tempo.append(mido.MetaMessage("set_tempo", tempo=500_000, time=0))
        tempo.append(mido.MetaMessage("set_tempo", tempo=1_000_000, time=960))
        tempo.append(mido.MetaMessage("end_of_track", time=0))
        midi.tracks.append(tempo)
        notes = mido.MidiTrack()
        notes.append(mido.Message("note_on", note=60, velocity=100, time=1440))
        notes.append(mido.Message("note_off", note=60, velocity=0, time=480))
        notes.append(mido.MetaMessage("end_of_track", time=0))
        midi.tracks.append(notes)
        path = tmp_path / "tempo_change.mid"
        midi.save(str(path))

        result = import_midi(path, level_id="lvl", title="Tempo Change")

        assert result.chart.bpm_hint == 120.0
        assert result.chart.events[0].time_ms == 2000
        assert result.chart.events[0].duration_ms == 1000

    def test_unreadable_file_raises_value_error(self, tmp_path):
        path = tmp_path / "broken.mid"
        path.write_bytes(b"definitely not midi")

        with pytest.raises(ValueError, match="Unable to read MIDI file"):
            import_midi(path, level_id="lvl", title="Broken")


# ---------------------------------------------------------------------------
# read_all_notes / chord grouping
# ---------------------------------------------------------------------------


class TestReadAllNotes:
    def test_reads_every_track_with_velocity_confidence(self, midi_factory):
        path = midi_factory(
            [[(0, 480, 60, 127)], [(480, 480, 45, 64)]],
            bpm=120,
        )

        notes = read_all_notes(path)

        assert [(n.time_ms, n.pitch) for n in sorted(notes, key=lambda n: n.time_ms)] == [
            (0, 60),
            (500, 45),
        ]
        quiet = next(n for n in notes if n.pitch == 45)
        assert quiet.confidence == pytest.approx(64 / 127)


class TestGroupChords:
    def test_window_boundary(self):
        notes = [
            RawNote(time_ms=0, duration_ms=100, pitch=60),
            RawNote(time_ms=12, duration_ms=300, pitch=64),
            RawNote(time_ms=25, duration_ms=100, pitch=67),
        ]

        events = group_chords(notes)

        assert [e.notes for e in events] == [[60, 64], [67]]
        assert events[0].duration_ms == 300

    def test_mean_velocity_and_confidence(self):
        notes = [
            RawNote(time_ms=0, duration_ms=100, pitch=60, velocity=0.4, confidence=0.5),
            RawNote(time_ms=5, duration_ms=100, pitch=64, velocity=0.8, confidence=0.9),
        ]

        event = group_chords(notes)[0]

        assert event.velocity == pytest.approx(0.6)
        assert event.confidence == pytest.approx(0.7)

    def test_duplicate_pitches_collapse(self):
        notes = [
            RawNote(time_ms=0, duration_ms=100, pitch=60),
            RawNote(time_ms=3, duration_ms=100, pitch=60),
        ]
        assert group_chords(notes)[0].notes == [60]
