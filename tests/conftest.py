"""
Level Import Service - Pytest Configuration & Shared Fixtures

Provides reusable fixtures for:
- A fresh SQLite database per test
- Local asset storage and scratch directories under tmp_path
- Synthetic MIDI files (built with mido) and WAV files (numpy + soundfile)
- Helpers for queueing jobs and uploading assets
"""

import asyncio
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

import mido
import numpy as np
import pytest
import soundfile as sf

import level_import.database as database
from level_import.models import AssetKind
from level_import.services.asset_storage import LocalAssetStorage
from level_import.services.capabilities import clear_capability_cache

# ---------------------------------------------------------------------------
# Database / storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_capability_cache():
    """Never let a cached tool probe leak between tests."""
    clear_capability_cache()
    yield
    clear_capability_cache()


@pytest.fixture
def db(tmp_path: Path, monkeypatch) -> Path:
    """Point the database module at a fresh file and create the schema."""
    db_path = tmp_path / "level_import.db"
    monkeypatch.setattr(database, "DB_PATH", db_path)
    database.init_db()
    return db_path


@pytest.fixture
def storage(tmp_path: Path) -> LocalAssetStorage:
    """Asset storage rooted in the test's temp directory."""
    return LocalAssetStorage(root=tmp_path / "uploads", public_prefix="/uploads")


@pytest.fixture
def work_root(tmp_path: Path) -> Path:
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def upload_asset(db, storage, tmp_path) -> Callable[..., str]:
    """Store a local file as an asset and return its id."""

    def _upload(
        path: Path,
        kind: AssetKind,
        owner_id: str = "user-1",
        mime_type: Optional[str] = None,
    ) -> str:
        return storage.store_file(owner_id, path, kind, mime_type=mime_type)["id"]

    return _upload


@pytest.fixture
def queue_job(db) -> Callable[..., str]:
    """Insert a queued job row directly and return its id."""

    def _queue(
        owner_id: str = "user-1",
        source_type: str = "midi",
        source_asset_id: str = "asset-1",
        audio_asset_id: Optional[str] = None,
        params: Optional[dict] = None,
        max_attempts: int = 3,
    ) -> str:
        return asyncio.run(
            database.insert_import_job(
                owner_id=owner_id,
                source_type=source_type,
                source_asset_id=source_asset_id,
                audio_asset_id=audio_asset_id,
                params=params or {"title": "Test Level"},
                max_attempts=max_attempts,
            )
        )

    return _queue


def set_job_columns(job_id: str, **columns) -> None:
    """Overwrite raw job columns (used to fake stale locks)."""
    assignments = ", ".join(f"{name} = ?" for name in columns)
    with database.get_connection() as conn:
        conn.execute(
            f"UPDATE import_jobs SET {assignments} WHERE id = ?",
            [*columns.values(), job_id],
        )
        conn.commit()


@pytest.fixture
def make_stale():
    """Backdate a job's lock far beyond the staleness window."""

    def _stale(job_id: str) -> None:
        set_job_columns(job_id, locked_at="2000-01-01T00:00:00.000+00:00")

    return _stale


# ---------------------------------------------------------------------------
# MIDI fixtures
# ---------------------------------------------------------------------------

# (start_tick, duration_ticks, pitch, velocity)
MidiNoteSpec = Tuple[int, int, int, int]


def build_midi_file(
    path: Path,
    tracks: Iterable[List[MidiNoteSpec]],
    bpm: Optional[float] = None,
    ticks_per_beat: int = 480,
) -> Path:
    """Write a type-1 MIDI file with an optional tempo on the first track."""
    midi = mido.MidiFile(type=1, ticks_per_beat=ticks_per_beat)
    tempo_track = mido.MidiTrack()
    if bpm is not None:
        tempo_track.append(mido.MetaMessage("set_tempo", tempo=mido.bpm2tempo(bpm), time=0))
    tempo_track.append(mido.MetaMessage("end_of_track", time=0))
    midi.tracks.append(tempo_track)

    for notes in tracks:
        track = mido.MidiTrack()
        events = []
        for start, duration, pitch, velocity in notes:
            events.append((start, 1, mido.Message("note_on", note=pitch, velocity=velocity)))
            events.append((start + duration, 0, mido.Message("note_off", note=pitch, velocity=0)))
        # note_off before note_on at the same tick
        events.sort(key=lambda e: (e[0], e[1]))
        last_tick = 0
        for tick, _, msg in events:
            track.append(msg.copy(time=tick - last_tick))
            last_tick = tick
        track.append(mido.MetaMessage("end_of_track", time=0))
        midi.tracks.append(track)

    midi.save(str(path))
    return path


@pytest.fixture
def midi_factory(tmp_path: Path) -> Callable[..., Path]:
    """Build MIDI files under tmp_path: ``midi_factory(tracks, bpm=..., name=...)``."""

    def _make(
        tracks: Iterable[List[MidiNoteSpec]],
        bpm: Optional[float] = None,
        ticks_per_beat: int = 480,
        name: str = "song.mid",
    ) -> Path:
        return build_midi_file(tmp_path / name, tracks, bpm=bpm, ticks_per_beat=ticks_per_beat)

    return _make


# ---------------------------------------------------------------------------
# Audio fixtures
# ---------------------------------------------------------------------------

SAMPLE_RATE = 22050


def tone_with_lead_in(
    silence_seconds: float, tone_seconds: float, sr: int = SAMPLE_RATE, freq: float = 220.0
) -> np.ndarray:
    """Silence followed by a sine tone."""
    silence = np.zeros(int(sr * silence_seconds), dtype=np.float32)
    t = np.arange(int(sr * tone_seconds)) / sr
    tone = (0.5 * np.sin(2 * np.pi * freq * t)).astype(np.float32)
    return np.concatenate([silence, tone])


@pytest.fixture
def wav_factory(tmp_path: Path) -> Callable[..., Path]:
    """Write a tone WAV preceded by silence: ``wav_factory(silence_s, tone_s)``."""

    def _make(silence_seconds: float = 1.5, tone_seconds: float = 1.0, name: str = "take.wav") -> Path:
        path = tmp_path / name
        sf.write(str(path), tone_with_lead_in(silence_seconds, tone_seconds), SAMPLE_RATE)
        return path

    return _make
