"""
Tests for the import pipeline orchestrator.

Tests cover:
    - MIDI imports end to end (tempo, chords, quantization, backing audio)
    - Isolated and full-mix audio imports with external tools stubbed out
    - Stage checkpoints and monotonic progress
    - Failure handling (missing assets, unreadable files, tool errors)
    - Abandoning a job whose lock was reclaimed
    - Scratch directory cleanup
"""

import asyncio
import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest

import level_import.database as database
from level_import.database import LockLostError, claim_next_job, get_import_job_sync
from level_import.models import AssetKind
from level_import.services.audio_preprocess import AudioMetadata, PreprocessResult
from level_import.services.orchestrator import FAILED_MESSAGE, process_import_job
from level_import.services.stem_separator import PassthroughStemSeparator, StemSeparationOutput
from level_import.services.transcriber import (
    BasicPitchTranscriber,
    PlaceholderTranscriber,
    TranscriptionError,
)
from tests.conftest import set_job_columns

WORKER = "worker-test"
CSV_HEADER = "start_time_s,end_time_s,pitch_midi,velocity,pitch_bend\n"


def _count(table: str, where: str = "1 = 1") -> int:
    with database.get_connection() as conn:
        (count,) = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}").fetchone()
    return count


def _files_under(root: Path) -> list:
    return [p for p in root.rglob("*") if p.is_file()]


class _StubSeparator:
    """Writes a fake ``other`` stem into the work dir."""

    name = "stub"

    def __init__(self):
        self.calls = []

    def separate(self, source_path, selected_stem, work_dir):
        self.calls.append((Path(source_path), selected_stem))
        stem_path = Path(work_dir) / "stems" / "other.mp3"
        stem_path.parent.mkdir(parents=True, exist_ok=True)
        stem_path.write_bytes(b"stem audio")
        return StemSeparationOutput(
            stem_path=stem_path,
            warnings=['Using Demucs "other" stem for transcription.'],
            resolved_stem="other",
        )


class _FailingTranscriber:
    name = "failing"

    def transcribe(self, wav_path, preset, tuning, work_dir):
        raise TranscriptionError(
            "Audio transcription failed: Basic Pitch is not available on the server runtime."
        )


def _csv_transcriber(rows):
    """BasicPitchTranscriber whose external command writes *rows* as its CSV."""
    transcriber = BasicPitchTranscriber()

    def run(cmd):
        output_dir = Path(cmd[-2])
        stem = Path(cmd[-1]).stem
        body = "".join(f"{row}\n" for row in rows)
        (output_dir / f"{stem}_basic_pitch.csv").write_text(CSV_HEADER + body)

    patch.object(transcriber, "_resolve_invocation", return_value=(["basic-pitch"], [])).start()
    patch.object(transcriber, "_run", side_effect=run).start()
    return transcriber


@pytest.fixture(autouse=True)
def _stop_patches():
    yield
    patch.stopall()


@pytest.fixture
def run_job(storage, work_root):
    """Claim the next job as WORKER and run the pipeline on it."""

    def _run(**kwargs):
        job = claim_next_job(WORKER)
        assert job is not None
        kwargs.setdefault("storage", storage)
        kwargs.setdefault("work_root", work_root)
        return process_import_job(job, WORKER, **kwargs)

    return _run


@pytest.fixture
def preprocessed(wav_factory):
    """Stub ffmpeg preprocessing so it hands back a real WAV."""
    wav = wav_factory(silence_seconds=1.5, tone_seconds=1.0, name="processed.wav")
    result = PreprocessResult(
        wav_path=wav, metadata=AudioMetadata(duration_sec=2.5, sample_rate_hz=22050, channels=1)
    )
    with patch(
        "level_import.services.orchestrator.preprocess_audio", return_value=result
    ) as mock_preprocess:
        yield mock_preprocess


# ---------------------------------------------------------------------------
# MIDI
# ---------------------------------------------------------------------------


class TestMidiImport:
    def test_midi_with_tempo_reaches_review(self, midi_factory, upload_asset, queue_job, run_job):
        midi = midi_factory([[(0, 480, 60, 100), (5, 480, 64, 100), (480, 480, 62, 100)]], bpm=100)
        asset_id = upload_asset(midi, AssetKind.MIDI_SOURCE)
        job_id = queue_job(source_asset_id=asset_id, params={"title": "My Song"})

        version_id = run_job()

        job = get_import_job_sync(job_id)
        assert job["status"] == "awaiting_review"
        assert job["stage"] == "complete"
        assert job["progress_percent"] == 100
        assert job["error"] is None
        assert job["level_id"].startswith("my-song-")

        result = job["result"]
        chart = result["chart"]
        assert chart["bpmHint"] == 100.0
        assert chart["title"] == "My Song"
        assert chart["audioUrl"] == ""
        assert [(e["id"], e["timeMs"], e["notes"]) for e in chart["events"]] == [
            ("1", 0, [60, 64]),
            ("2", 600, [62]),
        ]
        assert not any("BPM" in w for w in result["warnings"])
        assert result["levelId"] == job["level_id"]
        assert result["levelVersionId"] == version_id

        version = asyncio.run(database.get_level_version(version_id))
        assert version["chart"] == chart
        assert version["source_job_id"] == job_id

    def test_stage_checkpoints(self, midi_factory, upload_asset, queue_job, run_job):
        asset_id = upload_asset(midi_factory([[(0, 480, 60, 100)]], bpm=120), AssetKind.MIDI_SOURCE)
        queue_job(source_asset_id=asset_id)

        with patch(
            "level_import.services.orchestrator.update_job_progress",
            wraps=database.update_job_progress,
        ) as progress:
            run_job()

        checkpoints = [(c.args[2], c.args[3]) for c in progress.call_args_list]
        assert checkpoints == [
            ("validating_assets", 10),
            ("chart_build", 45),
            ("beat_tracking", 75),
            ("quantization", 85),
            ("draft_saved", 95),
        ]

    def test_backing_audio_becomes_audio_url(self, midi_factory, upload_asset, queue_job, run_job, tmp_path):
        backing = tmp_path / "backing.mp3"
        backing.write_bytes(b"ID3")
        audio_id = upload_asset(backing, AssetKind.AUDIO_SOURCE)
        midi_id = upload_asset(midi_factory([[(0, 480, 60, 100)]], bpm=120), AssetKind.MIDI_SOURCE)
        job_id = queue_job(source_asset_id=midi_id, audio_asset_id=audio_id)

        run_job()

        audio = database.get_asset_sync(audio_id, "user-1")
        chart = get_import_job_sync(job_id)["result"]["chart"]
        assert chart["audioUrl"] == audio["public_url"]

    def test_quantized_to_sixteenths(self, midi_factory, upload_asset, queue_job, run_job):
        midi = midi_factory([[(10, 100, 60, 100), (250, 100, 62, 100)]], bpm=120)
        asset_id = upload_asset(midi, AssetKind.MIDI_SOURCE)
        job_id = queue_job(source_asset_id=asset_id, params={"title": "Grid", "quantization": "1/16"})

        run_job()

        events = get_import_job_sync(job_id)["result"]["chart"]["events"]
        assert [(e["timeMs"], e["durationMs"]) for e in events] == [(0, 125), (250, 125)]

    def test_no_tempo_skips_quantization(self, midi_factory, upload_asset, queue_job, run_job):
        midi = midi_factory([[(0, 480, 60, 100), (960, 480, 62, 100)]])
        asset_id = upload_asset(midi, AssetKind.MIDI_SOURCE)
        job_id = queue_job(source_asset_id=asset_id, params={"title": "Loose", "quantization": "1/16"})

        run_job()

        result = get_import_job_sync(job_id)["result"]
        assert result["chart"]["bpmHint"] is None
        assert "Quantization skipped because BPM is unavailable." in result["warnings"]
        assert any("No BPM was detected in MIDI metadata" in w for w in result["warnings"])

    def test_existing_level_id_is_reused(self, midi_factory, upload_asset, queue_job, run_job):
        asset_id = upload_asset(midi_factory([[(0, 480, 60, 100)]], bpm=120), AssetKind.MIDI_SOURCE)
        job_id = queue_job(source_asset_id=asset_id)
        set_job_columns(job_id, level_id="existing-level")

        run_job()

        job = get_import_job_sync(job_id)
        assert job["level_id"] == "existing-level"
        assert job["result"]["chart"]["id"] == "existing-level"
        assert asyncio.run(database.get_user_level("existing-level", "user-1")) is not None

    def test_empty_midi_is_a_valid_draft(self, midi_factory, upload_asset, queue_job, run_job):
        asset_id = upload_asset(midi_factory([], bpm=120), AssetKind.MIDI_SOURCE)
        job_id = queue_job(source_asset_id=asset_id)

        run_job()

        job = get_import_job_sync(job_id)
        assert job["status"] == "awaiting_review"
        assert job["result"]["chart"]["events"] == []


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


class TestAudioImport:
    def test_low_confidence_notes_leave_empty_draft(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed, work_root
    ):
        source_id = upload_asset(wav_factory(), AssetKind.AUDIO_SOURCE)
        job_id = queue_job(
            source_type="isolated_audio", source_asset_id=source_id, params={"title": "Quiet Take"}
        )
        transcriber = _csv_transcriber(["2.0,2.5,60,0.3", "2.6,3.0,62,0.2", "3.1,3.5,64,0.1"])

        version_id = run_job(transcriber=transcriber)

        assert version_id is not None
        job = get_import_job_sync(job_id)
        assert job["status"] == "awaiting_review"
        result = job["result"]
        chart = result["chart"]
        assert chart["events"] == []
        assert "Dropped 3 low-confidence notes (threshold 0.50)." in result["warnings"]
        assert result["bpmSource"] == "none"
        assert result["audioMetadata"] == {"durationSec": 2.5, "sampleRateHz": 22050, "channels": 1}
        assert chart["audioUrl"] == database.get_asset_sync(source_id, "user-1")["public_url"]
        assert "analysisAudioUrl" not in chart
        assert 1400 <= chart["analysisFirstActivityMs"] <= 1520
        assert _files_under(work_root) == []

    def test_audio_stage_progress_is_monotonic(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed
    ):
        source_id = upload_asset(wav_factory(), AssetKind.AUDIO_SOURCE)
        queue_job(source_type="isolated_audio", source_asset_id=source_id)

        with patch(
            "level_import.services.orchestrator.update_job_progress",
            wraps=database.update_job_progress,
        ) as progress:
            run_job(transcriber=PlaceholderTranscriber())

        checkpoints = [(c.args[2], c.args[3]) for c in progress.call_args_list]
        assert checkpoints == [
            ("validating_assets", 10),
            ("preprocessing_audio", 35),
            ("transcribing", 50),
            ("cleanup", 65),
            ("beat_tracking", 75),
            ("quantization", 85),
            ("chart_build", 90),
            ("draft_saved", 95),
        ]

    def test_full_mix_publishes_separated_stem(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed
    ):
        source_id = upload_asset(wav_factory(name="mix.wav"), AssetKind.AUDIO_SOURCE)
        job_id = queue_job(
            source_type="full_mix_audio",
            source_asset_id=source_id,
            params={"title": "Full Mix", "selectedStem": "guitar"},
        )
        separator = _StubSeparator()

        run_job(transcriber=PlaceholderTranscriber(), separator=separator)

        assert separator.calls[0][1] == "guitar"
        assert preprocessed.call_args.args[0].name == "other.mp3"

        job = get_import_job_sync(job_id)
        chart = job["result"]["chart"]
        assert chart["analysisStem"] == "other"
        assert chart["audioUrl"] == chart["analysisAudioUrl"]
        assert chart["audioUrl"] == f"/uploads/user-1/full-mix_other_{job_id}.mp3"
        assert _count("assets", "kind = 'audio_stem'") == 1

    def test_failed_draft_save_leaves_no_stem(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed, storage
    ):
        source_id = upload_asset(wav_factory(name="mix.wav"), AssetKind.AUDIO_SOURCE)
        job_id = queue_job(
            source_type="full_mix_audio", source_asset_id=source_id, params={"title": "Full Mix"}
        )

        with patch(
            "level_import.services.orchestrator.complete_job_with_draft",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            assert run_job(transcriber=PlaceholderTranscriber(), separator=_StubSeparator()) is None

        job = get_import_job_sync(job_id)
        assert job["status"] == "failed"
        assert job["error"]["details"] == "database is locked"
        assert _count("assets", "kind = 'audio_stem'") == 0
        assert [p.name for p in _files_under(storage.root) if "_other_" in p.name] == []

    def test_reclaimed_run_overwrites_stem_file(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed, storage, make_stale
    ):
        source_id = upload_asset(wav_factory(name="mix.wav"), AssetKind.AUDIO_SOURCE)
        job_id = queue_job(
            source_type="full_mix_audio", source_asset_id=source_id, params={"title": "Full Mix"}
        )
        with patch(
            "level_import.services.orchestrator.complete_job_with_draft",
            side_effect=LockLostError("lock lost before the draft was saved"),
        ):
            assert run_job(transcriber=PlaceholderTranscriber(), separator=_StubSeparator()) is None
        make_stale(job_id)

        run_job(transcriber=PlaceholderTranscriber(), separator=_StubSeparator())

        job = get_import_job_sync(job_id)
        assert job["status"] == "awaiting_review"
        assert job["attempts"] == 2
        assert _count("assets", "kind = 'audio_stem'") == 1
        stems = [p.name for p in _files_under(storage.root) if "_other_" in p.name]
        assert stems == [f"full-mix_other_{job_id}.mp3"]

    def test_full_mix_passthrough_keeps_original(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed
    ):
        source_id = upload_asset(wav_factory(name="mix.wav"), AssetKind.AUDIO_SOURCE)
        job_id = queue_job(source_type="full_mix_audio", source_asset_id=source_id)

        run_job(transcriber=PlaceholderTranscriber(), separator=PassthroughStemSeparator())

        result = get_import_job_sync(job_id)["result"]
        assert result["chart"]["audioUrl"] == database.get_asset_sync(source_id, "user-1")["public_url"]
        assert "analysisStem" not in result["chart"]
        assert any("Stem separation is disabled" in w for w in result["warnings"])
        assert _count("assets", "kind = 'audio_stem'") == 0

    def test_isolated_audio_skips_separation(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed
    ):
        source_id = upload_asset(wav_factory(), AssetKind.AUDIO_SOURCE)
        queue_job(source_type="isolated_audio", source_asset_id=source_id)
        separator = _StubSeparator()

        run_job(transcriber=PlaceholderTranscriber(), separator=separator)

        assert separator.calls == []

    def test_manual_bpm_fallback(self, wav_factory, upload_asset, queue_job, run_job, preprocessed):
        source_id = upload_asset(wav_factory(), AssetKind.AUDIO_SOURCE)
        job_id = queue_job(
            source_type="isolated_audio",
            source_asset_id=source_id,
            params={"title": "Manual", "manualBpm": 96},
        )

        run_job(transcriber=PlaceholderTranscriber())

        result = get_import_job_sync(job_id)["result"]
        assert result["chart"]["bpmHint"] == 96.0
        assert result["bpmSource"] == "manual_fallback"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_missing_asset_fails_job(self, queue_job, run_job):
        job_id = queue_job(source_asset_id="gone")

        assert run_job() is None

        job = get_import_job_sync(job_id)
        assert job["status"] == "failed"
        assert job["progress_percent"] == 100
        assert job["error"]["message"] == FAILED_MESSAGE
        assert job["error"]["details"] == "One of the uploaded assets is missing."
        assert _count("user_levels") == 0

    def test_missing_file_on_disk_fails_job(self, midi_factory, storage, upload_asset, queue_job, run_job):
        asset_id = upload_asset(midi_factory([[(0, 480, 60, 100)]]), AssetKind.MIDI_SOURCE)
        asset = database.get_asset_sync(asset_id, "user-1")
        storage.resolve_absolute_path(asset["storage_path"]).unlink()
        job_id = queue_job(source_asset_id=asset_id)

        run_job()

        assert get_import_job_sync(job_id)["error"]["details"] == "One of the uploaded assets is missing."

    def test_unreadable_midi_fails_job(self, upload_asset, queue_job, run_job, tmp_path):
        broken = tmp_path / "broken.mid"
        broken.write_bytes(b"not midi at all")
        job_id = queue_job(source_asset_id=upload_asset(broken, AssetKind.MIDI_SOURCE))

        run_job()

        job = get_import_job_sync(job_id)
        assert job["status"] == "failed"
        assert job["stage"] == "failed"
        assert "Unable to read MIDI file" in job["error"]["details"]
        assert _count("level_versions") == 0

    def test_transcription_error_fails_job(
        self, wav_factory, upload_asset, queue_job, run_job, preprocessed, work_root
    ):
        source_id = upload_asset(wav_factory(), AssetKind.AUDIO_SOURCE)
        job_id = queue_job(source_type="isolated_audio", source_asset_id=source_id)

        assert run_job(transcriber=_FailingTranscriber()) is None

        job = get_import_job_sync(job_id)
        assert job["status"] == "failed"
        assert job["error"]["details"] == (
            "Audio transcription failed: Basic Pitch is not available on the server runtime."
        )
        assert _files_under(work_root) == []

    def test_lost_lock_abandons_job(self, midi_factory, upload_asset, queue_job, make_stale, storage, work_root):
        asset_id = upload_asset(midi_factory([[(0, 480, 60, 100)]], bpm=120), AssetKind.MIDI_SOURCE)
        job_id = queue_job(source_asset_id=asset_id)
        job = claim_next_job(WORKER)
        make_stale(job_id)
        assert claim_next_job("worker-new") is not None

        assert process_import_job(job, WORKER, storage=storage, work_root=work_root) is None

        stored = get_import_job_sync(job_id)
        assert stored["status"] == "processing"
        assert stored["locked_by"] == "worker-new"
        assert stored["error"] is None
        assert _count("level_versions") == 0
