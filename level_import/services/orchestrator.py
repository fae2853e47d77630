"""
Level Import Service - Import Pipeline Orchestrator

Runs one claimed import job from asset validation to a saved draft.

MIDI path::

    validating_assets (10) → chart_build (45) → beat_tracking (75)
        → quantization (85) → draft_saved (95)

Audio path::

    validating_assets (10) → stem_separation (20, full mix only)
        → preprocessing_audio (35) → transcribing (50) → cleanup (65)
        → beat_tracking (75) → quantization (85) → chart_build (90)
        → draft_saved (95)

Every checkpoint is a lock-guarded progress write, so a worker that lost its
lock to a stale reclaim stops at its next checkpoint.  Any other exception
fails the job with a generic user message and the exception text as
details; nothing is persisted for a failed job.  A separated stem is
copied into storage under a per-job name at chart_build but only registered
as an asset inside the draft transaction, and its file is removed again
when the job fails.
"""

from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from level_import.config import WORK_DIR
from level_import.database import (
    LockLostError,
    complete_job_with_draft,
    get_asset_sync,
    mark_job_failed,
    set_job_level_id,
    update_job_progress,
)
from level_import.models import (
    AssetKind,
    ImportParams,
    JobStage,
    LevelChart,
    SourceType,
)
from level_import.services.asset_storage import LocalAssetStorage
from level_import.services.audio_preprocess import preprocess_audio
from level_import.services.beat_tracking import run_beat_tracking
from level_import.services.cleanup import run_cleanup
from level_import.services.midi_import import import_midi
from level_import.services.quantization import run_quantization
from level_import.services.stem_separator import StemSeparator, get_stem_separator
from level_import.services.transcriber import Transcriber, get_transcriber
from level_import.utils import build_level_id, slugify

FAILED_MESSAGE = "Import failed while processing your level."

# Stage → progress percent
STAGE_PROGRESS: dict[JobStage, int] = {
    JobStage.VALIDATING_ASSETS: 10,
    JobStage.STEM_SEPARATION: 20,
    JobStage.PREPROCESSING_AUDIO: 35,
    JobStage.CHART_BUILD: 45,
    JobStage.TRANSCRIBING: 50,
    JobStage.CLEANUP: 65,
    JobStage.BEAT_TRACKING: 75,
    JobStage.QUANTIZATION: 85,
    JobStage.DRAFT_SAVED: 95,
}
AUDIO_CHART_BUILD_PROGRESS = 90


class AssetMissingError(LookupError):
    """Raised when a job references an asset that no longer exists."""


@dataclass
class PipelineResult:
    chart: LevelChart
    warnings: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


class ImportPipeline:
    """Processes a single claimed job on behalf of one worker."""

    def __init__(
        self,
        job: dict[str, Any],
        worker_id: str,
        transcriber: Transcriber | None = None,
        separator: StemSeparator | None = None,
        storage: LocalAssetStorage | None = None,
        work_root: Path | None = None,
    ):
        self.job = job
        self.worker_id = worker_id
        self.params = ImportParams.from_dict(job.get("params") or {})
        self.transcriber = transcriber
        self.separator = separator
        self.storage = storage or LocalAssetStorage()
        self.staged_assets: list[dict[str, Any]] = []
        # Attempt-scoped scratch dir so a reclaimed run never reuses stale files
        self.work_dir = (
            Path(work_root or WORK_DIR)
            / job["id"]
            / f"{job.get('attempts', 0)}-{uuid.uuid4().hex[:8]}"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def checkpoint(self, stage: JobStage, progress: int | None = None) -> None:
        update_job_progress(
            self.job["id"],
            self.worker_id,
            stage.value,
            STAGE_PROGRESS[stage] if progress is None else progress,
        )

    def load_asset(self, asset_id: str) -> dict[str, Any]:
        asset = get_asset_sync(asset_id, self.job["owner_id"])
        if asset is None:
            raise AssetMissingError("One of the uploaded assets is missing.")
        return asset

    def asset_path(self, asset: dict[str, Any]) -> Path:
        path = self.storage.resolve_absolute_path(asset["storage_path"])
        if not path.exists():
            raise AssetMissingError("One of the uploaded assets is missing.")
        return path

    def level_id(self) -> str:
        level_id = self.job.get("level_id")
        if not level_id:
            level_id = build_level_id(self.params.title)
            set_job_level_id(self.job["id"], self.worker_id, level_id)
            self.job["level_id"] = level_id
        return level_id

    # ------------------------------------------------------------------
    # MIDI
    # ------------------------------------------------------------------
    def run_midi(
        self, source_asset: dict[str, Any], audio_asset: dict[str, Any] | None
    ) -> PipelineResult:
        level_id = self.level_id()
        self.checkpoint(JobStage.CHART_BUILD)
        imported = import_midi(
            self.asset_path(source_asset),
            level_id=level_id,
            title=self.params.title,
            audio_url=audio_asset["public_url"] if audio_asset else "",
            manual_bpm=self.params.manual_bpm,
        )
        warnings = list(imported.warnings)
        chart = imported.chart

        # A BPM from the file header (or the user) beats one guessed from notes
        self.checkpoint(JobStage.BEAT_TRACKING)
        bpm = chart.bpm_hint
        if bpm is None:
            beats = run_beat_tracking(chart.events, self.params.manual_bpm)
            bpm = beats.bpm
            warnings.extend(beats.warnings)

        self.checkpoint(JobStage.QUANTIZATION)
        quantized = run_quantization(chart.events, self.params.quantization, bpm)
        warnings.extend(quantized.warnings)

        chart.bpm_hint = bpm
        chart.events = quantized.events
        return PipelineResult(chart=chart, warnings=warnings)

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------
    def _stage_stem(self, stem_path: Path, stem_name: str) -> str:
        # Fixed name per job: a reclaimed attempt overwrites the same file.
        # The asset row is written by the draft transaction.
        base = f"{slugify(self.params.title) or 'level'}_{stem_name}"
        asset = self.storage.stage_file(
            owner_id=self.job["owner_id"],
            source=stem_path,
            kind=AssetKind.AUDIO_STEM,
            original_filename=f"{base}{stem_path.suffix}",
            metadata={"sourceJobId": self.job["id"], "stem": stem_name},
            storage_name=f"{base}_{self.job['id']}{stem_path.suffix.lower()}",
        )
        self.staged_assets.append(asset)
        return asset["public_url"]

    def discard_staged(self) -> None:
        for asset in self.staged_assets:
            self.storage.discard(asset["storage_path"])
        self.staged_assets.clear()

    def run_audio(self, source_asset: dict[str, Any]) -> PipelineResult:
        level_id = self.level_id()
        warnings: list[str] = []
        source_path = self.asset_path(source_asset)
        selected_path = source_path
        selected_url = source_asset["public_url"]
        analysis_stem: str | None = None

        if self.job["source_type"] == SourceType.FULL_MIX_AUDIO.value:
            self.checkpoint(JobStage.STEM_SEPARATION)
            separator = self.separator or get_stem_separator()
            separated = separator.separate(
                source_path, self.params.selected_stem, self.work_dir
            )
            warnings.extend(separated.warnings)
            if separated.separated:
                selected_path = separated.stem_path
                analysis_stem = separated.resolved_stem

        self.checkpoint(JobStage.PREPROCESSING_AUDIO)
        preprocessed = preprocess_audio(selected_path, self.work_dir)
        warnings.extend(preprocessed.warnings)

        self.checkpoint(JobStage.TRANSCRIBING)
        transcriber = self.transcriber or get_transcriber()
        transcription = transcriber.transcribe(
            preprocessed.wav_path,
            self.params.instrument_preset,
            self.params.transcription_tuning,
            self.work_dir,
        )
        warnings.extend(transcription.warnings)

        self.checkpoint(JobStage.CLEANUP)
        cleaned = run_cleanup(
            transcription.events,
            preset=self.params.instrument_preset,
            simplify_monophonic=True,
        )
        warnings.extend(cleaned.warnings)

        self.checkpoint(JobStage.BEAT_TRACKING)
        beats = run_beat_tracking(cleaned.events, self.params.manual_bpm)
        warnings.extend(beats.warnings)

        self.checkpoint(JobStage.QUANTIZATION)
        quantized = run_quantization(cleaned.events, self.params.quantization, beats.bpm)
        warnings.extend(quantized.warnings)

        self.checkpoint(JobStage.CHART_BUILD, AUDIO_CHART_BUILD_PROGRESS)
        if analysis_stem:
            selected_url = self._stage_stem(selected_path, analysis_stem)
        chart = LevelChart(
            id=level_id,
            title=self.params.title,
            audio_url=selected_url,
            offset_ms=0,
            bpm_hint=beats.bpm,
            events=quantized.events,
            analysis_audio_url=selected_url if analysis_stem else None,
            analysis_stem=analysis_stem,
            analysis_first_activity_ms=transcription.first_activity_ms,
        )
        return PipelineResult(
            chart=chart,
            warnings=warnings,
            extra={
                "bpmSource": beats.source.value,
                "bpmConfidence": round(beats.confidence, 3),
                "audioMetadata": preprocessed.metadata.to_dict(),
            },
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self) -> PipelineResult:
        self.checkpoint(JobStage.VALIDATING_ASSETS)
        source_asset = self.load_asset(self.job["source_asset_id"])
        audio_asset = (
            self.load_asset(self.job["audio_asset_id"])
            if self.job.get("audio_asset_id")
            else None
        )

        if self.job["source_type"] == SourceType.MIDI.value:
            result = self.run_midi(source_asset, audio_asset)
        else:
            result = self.run_audio(source_asset)

        self.checkpoint(JobStage.DRAFT_SAVED)
        return result


def process_import_job(
    job: dict[str, Any],
    worker_id: str,
    transcriber: Transcriber | None = None,
    separator: StemSeparator | None = None,
    storage: LocalAssetStorage | None = None,
    work_root: Path | None = None,
) -> str | None:
    """
    Run the import pipeline for a job claimed by *worker_id*.

    Returns the new level version id on success, or None when the job
    failed or the lock was lost.  Never raises for pipeline errors.
    """
    pipeline = ImportPipeline(
        job,
        worker_id,
        transcriber=transcriber,
        separator=separator,
        storage=storage,
        work_root=work_root,
    )
    logger.info(
        "🔄 Processing import job {} ({}, attempt {})",
        job["id"],
        job["source_type"],
        job.get("attempts"),
    )

    try:
        result = pipeline.run()
        chart = result.chart.with_event_ids()
        version_id = complete_job_with_draft(
            job,
            worker_id,
            level_id=chart.id,
            chart=chart.to_dict(),
            result={"chart": chart.to_dict(), "warnings": result.warnings, **result.extra},
            assets=pipeline.staged_assets,
        )
        logger.success(
            "✅ Import job {} ready for review ({} events, {} warnings)",
            job["id"],
            len(chart.events),
            len(result.warnings),
        )
        return version_id
    except LockLostError as e:
        logger.warning("⚠️ {} — abandoning job", e)
        return None
    except Exception as e:
        logger.exception("❌ Import job {} crashed: {}", job["id"], e)
        try:
            mark_job_failed(job["id"], worker_id, FAILED_MESSAGE, details=str(e))
        except LockLostError as lost:
            logger.warning("⚠️ {} — failure not recorded", lost)
            return None
        # Lock still held when the failure was recorded
        pipeline.discard_staged()
        return None
    finally:
        shutil.rmtree(pipeline.work_dir, ignore_errors=True)
