#!/usr/bin/env python3
"""
run_import.py — Import a local MIDI or audio file without the HTTP server

Registers the file as an uploaded asset, submits an import job for it and
runs the worker inline until that job finishes, then prints the job as the
API would return it.

Usage:
    python scripts/run_import.py song.mid --title "My Song"
    python scripts/run_import.py song.mp3 --title "My Song" --full-mix --stem bass
    python scripts/run_import.py song.wav --title "My Song" --quantization 1/16 --json

Flags:
    --owner         Owner id to store the asset and job under (default: cli)
    --full-mix      Treat audio as a full mix and run stem separation
    --audio         Backing audio file to attach to a MIDI import
    --json          Print the whole job JSON instead of a summary
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger

from level_import.config import ensure_directories
from level_import.database import claim_next_job, get_import_job_sync, init_db
from level_import.models import AssetKind
from level_import.services.asset_storage import LocalAssetStorage
from level_import.services.capabilities import AudioImportUnavailableError
from level_import.services.file_types import guess_asset_kind
from level_import.services.jobs import (
    AssetNotFoundError,
    ImportJobRequest,
    ImportValidationError,
    create_import_job,
    serialize_job,
)
from level_import.services.orchestrator import process_import_job

WORKER_ID = "level-import-cli"


def _store(path: Path, owner: str, kind: AssetKind | None = None) -> str:
    kind = kind or guess_asset_kind(path.name)
    if kind is None:
        raise ValueError(f"Unsupported file type: {path.name}")
    return LocalAssetStorage().store_file(owner, path, kind)["id"]


def _drain_until(job_id: str) -> None:
    """Process queued jobs inline until *job_id* has been handled."""
    while True:
        job = claim_next_job(WORKER_ID)
        if job is None:
            return
        process_import_job(job, WORKER_ID)
        if job["id"] == job_id:
            return


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Import a MIDI or audio file into a draft level",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("file", help="MIDI or audio file to import")
    parser.add_argument("--title", required=True, help="Level title")
    parser.add_argument("--owner", default="cli", help="Owner id (default: cli)")
    parser.add_argument("--audio", help="Backing audio for a MIDI import")
    parser.add_argument("--full-mix", action="store_true", help="Separate stems first")
    parser.add_argument("--stem", default="guitar", help="Stem to transcribe (full mix)")
    parser.add_argument("--preset", default="guitar", choices=["guitar", "bass"])
    parser.add_argument(
        "--tuning", default="balanced", choices=["conservative", "balanced", "sensitive"]
    )
    parser.add_argument("--quantization", default="off", choices=["off", "1/8", "1/16"])
    parser.add_argument("--bpm", type=float, help="Manual BPM fallback")
    parser.add_argument("--json", action="store_true", help="Output the job as JSON")

    args = parser.parse_args()

    source = Path(args.file)
    if not source.is_file():
        print(f"❌ File not found: {source}")
        return 1

    ensure_directories()
    init_db()

    try:
        source_asset_id = _store(source, args.owner)
        audio_asset_id = (
            _store(Path(args.audio), args.owner, AssetKind.AUDIO_SOURCE) if args.audio else None
        )
        request = ImportJobRequest(
            source_asset_id=source_asset_id,
            title=args.title,
            source_type="full_mix_audio" if args.full_mix else None,
            audio_asset_id=audio_asset_id,
            manual_bpm=args.bpm,
            quantization=args.quantization,
            instrument_preset=args.preset,
            transcription_tuning=args.tuning,
            selected_stem=args.stem,
        )
        job_id = asyncio.run(create_import_job(args.owner, request))
    except (ValueError, AssetNotFoundError, AudioImportUnavailableError) as e:
        # ImportValidationError is a ValueError
        print(f"❌ {e}")
        return 1

    logger.info("📥 Submitted job {}", job_id)
    _drain_until(job_id)

    job = get_import_job_sync(job_id)
    if job is None:
        print(f"❌ Job {job_id} disappeared")
        return 1
    payload = serialize_job(job)

    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print()
        print("=" * 60)
        print(f"Job {payload['id']}: {payload['status']} ({payload['stage']})")
        print("-" * 60)
        if payload["error"]:
            print(f"  ❌ {payload['error'].get('message')} {payload['error'].get('details') or ''}")
        result = payload["result"] or {}
        chart = result.get("chart") or {}
        if chart:
            print(f"  Level:   {payload['levelId']}")
            print(f"  BPM:     {chart.get('bpmHint')}")
            print(f"  Events:  {len(chart.get('events', []))}")
        for warning in result.get("warnings", []):
            print(f"  ⚠️  {warning}")
        print()

    return 0 if payload["status"] == "awaiting_review" else 1


if __name__ == "__main__":
    sys.exit(main())
