"""
Level Import Service - Stem Separator

Isolates the instrument a user wants to chart from a full mix before
transcription.  Two implementations share one interface:

    - **DemucsStemSeparator** runs the ``demucs`` CLI (Hybrid Transformer
      Demucs) and picks the requested stem from its output.  Demucs
      produces ``vocals``, ``drums``, ``bass`` and ``other``; guitar lives
      in ``other`` for the standard models, so a guitar request falls back
      to it.
    - **PassthroughStemSeparator** hands back the original audio.

Separation never fails a job.  Whatever goes wrong (tool missing, model
download error, timeout, stem not produced) the original audio is returned
together with a warning explaining why.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from loguru import logger

from level_import.config import (
    DEMUCS_MODEL,
    EXTERNAL_TOOL_TIMEOUT,
    STEM_SEPARATOR,
    TORCH_HOME,
)
from level_import.models import StemName
from level_import.utils import summarize_process_output

# Requested stem → Demucs stem names to try, in order
STEM_SEARCH_ORDER: dict[str, list[str]] = {
    "guitar": ["guitar", "other"],
    "bass": ["bass"],
    "vocals": ["vocals"],
    "drums": ["drums"],
    "other": ["other"],
}

STEM_AUDIO_EXTENSIONS = {".mp3", ".wav", ".flac", ".ogg", ".m4a", ".aac", ".aiff"}
CHECKPOINT_EXTENSIONS = {".th", ".pt", ".pth", ".ckpt"}


@dataclass
class StemSeparationOutput:
    stem_path: Path
    warnings: list[str] = field(default_factory=list)
    # Demucs stem actually used, None when the original audio came back
    resolved_stem: str | None = None

    @property
    def separated(self) -> bool:
        return self.resolved_stem is not None


class StemSeparator(Protocol):
    name: str

    def separate(
        self, source_path: Path, selected_stem: StemName | str, work_dir: Path
    ) -> StemSeparationOutput: ...


# ---------------------------------------------------------------------------
# Passthrough
# ---------------------------------------------------------------------------


class PassthroughStemSeparator:
    """Returns the original audio unchanged."""

    name = "passthrough"

    def separate(
        self, source_path: Path, selected_stem: StemName | str, work_dir: Path
    ) -> StemSeparationOutput:
        return StemSeparationOutput(
            stem_path=Path(source_path),
            warnings=["Stem separation is disabled. Continuing with original audio."],
        )


# ---------------------------------------------------------------------------
# Demucs
# ---------------------------------------------------------------------------


def demucs_available() -> bool:
    """Check if the Demucs CLI is installed."""
    return shutil.which("demucs") is not None


def _checkpoint_dirs(torch_home: Path) -> list[Path]:
    return [torch_home / "hub" / "checkpoints", torch_home / "checkpoints"]


def _model_token(value: str) -> str:
    return "".join(ch for ch in value.lower() if ch.isalnum())


def inspect_checkpoint_cache(model: str, torch_home: Path) -> list[str]:
    """Describe the Demucs config and the state of the torch checkpoint cache."""
    dirs = _checkpoint_dirs(torch_home)
    warnings = [
        f'Demucs config: model="{model}", TORCH_HOME="{torch_home}".',
    ]

    checkpoints: list[Path] = []
    for cache_dir in dirs:
        if not cache_dir.is_dir():
            continue
        checkpoints.extend(
            p for p in cache_dir.iterdir()
            if p.is_file() and p.suffix.lower() in CHECKPOINT_EXTENSIONS
        )

    if not checkpoints:
        warnings.append(
            "Demucs checkpoint cache is empty; model download may occur if prewarm "
            "has not completed."
        )
        return warnings

    token = _model_token(model)
    matches = [p for p in checkpoints if token in _model_token(p.name)]
    if matches:
        warnings.append(
            f'Demucs cache has {len(matches)} checkpoint file(s) matching model "{model}".'
        )
    else:
        warnings.append(
            f"Demucs cache has {len(checkpoints)} checkpoint file(s), but none matched "
            f'"{model}" by filename.'
        )
    return warnings


def _is_hash_mismatch(message: str) -> bool:
    lowered = message.lower()
    return "invalid hash value" in lowered or "hash mismatch" in lowered


def _run_demucs(cmd: list[str]) -> None:
    result = subprocess.run(
        cmd,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        timeout=EXTERNAL_TOOL_TIMEOUT,
    )
    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace")
        raise RuntimeError(stderr.strip() or f"demucs exited with code {result.returncode}")


def _stem_name(path: Path) -> str:
    return path.stem.lower()


def _stem_preference(path: Path) -> tuple[int, str]:
    # mp3 first, then alphabetical
    return (0 if path.suffix.lower() == ".mp3" else 1, str(path))


def find_stem_file(
    output_root: Path, source_path: Path, selected_stem: str
) -> tuple[Path | None, str | None, list[str]]:
    """
    Locate the requested stem under *output_root*.

    Files under a ``/<source basename>/`` folder are preferred so stale
    output from other inputs is ignored.  Returns ``(path, resolved stem,
    available stem names)``.
    """
    files = [
        p for p in output_root.rglob("*")
        if p.is_file() and p.suffix.lower() in STEM_AUDIO_EXTENSIONS
    ]
    marker = source_path.stem.lower()
    scoped = [p for p in files if marker in (part.lower() for part in p.parent.parts)]
    candidates = scoped or files

    for stem in STEM_SEARCH_ORDER.get(selected_stem, [selected_stem]):
        matches = sorted((p for p in candidates if _stem_name(p) == stem), key=_stem_preference)
        if matches:
            return matches[0], stem, []

    available = sorted({_stem_name(p) for p in candidates})
    return None, None, available


class DemucsStemSeparator:
    """Runs Demucs 4-stem separation and picks the requested stem."""

    name = "demucs"

    def __init__(self, model: str | None = None, torch_home: Path | None = None):
        self.model = model or DEMUCS_MODEL
        self.torch_home = Path(torch_home or TORCH_HOME)

    def _clear_checkpoint_cache(self) -> None:
        for cache_dir in _checkpoint_dirs(self.torch_home):
            shutil.rmtree(cache_dir, ignore_errors=True)

    def _run_with_retry(self, cmd: list[str]) -> list[str]:
        """Run Demucs, retrying once after a checkpoint hash mismatch."""
        try:
            _run_demucs(cmd)
            return []
        except RuntimeError as e:
            if not _is_hash_mismatch(str(e)):
                raise

        logger.warning("⚠️ Demucs checkpoint hash mismatch — clearing cache and retrying")
        self._clear_checkpoint_cache()
        dirs = ", ".join(str(d) for d in _checkpoint_dirs(self.torch_home))
        warnings = [
            f"Demucs model cache was reset at {dirs} after a hash mismatch, then retried once."
        ]
        try:
            _run_demucs(cmd)
        except RuntimeError as e:
            raise RuntimeError(
                f"Demucs model download failed after one retry ({summarize_process_output(str(e))})."
            ) from e
        return warnings

    def separate(
        self, source_path: Path, selected_stem: StemName | str, work_dir: Path
    ) -> StemSeparationOutput:
        source_path = Path(source_path)
        requested = StemName(selected_stem).value
        warnings: list[str] = []
        output_root = Path(work_dir) / "stems"
        cmd = [
            "demucs",
            "--mp3",
            "--name",
            self.model,
            "--out",
            str(output_root),
            str(source_path),
        ]

        # Any failure below degrades to the original audio
        try:
            warnings.extend(inspect_checkpoint_cache(self.model, self.torch_home))
            if not demucs_available():
                logger.info("ℹ️ Demucs not installed — using original audio")
                warnings.append(
                    "Demucs is not installed on the server runtime. Continuing with original audio."
                )
                return StemSeparationOutput(stem_path=source_path, warnings=warnings)

            output_root.mkdir(parents=True, exist_ok=True)
            logger.info("🎛️ Running Demucs separation (model={}, stem={})...", self.model, requested)
            warnings.extend(self._run_with_retry(cmd))
            stem_path, resolved, available = find_stem_file(output_root, source_path, requested)
        except subprocess.TimeoutExpired:
            logger.error("❌ Demucs timed out after {}s", EXTERNAL_TOOL_TIMEOUT)
            warnings.append(
                f"Demucs separation unavailable (timed out after {EXTERNAL_TOOL_TIMEOUT}s). "
                "Continuing with original audio."
            )
            return StemSeparationOutput(stem_path=source_path, warnings=warnings)
        except (RuntimeError, OSError) as e:
            message = summarize_process_output(str(e))
            logger.error("❌ Demucs error: {}", message)
            warnings.append(
                f"Demucs separation unavailable ({message}). Continuing with original audio."
            )
            return StemSeparationOutput(stem_path=source_path, warnings=warnings)

        if stem_path is None:
            if available:
                warnings.append(
                    f'Demucs finished, but requested stem "{requested}" was not found '
                    f"(available: {', '.join(available)}). Continuing with original audio."
                )
            else:
                warnings.append(
                    f'Demucs finished, but no stem files were discovered for "{requested}". '
                    "Continuing with original audio."
                )
            return StemSeparationOutput(stem_path=source_path, warnings=warnings)

        if resolved != requested:
            warnings.append(
                f'Requested "{requested}" stem is not directly produced by Demucs. '
                f'Using "{resolved}" stem instead.'
            )
        warnings.append(f'Using Demucs "{resolved}" stem for transcription.')
        logger.success("✅ Demucs separation complete: {}", stem_path.name)
        return StemSeparationOutput(stem_path=stem_path, warnings=warnings, resolved_stem=resolved)


def get_stem_separator(name: str | None = None) -> StemSeparator:
    """Build the configured stem separator."""
    name = (name or STEM_SEPARATOR).lower()
    if name == "passthrough":
        return PassthroughStemSeparator()
    if name != "demucs":
        logger.warning("⚠️ Unknown STEM_SEPARATOR '{}', using demucs", name)
    return DemucsStemSeparator()
