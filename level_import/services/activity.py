"""
Level Import Service - Onset Activity Detection

Finds where the music actually starts in a WAV file.  The transcriber uses
this to drop spurious notes detected in the silence / noise before the first
real activity.
"""

from __future__ import annotations

from pathlib import Path

import librosa
import numpy as np
import soundfile as sf
from loguru import logger

ACTIVITY_WINDOW_MS = 40
MIN_ACTIVITY_RMS = 0.01
# The noise floor is estimated over the first second of audio
NOISE_FLOOR_WINDOWS = max(4, 1000 // ACTIVITY_WINDOW_MS)


def detect_first_activity_from_samples(samples: np.ndarray, sample_rate: int) -> int | None:
    """
    Return the onset of the first sustained activity in ms, or None.

    The signal is cut into non-overlapping 40 ms windows.  The noise floor
    is the median RMS of the first second; the activity threshold is 3.5x
    that floor (never below 0.01).  The first window over threshold counts
    when the next window stays above 80% of it, or the window itself is
    50% over threshold.
    """
    if sample_rate <= 0:
        return None
    window = max(256, int(sample_rate * ACTIVITY_WINDOW_MS / 1000))
    if len(samples) // window < 2:
        return None

    rms = librosa.feature.rms(
        y=np.asarray(samples, dtype=np.float32),
        frame_length=window,
        hop_length=window,
        center=False,
    )[0]
    if len(rms) < 3:
        return None

    noise_windows = min(len(rms), NOISE_FLOOR_WINDOWS)
    noise_floor = float(np.median(rms[:noise_windows]))
    threshold = max(MIN_ACTIVITY_RMS, noise_floor * 3.5)

    for index, current in enumerate(rms):
        following = rms[index + 1] if index + 1 < len(rms) else 0.0
        if current >= threshold and (following >= threshold * 0.8 or current >= threshold * 1.5):
            return index * ACTIVITY_WINDOW_MS
    return None


def detect_first_activity_ms(wav_path: str | Path) -> int | None:
    """Decode *wav_path* (first channel) and run activity detection on it."""
    try:
        data, sample_rate = sf.read(str(wav_path), dtype="float32", always_2d=True)
    except (OSError, RuntimeError, ValueError) as e:
        logger.debug("Activity detection skipped for {}: {}", wav_path, e)
        return None
    if data.size == 0:
        return None
    return detect_first_activity_from_samples(data[:, 0], int(sample_rate))
