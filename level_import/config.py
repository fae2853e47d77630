"""
Level Import Service - Configuration
All settings loaded from environment variables with sensible defaults.

The service keeps its SQLite database, uploaded assets and per-job scratch
files on local disk.  External media tools (ffmpeg, ffprobe, demucs,
basic-pitch) are discovered on ``PATH`` at runtime.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
_ = load_dotenv()

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8000"))
APP_ENV = os.getenv("APP_ENV", "development")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent

DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "level_import.db")))

# Uploaded assets live under UPLOAD_DIR/<owner>/ and are served from
# PUBLIC_URL_PREFIX by whatever fronts the service.
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(DATA_DIR / "uploads")))
PUBLIC_URL_PREFIX = os.getenv("PUBLIC_URL_PREFIX", "/uploads")

# Scratch space for transcoded audio, stems and transcription output.
WORK_DIR = Path(os.getenv("WORK_DIR", str(DATA_DIR / "work")))

# ---------------------------------------------------------------------------
# Logging (stdout only)
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# Import queue
# ---------------------------------------------------------------------------
IMPORT_POLL_INTERVAL = float(os.getenv("IMPORT_POLL_INTERVAL", "2.0"))  # seconds
# A processing job whose lock is older than this is eligible for reclaim.
# Must stay above EXTERNAL_TOOL_TIMEOUT so a live worker is never reclaimed.
IMPORT_STALE_LOCK_SECONDS = int(os.getenv("IMPORT_STALE_LOCK_SECONDS", str(15 * 60)))
IMPORT_MAX_ATTEMPTS = int(os.getenv("IMPORT_MAX_ATTEMPTS", "3"))
IMPORT_WORKER_ID = os.getenv("IMPORT_WORKER_ID", f"level-import-worker-{os.getpid()}")
IMPORT_QUEUE_ENABLED = os.getenv("IMPORT_QUEUE_ENABLED", "true").lower() == "true"

# ---------------------------------------------------------------------------
# Media tooling
# ---------------------------------------------------------------------------
CAPABILITY_CACHE_TTL = float(os.getenv("CAPABILITY_CACHE_TTL", "10"))  # seconds
EXTERNAL_TOOL_TIMEOUT = int(os.getenv("EXTERNAL_TOOL_TIMEOUT", "600"))  # seconds
MEDIA_PROBE_TIMEOUT = int(os.getenv("MEDIA_PROBE_TIMEOUT", "60"))  # seconds

# Stem separation backend: "demucs" or "passthrough"
STEM_SEPARATOR = os.getenv("STEM_SEPARATOR", "demucs").lower()
DEMUCS_MODEL = os.getenv("DEMUCS_MODEL", "htdemucs")
TORCH_HOME = Path(
    os.getenv("TORCH_HOME", str(Path.home() / ".cache" / "torch"))
)

# Transcription backend: "basic_pitch" or "placeholder"
TRANSCRIBER = os.getenv("TRANSCRIBER", "basic_pitch").lower()

# ---------------------------------------------------------------------------
# Source files
# ---------------------------------------------------------------------------
MIDI_EXTENSIONS = {".mid", ".midi"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".ogg", ".m4a", ".flac", ".aac", ".webm"}


def ensure_directories() -> None:
    """Create the local directories used for the database, uploads and scratch."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    WORK_DIR.mkdir(parents=True, exist_ok=True)
