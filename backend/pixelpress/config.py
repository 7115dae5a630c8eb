"""Settings for both tools, read from the environment and .env files."""
import logging
import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")


def _abs_dir(env_name: str, default_name: str) -> Path:
    """Session roots must be absolute; relative overrides are ignored."""
    custom = os.getenv(env_name, "").strip()
    if custom and os.path.isabs(custom):
        return Path(custom)
    return Path(tempfile.gettempdir()) / default_name


# Session roots, one per tool (override with env)
PICTURE_PRESS_ROOT = _abs_dir("PP_TMP_DIR", "picture-press-sessions")
PIXEL_FORGE_ROOT = _abs_dir("PF_TMP_DIR", "pixel-forge-sessions")

# Session lifetime
SESSION_TTL_SECONDS = float(os.getenv("SESSION_TTL_SECONDS", str(24 * 60 * 60)))
MAX_SESSION_TTL_SECONDS = float(os.getenv("MAX_SESSION_TTL_SECONDS", str(7 * 24 * 60 * 60)))
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", str(60 * 60)))

# Upload limits
MAX_UPLOAD_FILE_MB = int(os.getenv("MAX_UPLOAD_FILE_MB", "10"))
MAX_UPLOAD_FILE_BYTES = MAX_UPLOAD_FILE_MB * 1024 * 1024
MAX_UPLOAD_TOTAL_MB = int(os.getenv("MAX_UPLOAD_TOTAL_MB", "100"))
MAX_UPLOAD_TOTAL_BYTES = MAX_UPLOAD_TOTAL_MB * 1024 * 1024
MIN_UPLOAD_BYTES = int(os.getenv("MIN_UPLOAD_BYTES", "100"))
MAX_FILES_PER_UPLOAD = int(os.getenv("MAX_FILES_PER_UPLOAD", "50"))
MAX_FILENAME_LENGTH = 255

# Accepted upload MIME types per tool
PICTURE_PRESS_MIME_TYPES = (
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/svg+xml",
    "image/gif",
    "image/tiff",
    "image/bmp",
)
PIXEL_FORGE_MIME_TYPES = ("image/png", "image/jpeg", "image/jpg", "image/webp", "image/svg+xml")

# Image engine
IMAGE_ENGINE = os.getenv("IMAGE_ENGINE", "auto").strip().lower()  # auto | magick | pillow
ENGINE_TIMEOUT_SECONDS = float(os.getenv("ENGINE_TIMEOUT_SECONDS", "30"))
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "90"))
MAX_WORKERS = int(os.getenv("MAX_WORKERS", str(min(32, (os.cpu_count() or 4) + 4))))

# Rate limits: route -> (requests, window seconds). Fixed window per client (and session where scoped).
RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMITS = {
    "newSession": int(os.getenv("RATE_LIMIT_NEW_SESSION", "20")),
    "upload": int(os.getenv("RATE_LIMIT_UPLOAD", "30")),
    "progress": int(os.getenv("RATE_LIMIT_PROGRESS", "60")),
    "startJob": int(os.getenv("RATE_LIMIT_START_JOB", "10")),
    "results": int(os.getenv("RATE_LIMIT_RESULTS", "60")),
    "archive": int(os.getenv("RATE_LIMIT_ARCHIVE", "5")),
    "cleanupSession": int(os.getenv("RATE_LIMIT_CLEANUP_SESSION", "10")),
    "sweepExpired": int(os.getenv("RATE_LIMIT_SWEEP", "2")),
}

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
# CORS: comma-separated origins, e.g. "http://localhost:3000,http://127.0.0.1:3000"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pixelpress")
