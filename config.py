import logging as _logging
import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent

load_dotenv(PROJECT_ROOT / ".env")

_log = _logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    """Parse an integer env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            _log.warning("Invalid integer for %s=%r, using %d", name, raw, default)
            value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float) -> float:
    """Parse a float env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    return Path(raw).expanduser() if raw else default


# Identity
BOT_NAME = os.getenv("BOT_NAME", "SOURAV_MD BOT")
DEBUG_MODE = _env_bool("DEBUG_MODE", False)

# Chat commands
COMMAND_PREFIX = os.getenv("COMMAND_PREFIX", ".") or "."
RELOAD_COMMAND = "reload"

# Status surface (keep-alive + QR page)
WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000)
QR_IMAGE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data={data}"

# Remote plugins
PLUGIN_REPO = os.getenv("PLUGIN_REPO", "").strip()
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "").strip()  # optional, private repos only
PLUGIN_BRANCH = os.getenv("PLUGIN_BRANCH", "main").strip() or "main"
REMOTE_PLUGIN_SUBDIR = "plugins"

# Timing
HOT_RELOAD_INTERVAL = _env_int("HOT_RELOAD_INTERVAL", 60, minimum=5)  # seconds
GIT_TIMEOUT = _env_int("GIT_TIMEOUT", 60, minimum=5)  # seconds per git call
RECONNECT_DELAY = _env_float("RECONNECT_DELAY", 5.0)
HTTP_TIMEOUT = _env_float("HTTP_TIMEOUT", 30.0)  # plugin toolbox HTTP client
POLL_INTERVAL = 2  # seconds (queue drain timeout)
HEARTBEAT_INTERVAL = _env_int("HEARTBEAT_INTERVAL", 300, minimum=10)  # seconds ("still running" log)

# Paths
LOCAL_PLUGIN_DIR = _env_path("LOCAL_PLUGIN_DIR", PROJECT_ROOT / "commands")
REMOTE_PLUGIN_DIR = _env_path("REMOTE_PLUGIN_DIR", PROJECT_ROOT / "remote_plugins")
AUTH_DIR = _env_path("AUTH_DIR", PROJECT_ROOT / "auth")
LOG_DIR = _env_path("LOG_DIR", PROJECT_ROOT / "logs")

# Files
SESSION_DB = AUTH_DIR / "session.db"

if GITHUB_TOKEN and not PLUGIN_REPO:
    _log.warning("GITHUB_TOKEN is set but PLUGIN_REPO is empty; remote plugins stay disabled")
