"""Application configuration loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent.parent / "data"))
DB_PATH = DATA_DIR / "browser_sessions.db"
BROWSER_PROFILE_DIR = DATA_DIR / "browser_profiles"
LOG_DIR = DATA_DIR / "logs"

# Control plane
CONTROL_PLANE_HOST = os.getenv("CONTROL_PLANE_HOST", "127.0.0.1")
CONTROL_PLANE_PORT = int(os.getenv("CONTROL_PLANE_PORT", "8024"))
CONTROL_PLANE_URL = f"http://{CONTROL_PLANE_HOST}:{CONTROL_PLANE_PORT}"
# Address the controlled page uses to report instrumentation events
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", CONTROL_PLANE_URL).rstrip("/")

# Browser
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "true").lower() == "true"
BROWSER_EXECUTABLE = os.getenv("BROWSER_EXECUTABLE", "") or None
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "30000"))
VIEWPORT_WIDTH = int(os.getenv("VIEWPORT_WIDTH", "1366"))
VIEWPORT_HEIGHT = int(os.getenv("VIEWPORT_HEIGHT", "768"))
DEBUG_PORT_RANGE = (
    int(os.getenv("DEBUG_PORT_MIN", "9300")),
    int(os.getenv("DEBUG_PORT_MAX", "9399")),
)

# Navigation
TARGET_URLS = _csv(os.getenv("TARGET_URLS", "https://example.com/"))
NAVIGATION_TIMEOUT = int(os.getenv("NAVIGATION_TIMEOUT", "15000"))

# Interception
AUTH_HOSTS = _csv(os.getenv("AUTH_HOSTS", ""))

# Cleanup
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", str(4 * 60 * 60)))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", str(30 * 60)))


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    BROWSER_PROFILE_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
