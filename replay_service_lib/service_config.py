from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

APP_NAME = "Replay Service"
APP_VERSION = "1.0.0"

PORT = int(os.getenv("PORT", "9100"))
BIND = os.getenv("BIND", "0.0.0.0")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
API_KEY = os.getenv("API_KEY", "").strip()

MAX_CONCURRENCY = max(1, int(os.getenv("MAX_CONCURRENCY", "2")))
MAX_CHROME_CONCURRENCY = max(1, int(os.getenv("MAX_CHROME_CONCURRENCY", "2")))

STRIP_ANSI = bool(int(os.getenv("STRIP_ANSI_IN_DB", "1")))
COLLAPSE_INTERNAL_SPACES = bool(int(os.getenv("COLLAPSE_INTERNAL_SPACES", "0")))

DB_URL = os.getenv("DB_URL", "").strip()

RECORDINGS_BASE = Path(os.getenv("RECORDINGS_BASE", "./recordings")).resolve()
RECORDINGS_BASE.mkdir(parents=True, exist_ok=True)

VOICEOVER_STORE_URL = os.getenv("VOICEOVER_STORE_URL", "").strip().rstrip("/")
VOICEOVER_FETCH_TIMEOUT_S = float(os.getenv("VOICEOVER_FETCH_TIMEOUT_S", "10"))

CONTINUITY_SESSION_KEY = os.getenv("CONTINUITY_SESSION_KEY", "webReplayState")

# Engine timing (milliseconds)
CONTINUITY_TTL_MS = 30_000
MAX_STEP_WAIT_MS = 5_000
COMPLETION_SETTLE_MS = 1_500
RESUME_SETTLE_MS = 1_000
SCROLL_SETTLE_MS = 300
DEFAULT_FINAL_HOLD_MS = 1_000
DEFAULT_PAUSE_MS = 1_000
WAIT_FOR_SELECTOR_TIMEOUT_MS = 30_000
WAIT_FOR_LOAD_TIMEOUT_MS = 30_000
WAIT_FOR_NAVIGATION_TIMEOUT_MS = 15_000
NAVIGATION_TIMEOUT_MS = int(os.getenv("NAVIGATION_TIMEOUT_MS", "30000"))


def find_chrome_binary() -> Optional[str]:
    """Locate a system Chrome; ``None`` means Playwright's bundled Chromium."""
    env = os.getenv("REPLAY_CHROME_PATH")
    if env and Path(env).exists():
        return env
    for candidate in (
        "/usr/bin/google-chrome-stable",
        "/usr/bin/google-chrome",
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/snap/bin/chromium",
    ):
        if Path(candidate).exists():
            return candidate
    return None


CHROME_BIN = find_chrome_binary()

ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
CTRL_ZW_RE = re.compile("[" + "\u200B\u200C\u200D\u200E\u200F" + "\u2060" + "\uFEFF" + "]")
DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(;[^;,]*)*?)(?P<b64>;base64)?,(?P<data>.*)$", re.DOTALL)
