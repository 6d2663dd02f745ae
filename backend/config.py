"""Centralized configuration: every env var and the logging setup."""
import os
import re
import logging
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# --- Discord / identity provider ---
DISCORD_CLIENT_ID = os.getenv("DISCORD_CLIENT_ID", os.getenv("VITE_DISCORD_CLIENT_ID", ""))
DISCORD_CLIENT_SECRET = os.getenv("DISCORD_CLIENT_SECRET", os.getenv("CLIENT_SECRET", ""))
DISCORD_API_BASE = os.getenv("DISCORD_API_BASE", "https://discord.com/api")
IDENTITY_TIMEOUT = int(os.getenv("IDENTITY_TIMEOUT", "10"))
ADMIN_USER_IDS = [uid.strip() for uid in os.getenv("ADMIN_USER_IDS", "").split(",") if uid.strip()]

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# --- Question pool ---
QUESTIONS_FILE = os.getenv("QUESTIONS_FILE", os.path.join(BASE_DIR, "data", "questions.json"))
VISUAL_PROMPTS_FILE = os.getenv("VISUAL_PROMPTS_FILE", os.path.join(BASE_DIR, "data", "visual_prompts.json"))
VISUAL_OPTION_COUNT = 4

# --- Scoring ---
MAX_TIME = int(os.getenv("ROUND_DURATION_SECONDS", "15"))
MAX_POINTS = int(os.getenv("MAX_POINTS", "150"))  # points for an instant answer
SCORING_EXPONENT = float(os.getenv("SCORING_EXPONENT", "2"))  # power curve exponent
PUSH_SCORING_STRATEGY = os.getenv("PUSH_SCORING_STRATEGY", "bonus_factor")
POLL_SCORING_STRATEGY = "time_curve"

# --- Question generation guard (poll transport) ---
GENERATION_WAIT_SECONDS = float(os.getenv("GENERATION_WAIT_SECONDS", "0.05"))
GENERATION_MAX_WAITS = int(os.getenv("GENERATION_MAX_WAITS", "20"))

# --- Room lifecycle ---
ROOM_CLEANUP_INTERVAL = int(os.getenv("ROOM_CLEANUP_INTERVAL_SECONDS", "1800"))  # 30 minutes
ROOM_INACTIVE_THRESHOLD = int(os.getenv("ROOM_INACTIVE_THRESHOLD_SECONDS", "3600"))  # 1 hour
PLAYER_INACTIVE_THRESHOLD = int(os.getenv("PLAYER_INACTIVE_THRESHOLD_SECONDS", "300"))  # 5 minutes

# --- Daily reset (UTC) ---
LEADERBOARD_RESET_HOUR = int(os.getenv("LEADERBOARD_RESET_HOUR", "0"))
LEADERBOARD_RESET_MINUTE = int(os.getenv("LEADERBOARD_RESET_MINUTE", "0"))
ARCHIVE_HISTORY_DAYS = int(os.getenv("ARCHIVE_HISTORY_DAYS", "7"))

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_PLAYER_NAME_LENGTH = 32

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only
LOG_REDACT = os.getenv("LOG_REDACT", "true" if ENVIRONMENT == "production" else "false").lower() == "true"


_REDACT_PATTERNS = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"(?i)((?:access_token|refresh_token|client_secret|token|code)[\"']?\s*[:=]\s*[\"']?)[^\s\"'&,}]+"),
]


class RedactingFilter(logging.Filter):
    """Scrub credentials out of log records before they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        for pattern in _REDACT_PATTERNS:
            message = pattern.sub(r"\1[REDACTED]", message)
        record.msg = message
        record.args = None
        return True


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    if LOG_REDACT:
        for handler in handlers:
            handler.addFilter(RedactingFilter())
        # uvicorn logs websocket handshakes with their query string
        logging.getLogger("uvicorn.error").addFilter(RedactingFilter())
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
