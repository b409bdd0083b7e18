"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Datasets ---
QUESTIONS_FILE = os.getenv("QUESTIONS_FILE", os.path.join(BASE_DIR, "data", "flags.json"))
CONFUSION_GROUPS_FILE = os.getenv(
    "CONFUSION_GROUPS_FILE", os.path.join(BASE_DIR, "data", "confusion_groups.json")
)

# --- Match rules ---
FIXED_ROUNDS = int(os.getenv("FIXED_ROUNDS", "3"))
MERCY_GAP = int(os.getenv("MERCY_GAP", "2"))
MERCY_CHECK_ROUND = int(os.getenv("MERCY_CHECK_ROUND", "2"))
ROUND_TIME_LIMIT = int(os.getenv("ROUND_TIME_LIMIT", "10"))  # seconds
ROUND_INTERMISSION = float(os.getenv("ROUND_INTERMISSION", "3"))  # seconds between rounds
OPTIONS_PER_ROUND = int(os.getenv("OPTIONS_PER_ROUND", "4"))
MAX_TIEBREAK_ROUNDS = int(os.getenv("MAX_TIEBREAK_ROUNDS", "0"))  # 0 = until questions run out
MAX_MATCH_QUESTIONS = int(os.getenv("MAX_MATCH_QUESTIONS", "0"))  # 0 = whole bank

# --- Matchmaking ---
AUTO_MATCH_ON_CONNECT = os.getenv("AUTO_MATCH_ON_CONNECT", "true").lower() in ("1", "true", "yes")

# --- Solo practice ---
SOLO_ROUNDS = int(os.getenv("SOLO_ROUNDS", "10"))

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_DISPLAY_NAME_LENGTH = 20
MAX_IDENTITY_LENGTH = 64

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
