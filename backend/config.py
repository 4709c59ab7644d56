"""Centralized configuration: every env var and tunable lives here."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 64 * 1024  # bytes, large enough for a custom question batch
MAX_DISPLAY_NAME_LENGTH = 20
MAX_CHAT_LENGTH = 500

# --- Storage Limits ---
MAX_ROOMS = int(os.getenv("MAX_ROOMS", "200"))
MAX_PLAYERS_PER_ROOM = 10
MAX_CHAT_LOG = 200  # most recent chat messages kept per room
MAX_UPLOAD_BYTES = 1024 * 1024  # 1MB per question file

# --- Rooms ---
ROOM_CODE_LENGTH = 6
MAX_ROOM_CODE_ATTEMPTS = 10
EMPTY_ROOM_TTL_SECONDS = int(os.getenv("EMPTY_ROOM_TTL_SECONDS", "300"))
ABANDONED_ROOM_TTL_SECONDS = int(os.getenv("ABANDONED_ROOM_TTL_SECONDS", "1800"))  # no player connected
ROOM_SWEEP_INTERVAL_SECONDS = int(os.getenv("ROOM_SWEEP_INTERVAL_SECONDS", "600"))

# --- Quiz timing (seconds) ---
LEAD_IN_SECONDS = 3  # between quiz-started and the first question
ALL_ANSWERED_GRACE_SECONDS = 3  # between all-answered and the next question
QUESTION_BUFFER_SECONDS = 2  # added to each question's time limit
MIN_TIME_LIMIT = 10
MAX_TIME_LIMIT = 300
DEFAULT_TIME_LIMIT = 15

# --- Scoring ---
CORRECT_ANSWER_POINTS = 10

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
