import os
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from evaluator.core.errors import ConfigurationError

# Load environment variables from backend/.env
load_dotenv(Path(__file__).parent.parent.parent / ".env")

logger = logging.getLogger(__name__)

# --- Credentials ---
# GEMINI_API_KEY is canonical; the others are accepted as typo-tolerant aliases.
API_KEY_ENV_NAMES = ("GEMINI_API_KEY", "GEMINI_API", "GEMINI_KEY", "GOOGLE_API_KEY")
MISSING_KEY_MESSAGE = "Missing API Key in Environment Variables"

# --- Model ---
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
REQUEST_TIMEOUT = float(os.getenv("EVALUATOR_TIMEOUT", "30"))
TEXT_RETRIES = int(os.getenv("EVALUATOR_RETRIES", "1"))

# --- Client side ---
BACKEND_URL = os.getenv("EVALUATOR_BACKEND_URL", "http://127.0.0.1:8000")
BACKEND_ONLY = os.getenv("EVALUATOR_BACKEND_ONLY", "false").strip().lower() in ("1", "true", "yes")
LOCAL_STORAGE_PATH = Path(
    os.getenv("EVALUATOR_LOCAL_STORAGE", str(Path.home() / ".answer_evaluator" / "local_storage.json"))
)
LOCAL_KEY_NAME = "gemini_api_key"

# --- Grading defaults ---
DEFAULT_MAX_MARKS = 5
DEFAULT_MODEL_ANSWER = "The official solution was not provided."
MAX_PAGES = 10


def find_api_key() -> Optional[str]:
    """Returns the first non-empty key among the accepted variable names."""
    for name in API_KEY_ENV_NAMES:
        value = os.getenv(name, "").strip()
        if value:
            if name != API_KEY_ENV_NAMES[0]:
                logger.info(f"Using Gemini API key from {name}")
            return value
    return None


def resolve_api_key() -> str:
    key = find_api_key()
    if not key:
        logger.error(f"ERROR: none of {', '.join(API_KEY_ENV_NAMES)} is set.")
        raise ConfigurationError(
            MISSING_KEY_MESSAGE,
            details=f"Set {API_KEY_ENV_NAMES[0]} (or one of {', '.join(API_KEY_ENV_NAMES[1:])}).",
        )
    return key
