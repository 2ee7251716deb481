"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all ClassChat settings: API keys, paths, model names,
  sampling defaults, auth secrets and paging limits. Each classroom runs its
  own copy of this backend with its own .env and database/ folder.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so API keys stay out of code).
  - Defines the database/ folder that holds the chats and users collections.
  - Exposes GROQ_API_KEYS, GROQ_MODEL, GROQ_MODELS for the upstream LLM.
  - Holds the default generation config and system prompt offered to the UI.
  - Holds the JWT settings used to sign login tokens.

USAGE:
  Import what you need: `from config import GROQ_API_KEYS, DATABASE_DIR, JWT_SECRET_KEY`
  All services import from here so behaviour is consistent.
"""

import os
import secrets
import logging
from pathlib import Path
from dotenv import load_dotenv


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


# -----------------------------------------------------------------------------
# BASE PATH
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).parent

# ============================================================================
# DATABASE PATHS
# ============================================================================
# Every collection is a folder of JSON documents:
# - chats: one document per chat session (transcript + generation config)
# - users: one document per registered account (email + bcrypt hash)
# The store creates the collection folders on first use.

DATABASE_DIR = Path(os.getenv("CLASSCHAT_DATABASE_DIR", "").strip() or BASE_DIR / "database")
CHATS_COLLECTION = "chats"
USERS_COLLECTION = "users"

# ============================================================================
# GROQ API CONFIGURATION
# ============================================================================
# Groq is the LLM provider the relay streams from.
# You can set one key (GROQ_API_KEY) or several:
#   GROQ_API_KEY, GROQ_API_KEY_2, GROQ_API_KEY_3, ... (no upper limit).
# Request 1 uses the 1st key, request 2 the 2nd, then back to the 1st.
# A failed request is NOT retried on another key: one upstream attempt per stream.

def _load_groq_api_keys() -> list:
    """
    Load all GROQ API keys from the environment.
    Reads GROQ_API_KEY first, then GROQ_API_KEY_2, GROQ_API_KEY_3, ... until
    a number has no value. Returns a list of non-empty key strings.
    """
    keys = []
    first = os.getenv("GROQ_API_KEY", "").strip()
    if first:
        keys.append(first)
    i = 2
    while True:
        k = os.getenv(f"GROQ_API_KEY_{i}", "").strip()
        if not k:
            break
        keys.append(k)
        i += 1
    return keys


def _load_model_list(default_model: str) -> list:
    """Comma-separated GROQ_MODELS; the default model is always offered first."""
    raw = os.getenv("GROQ_MODELS", "llama-3.1-8b-instant,openai/gpt-oss-20b")
    models = [m.strip() for m in raw.split(",") if m.strip() and m.strip() != default_model]
    return [default_model] + models


GROQ_API_KEYS = _load_groq_api_keys()
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
GROQ_MODELS = _load_model_list(GROQ_MODEL)

# ============================================================================
# GENERATION DEFAULTS
# ============================================================================
# Used when a request omits temperature / topP, and offered to the UI by /api/models.
# temperature: creativity (0 = deterministic, 1 = more random)
# top_p: nucleus sampling cap
# max_tokens: optional server cap on generation length

DEFAULT_TEMPERATURE = float(os.getenv("DEFAULT_TEMPERATURE", "0.7"))
DEFAULT_TOP_P = float(os.getenv("DEFAULT_TOP_P", "0.9"))
DEFAULT_MAX_TOKENS = int(os.getenv("DEFAULT_MAX_TOKENS", "256"))

DEFAULT_SYSTEM_PROMPT = os.getenv("DEFAULT_SYSTEM_PROMPT", "").strip() or (
    "You are a helpful teaching assistant. Provide concise answers that are "
    "safe and appropriate for a classroom demo."
)

# ============================================================================
# SESSIONS
# ============================================================================
# Titles derived from the first user message are cut to this many characters.
TITLE_MAX_LENGTH = 60
DEFAULT_TITLE = "New Chat"

# Listing page size is clamped to [MIN_PAGE_SIZE, MAX_PAGE_SIZE].
MIN_PAGE_SIZE = 5
MAX_PAGE_SIZE = 50
DEFAULT_PAGE_SIZE = 20

# ============================================================================
# AUTH
# ============================================================================
# Login hands out an HS256 JWT; set JWT_SECRET_KEY in .env.
# CLASSCHAT_DEV_MODE=1 allows a fixed, public secret for local demos only.
DEV_SECRET = "classchat-dev-secret"


def _load_jwt_secret() -> str:
    """
    JWT_SECRET_KEY from the environment. Without it, tokens are signed with a
    random per-process secret (logins do not survive a restart) unless dev
    mode explicitly asks for the fixed development secret.
    """
    secret = os.getenv("JWT_SECRET_KEY", "").strip()
    if secret:
        return secret
    if os.getenv("CLASSCHAT_DEV_MODE", "").strip().lower() in ("1", "true", "yes"):
        logger.warning("JWT_SECRET_KEY not set. Dev mode: using the public development secret.")
        return DEV_SECRET
    logger.error("JWT_SECRET_KEY not set. Using a random secret; tokens will not survive a restart.")
    return secrets.token_urlsafe(32)


JWT_SECRET_KEY = _load_jwt_secret()
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

MIN_PASSWORD_LENGTH = 6
