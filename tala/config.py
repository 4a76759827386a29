"""Centralized configuration for the Tala backend.

Re-exports everything from tala.infrastructure.settings, then adds typed
constants for database, LLM, pipeline, collaborator and API settings.
Environment variable overrides use safe defaults so the app starts without
extra env configuration.
"""

from __future__ import annotations

import os

from tala.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "1.0.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("TALA_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("TALA_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("TALA_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("TALA_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("TALA_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("TALA_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("TALA_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("TALA_DB_RETRY_JITTER", "0.1"))

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("TALA_LLM_TIMEOUT", "60"))
LLM_MAX_RETRIES: int = int(os.getenv("TALA_LLM_MAX_RETRIES", "3"))
LLM_MAX_WORKERS: int = int(os.getenv("TALA_LLM_MAX_WORKERS", "4"))

# --- AI Pipeline ---
PIPELINE_ATTACHMENT_TEXT_TRUNCATION: int = 500
PIPELINE_USER_TEXT_MAX_CHARS: int = 8000
PIPELINE_HISTORY_WINDOW: int = 10
PIPELINE_MEMORY_SEARCH_LIMIT: int = 5
PIPELINE_CLARIFICATION_THRESHOLD: float = 0.5
PIPELINE_GROUPING_WINDOW_MINUTES: int = 30
PIPELINE_SHORT_ANSWER_MAX_WORDS: int = 6

# --- Collaborators ---
COLLABORATOR_TIMEOUT_SECONDS: float = float(os.getenv("TALA_COLLABORATOR_TIMEOUT", "5.0"))
CONTEXT_LOOKUP_WORKERS: int = int(os.getenv("TALA_CONTEXT_LOOKUP_WORKERS", "4"))

# --- Ingress ---
INGRESS_MAX_WORKERS: int = int(os.getenv("TALA_INGRESS_MAX_WORKERS", "8"))
STREAM_TIMEOUT_SECONDS: float = float(os.getenv("TALA_STREAM_TIMEOUT", "300"))

# --- Projection ---
DEFAULT_LOCATION: str = "Home"
SWEEP_BATCH_SIZE: int = int(os.getenv("TALA_SWEEP_BATCH_SIZE", "100"))

# --- API ---
API_LIST_LIMIT_DEFAULT: int = 20
API_LIST_LIMIT_MAX: int = 200
API_MESSAGE_MAX_CHARS: int = 8000
API_ATTACHMENTS_MAX: int = 20
