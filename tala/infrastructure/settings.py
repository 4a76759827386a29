"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
TALA_ROOT = Path(__file__).parent.parent

# Environment
ENV = os.getenv("TALA_ENV", "development")
DEBUG = ENV == "development"

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Google Cloud / Gemini
GOOGLE_CLOUD_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_LOCATION = os.getenv("GEMINI_LOCATION", "us-central1")
GEMINI_MAX_TOKENS = int(os.getenv("GEMINI_MAX_TOKENS", "4096"))
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.4"))

# Collaborator services (profile directory, file/media directory, memory)
PROFILE_SERVICE_URL = os.getenv("PROFILE_SERVICE_URL", "http://localhost:8081")
FILE_SERVICE_URL = os.getenv("FILE_SERVICE_URL", "http://localhost:8082")
MEM0_BASE_URL = os.getenv("MEM0_BASE_URL", "https://api.mem0.ai")
MEM0_API_KEY = os.getenv("MEM0_API_KEY")
MEM0_ENABLED = os.getenv("MEM0_ENABLED", "false").lower() == "true"

# Prompt configuration (system instructions for the three AI stages)
PROMPTS_PATH = Path(os.getenv("TALA_PROMPTS_PATH", str(TALA_ROOT / "llm" / "prompts.yaml")))


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"


def is_development() -> bool:
    """Check if running in development"""
    return ENV == "development"
