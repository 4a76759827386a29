"""
Gemini model manager.

One GenerativeModel per distinct system instruction. The three AI stages each
have a fixed instruction loaded at startup, so the cache stays tiny and every
stage reuses its model instance across requests.

Backend: Vertex AI SDK (google-cloud-aiplatform), GOOGLE_CLOUD_PROJECT +
service account credentials.
"""

from __future__ import annotations

import os
from functools import lru_cache

from tala.infrastructure.settings import GEMINI_LOCATION, GEMINI_MODEL, GOOGLE_CLOUD_PROJECT
from tala.observability.logging import get_logger

logger = get_logger(__name__)


class GeminiInitializationError(RuntimeError):
    """Raised when Gemini model cannot be initialized."""


@lru_cache(maxsize=1)
def _init_vertex() -> str:
    """Initialize the Vertex AI SDK once; returns the project id used."""
    # Read env fresh (settings may have been imported before load_dotenv)
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION") or GEMINI_LOCATION or "us-central1"

    if not project:
        raise GeminiInitializationError("GOOGLE_CLOUD_PROJECT not set")

    try:
        import vertexai
    except ImportError as e:
        raise GeminiInitializationError(
            "Vertex AI SDK not installed. Install google-cloud-aiplatform."
        ) from e

    vertexai.init(project=project, location=location)
    logger.info(
        "Initialized Vertex AI: project=%s, location=%s, model=%s",
        project,
        location,
        GEMINI_MODEL,
    )
    return project


@lru_cache(maxsize=8)
def get_gemini_model(system_instruction: str | None = None):
    """
    Get or create a Gemini model for the given system instruction.

    Returns:
        vertexai.generative_models.GenerativeModel

    Raises:
        GeminiInitializationError: If the SDK or credentials are unavailable
    """
    _init_vertex()

    try:
        from vertexai.generative_models import GenerativeModel

        if system_instruction:
            return GenerativeModel(GEMINI_MODEL, system_instruction=system_instruction)
        return GenerativeModel(GEMINI_MODEL)
    except Exception as e:
        logger.error("Failed to initialize Gemini model: %s", e)
        raise GeminiInitializationError(f"Failed to initialize Gemini: {e}") from e


def build_attachment_part(uri: str, mime_type: str):
    """Wrap a file URL as a multimodal content part."""
    from vertexai.generative_models import Part

    return Part.from_uri(uri, mime_type=mime_type)


def clear_model_cache() -> None:
    """
    Clear cached model instances (tests, reconfiguration).
    """
    get_gemini_model.cache_clear()
    _init_vertex.cache_clear()
    logger.info("Cleared Gemini model cache")
