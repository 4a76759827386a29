"""Shared LLM call with timeout and retry logic.

Every stage goes through call_llm(). Vertex AI exceptions are converted to
retryable builtins (TimeoutError / ConnectionError / OSError) so tenacity can
back off and retry; anything else propagates on the first attempt. The model
gateway turns a final failure into UpstreamUnavailable and each stage applies
its own fallback policy.
"""

from __future__ import annotations

import concurrent.futures
from typing import Any

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tala.config import LLM_MAX_RETRIES, LLM_TIMEOUT_SECONDS
from tala.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_TEMPERATURE
from tala.llm.gemini import get_gemini_model
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter

logger = get_logger(__name__)


def _generate_with_timeout(model: Any, contents: list[Any], generation_config: dict) -> str:
    """Run generate_content on a helper thread so a hung call is bounded."""
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(model.generate_content, contents, generation_config=generation_config)
        try:
            response = future.result(timeout=LLM_TIMEOUT_SECONDS)
        except concurrent.futures.TimeoutError:
            raise TimeoutError(f"LLM call timed out after {LLM_TIMEOUT_SECONDS}s") from None
        return response.text
    finally:
        # Do not wait for a hung call; the request thread moves on
        executor.shutdown(wait=False)


@retry(
    stop=stop_after_attempt(LLM_MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((TimeoutError, ConnectionError, OSError)),
    reraise=True,
)
def call_llm(
    contents: list[Any],
    counter_prefix: str = "llm",
    system_instruction: str | None = None,
    json_output: bool = True,
) -> str:
    """Call Gemini with retry and Vertex AI exception conversion.

    Args:
        contents: Prompt parts (strings and attachment Parts).
        counter_prefix: Telemetry counter prefix (stage name).
        system_instruction: Static instruction for the stage.
        json_output: Ask the model for application/json output.

    Returns:
        The model's response text (not guaranteed to be valid JSON).

    Raises:
        TimeoutError: On deadline exceeded (retryable).
        ConnectionError: On service unavailable or internal error (retryable).
        OSError: On resource exhausted / rate limited (retryable).
        Exception: On other errors (not retried, caller handles).
    """
    from google.api_core.exceptions import (
        DeadlineExceeded,
        InternalServerError,
        ResourceExhausted,
        ServiceUnavailable,
    )

    model = get_gemini_model(system_instruction)

    generation_config: dict[str, Any] = {
        "temperature": GEMINI_TEMPERATURE,
        "max_output_tokens": GEMINI_MAX_TOKENS,
    }
    if json_output:
        generation_config["response_mime_type"] = "application/json"

    try:
        return _generate_with_timeout(model, contents, generation_config)
    except TimeoutError:
        counter(f"llm.{counter_prefix}.timeout")
        logger.warning("LLM call timed out after %ds (%s)", LLM_TIMEOUT_SECONDS, counter_prefix)
        raise
    except DeadlineExceeded as e:
        counter(f"llm.{counter_prefix}.timeout")
        logger.warning("LLM deadline exceeded (%s)", counter_prefix)
        raise TimeoutError(f"LLM call timed out: {e}") from e
    except ServiceUnavailable as e:
        counter(f"llm.{counter_prefix}.service_unavailable")
        logger.warning("LLM service unavailable, will retry: %s", e)
        raise ConnectionError(f"LLM service unavailable: {e}") from e
    except ResourceExhausted as e:
        counter(f"llm.{counter_prefix}.rate_limited")
        logger.warning("LLM rate limited (429), will retry: %s", e)
        raise OSError(f"LLM rate limited: {e}") from e
    except InternalServerError as e:
        counter(f"llm.{counter_prefix}.internal_error")
        logger.warning("LLM internal error (500), will retry: %s", e)
        raise ConnectionError(f"LLM internal error: {e}") from e
    except Exception as e:
        logger.error("LLM call failed (%s): %s", counter_prefix, e)
        raise
