"""Blocking JSON-over-HTTP helpers shared by the collaborator adapters.

Every call is time-bounded. Transport errors, timeouts and non-2xx replies
all surface as UpstreamUnavailable naming the collaborator; callers decide
whether that is fatal or degrades to a default.
"""

from __future__ import annotations

from typing import Any

import requests

from tala.config import COLLABORATOR_TIMEOUT_SECONDS
from tala.errors import UpstreamUnavailable
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter

logger = get_logger(__name__)


def _request_json(
    method: str,
    collaborator: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    json_body: Any = None,
    headers: dict[str, str] | None = None,
    timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
) -> Any:
    try:
        response = requests.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=headers,
            timeout=timeout,
        )
    except requests.exceptions.Timeout as e:
        counter(f"collaborator.{collaborator}.timeout")
        logger.warning("%s timeout after %.1fs: %s %s", collaborator, timeout, method, url)
        raise UpstreamUnavailable(f"{collaborator} timed out", collaborator) from e
    except requests.exceptions.RequestException as e:
        counter(f"collaborator.{collaborator}.error")
        logger.warning("%s request failed: %s", collaborator, e)
        raise UpstreamUnavailable(f"{collaborator} request failed: {e}", collaborator) from e

    if response.status_code >= 400:
        counter(f"collaborator.{collaborator}.http_{response.status_code}")
        raise UpstreamUnavailable(
            f"{collaborator} returned HTTP {response.status_code}",
            collaborator,
            status_code=response.status_code,
        )

    if not response.content:
        return None

    try:
        return response.json()
    except ValueError as e:
        counter(f"collaborator.{collaborator}.bad_json")
        raise UpstreamUnavailable(f"{collaborator} returned invalid JSON", collaborator) from e


def get_json(collaborator: str, url: str, **kwargs: Any) -> Any:
    return _request_json("GET", collaborator, url, **kwargs)


def post_json(collaborator: str, url: str, **kwargs: Any) -> Any:
    return _request_json("POST", collaborator, url, **kwargs)
