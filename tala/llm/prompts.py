"""Stage prompts, loaded once from YAML into an immutable PromptSet.

The app builds one PromptSet at startup and hands it to each stage; there is
no module-level registry to mutate.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml  # type: ignore[import-untyped]

from tala.infrastructure.settings import PROMPTS_PATH
from tala.observability.logging import get_logger

logger = get_logger(__name__)

_REQUIRED_KEYS = ("attachment_interpreter", "interaction_classifier", "event_extractor")


@dataclass(frozen=True)
class PromptSet:
    """System instructions for the three AI stages."""

    version: str
    attachment_interpreter: str
    interaction_classifier: str
    event_extractor: str


def load_prompts(path: Path | None = None) -> PromptSet:
    """
    Load the prompt YAML.

    Raises:
        FileNotFoundError: If the prompt file is missing
        ValueError: If a stage prompt is missing or empty
    """
    path = path or PROMPTS_PATH
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    missing = [key for key in _REQUIRED_KEYS if not str(data.get(key) or "").strip()]
    if missing:
        raise ValueError(f"Prompt file {path} missing stages: {', '.join(missing)}")

    prompts = PromptSet(
        version=str(data.get("version", "unversioned")),
        attachment_interpreter=data["attachment_interpreter"].strip(),
        interaction_classifier=data["interaction_classifier"].strip(),
        event_extractor=data["event_extractor"].strip(),
    )
    logger.info("Loaded stage prompts version=%s from %s", prompts.version, path)
    return prompts
