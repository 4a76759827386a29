"""
Generative Model Gateway port.

generate(prompt) -> raw text. The text is NOT guaranteed to be JSON; stages
parse it defensively (tala.llm.json_extraction). A gateway that cannot
produce any text raises UpstreamUnavailable.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from tala.errors import UpstreamUnavailable
from tala.llm.gemini import GeminiInitializationError, build_attachment_part
from tala.llm.retry import call_llm
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, time_block
from tala.ports.files import FileMetadata

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelPrompt:
    """System instructions + dynamic context + user text (+ files)."""

    stage: str
    system_instruction: str
    user_text: str
    context: str = ""
    attachments: tuple[FileMetadata, ...] = field(default_factory=tuple)

    def render_text(self) -> str:
        """Dynamic part of the prompt as a single text block."""
        if self.context:
            return f"{self.context.rstrip()}\n\n=== USER MESSAGE ===\n{self.user_text}"
        return self.user_text


class ModelGateway(Protocol):
    """Protocol for text generation."""

    def generate(self, prompt: ModelPrompt) -> str:
        """
        Raises:
            UpstreamUnavailable: If the model is down, too slow, or misconfigured
        """
        ...


class GeminiModelGateway:
    """Production adapter: Vertex AI Gemini via call_llm (timeout + tenacity retry)."""

    def generate(self, prompt: ModelPrompt) -> str:
        contents: list[Any] = [prompt.render_text()]
        try:
            for attachment in prompt.attachments:
                contents.append(build_attachment_part(attachment.url, attachment.mime_type))

            with time_block(f"llm.{prompt.stage}"):
                text = call_llm(
                    contents,
                    counter_prefix=prompt.stage,
                    system_instruction=prompt.system_instruction,
                )
        except GeminiInitializationError as e:
            counter(f"llm.{prompt.stage}.init_error")
            raise UpstreamUnavailable(f"Model not initialized: {e}", "model") from e
        except Exception as e:
            counter(f"llm.{prompt.stage}.failed")
            logger.error("Model call failed for stage %s: %s", prompt.stage, e)
            raise UpstreamUnavailable(f"Model call failed: {e}", "model") from e

        if not text:
            counter(f"llm.{prompt.stage}.empty_response")
            raise UpstreamUnavailable("Model returned an empty response", "model")
        return text


Reply = str | Exception | Callable[[ModelPrompt], str]


class ScriptedModelGateway:
    """
    Fake adapter that replays scripted replies per stage.

    A reply is a string (returned verbatim), an Exception (raised), or a
    callable taking the prompt. Each stage's replies are consumed in order;
    the last one repeats once the script runs out. Unscripted stages raise
    UpstreamUnavailable.
    """

    def __init__(self, replies: dict[str, list[Reply]] | None = None):
        self.replies: dict[str, list[Reply]] = {k: list(v) for k, v in (replies or {}).items()}
        self.prompts: list[ModelPrompt] = []

    def script(self, stage: str, *replies: Reply) -> ScriptedModelGateway:
        self.replies.setdefault(stage, []).extend(replies)
        return self

    def calls_for(self, stage: str) -> list[ModelPrompt]:
        return [p for p in self.prompts if p.stage == stage]

    def generate(self, prompt: ModelPrompt) -> str:
        self.prompts.append(prompt)
        queue = self.replies.get(prompt.stage)
        if not queue:
            raise UpstreamUnavailable(f"No scripted reply for stage {prompt.stage}", "model")

        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply
