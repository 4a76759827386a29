"""
Service wiring for the API.

The container is built once (prompts, model gateway, collaborator adapters)
and injected into routes with Depends(get_container). Tests override
get_container with a container built from fake adapters.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from tala.chat.service import ChatService
from tala.config import (
    FILE_SERVICE_URL,
    INGRESS_MAX_WORKERS,
    MEM0_API_KEY,
    MEM0_BASE_URL,
    MEM0_ENABLED,
    PROFILE_SERVICE_URL,
)
from tala.events.attachment_resolver import AttachmentResolver
from tala.events.intake import EventIntakeService
from tala.events.projector import EventProjector
from tala.events.timeline import TimelineService
from tala.llm.prompts import PromptSet, load_prompts
from tala.observability.logging import get_logger
from tala.pipeline.context import ContextAssembler
from tala.pipeline.orchestrator import PipelineOrchestrator
from tala.ports.files import FileDirectory, HttpFileDirectory
from tala.ports.memory import ConversationalMemory, Mem0Memory
from tala.ports.model import GeminiModelGateway, ModelGateway
from tala.ports.profiles import HttpProfileDirectory, ProfileDirectory

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    chat: ChatService
    intake: EventIntakeService
    projector: EventProjector
    timeline: TimelineService

    def shutdown(self) -> None:
        self.chat.shutdown(wait=False)


def build_container(
    model: ModelGateway,
    profiles: ProfileDirectory,
    memory: ConversationalMemory,
    files: FileDirectory,
    prompts: PromptSet | None = None,
    max_workers: int = INGRESS_MAX_WORKERS,
) -> ServiceContainer:
    """Wire every service from one set of ports."""
    prompts = prompts or load_prompts()
    projector = EventProjector()
    intake = EventIntakeService(projector)
    chat = ChatService(
        orchestrator=PipelineOrchestrator.from_prompts(model, prompts),
        assembler=ContextAssembler(profiles, memory, files),
        memory=memory,
        intake=intake,
        max_workers=max_workers,
    )
    return ServiceContainer(
        chat=chat,
        intake=intake,
        projector=projector,
        timeline=TimelineService(AttachmentResolver(files)),
    )


@lru_cache(maxsize=1)
def get_container() -> ServiceContainer:
    """Production container (Gemini + HTTP collaborators)."""
    logger.info(
        "Building service container (profiles=%s, files=%s, mem0=%s)",
        PROFILE_SERVICE_URL,
        FILE_SERVICE_URL,
        MEM0_BASE_URL if MEM0_ENABLED else "disabled",
    )
    return build_container(
        model=GeminiModelGateway(),
        profiles=HttpProfileDirectory(PROFILE_SERVICE_URL),
        memory=Mem0Memory(MEM0_BASE_URL, api_key=MEM0_API_KEY, enabled=MEM0_ENABLED),
        files=HttpFileDirectory(FILE_SERVICE_URL),
    )
