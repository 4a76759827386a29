"""Tala - AI-assisted ingestion and event sourcing for child tracking"""

from __future__ import annotations

__version__ = "1.0.0"


# Lazy imports for the heavier pipeline and event modules
def __getattr__(name: str):
    """
    Lazy imports to avoid loading the Gemini SDK and database layer when only
    importing lightweight modules (settings, telemetry).
    """
    if name == "PipelineOrchestrator":
        from tala.pipeline.orchestrator import PipelineOrchestrator

        return PipelineOrchestrator

    if name in ("EventProjector", "EventIntakeService"):
        from tala.events import intake, projector

        if name == "EventProjector":
            return projector.EventProjector
        if name == "EventIntakeService":
            return intake.EventIntakeService

    if name in ("OriginEvent", "OriginLogRepository"):
        from tala.events import models, origin_log

        if name == "OriginEvent":
            return models.OriginEvent
        if name == "OriginLogRepository":
            return origin_log.OriginLogRepository

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "EventIntakeService",
    "EventProjector",
    "OriginEvent",
    "OriginLogRepository",
    "PipelineOrchestrator",
]
