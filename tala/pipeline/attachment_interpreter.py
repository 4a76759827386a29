"""
Attachment Interpreter - stage 1 of the ingestion pipeline.

Each attached file is sent to the model on its own (in parallel), so one
unreadable file cannot take the others down with it. The aggregate carries
whatever subset succeeded plus a note naming the files that failed.
"""

from __future__ import annotations

import concurrent.futures

from tala.config import LLM_MAX_RETRIES, LLM_MAX_WORKERS, LLM_TIMEOUT_SECONDS
from tala.llm.json_extraction import extract_json_object
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event
from tala.pipeline.sanitize import sanitize
from tala.pipeline.types import AttachmentInterpretation, AttachmentSummary, AttachmentType
from tala.ports.files import FileMetadata
from tala.ports.model import ModelGateway, ModelPrompt

logger = get_logger(__name__)

STAGE = "attachment_interpreter"

# Upper bound for one file: every retry may run to the LLM timeout
_PER_FILE_TIMEOUT = LLM_TIMEOUT_SECONDS * LLM_MAX_RETRIES + 30


def _parse_attachment_type(value: object) -> AttachmentType:
    try:
        return AttachmentType(str(value).strip().upper())
    except ValueError:
        return AttachmentType.OTHER


def _clamp_confidence(value: object, default: float = 0.5) -> float:
    try:
        return max(0.0, min(1.0, float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


class AttachmentInterpreter:
    """Turns attached files into structured per-file summaries."""

    def __init__(self, model: ModelGateway, system_instruction: str, max_workers: int = LLM_MAX_WORKERS):
        self.model = model
        self.system_instruction = system_instruction
        self.max_workers = max_workers

    def interpret(
        self,
        attachments: list[FileMetadata],
        user_text: str = "",
        unresolved_ids: list[str] | None = None,
    ) -> AttachmentInterpretation | None:
        """
        Interpret every attachment. Never raises.

        Args:
            attachments: Files whose metadata resolved
            user_text: The surrounding message, as a hint for the model
            unresolved_ids: Attachment ids whose metadata lookup failed

        Returns:
            None when there was nothing to interpret, otherwise the aggregate
        """
        unresolved_ids = list(unresolved_ids or [])
        if not attachments and not unresolved_ids:
            return None

        results: list[tuple[int, AttachmentSummary]] = []
        failed: list[str] = list(unresolved_ids)

        if attachments:
            workers = max(1, min(self.max_workers, len(attachments)))
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
            try:
                future_to_idx = {
                    executor.submit(self._interpret_one, attachment, user_text): idx
                    for idx, attachment in enumerate(attachments)
                }
                for future in concurrent.futures.as_completed(future_to_idx, timeout=_PER_FILE_TIMEOUT):
                    idx = future_to_idx[future]
                    try:
                        results.append((idx, future.result()))
                    except Exception as e:
                        counter("pipeline.attachment.file_error")
                        logger.warning(
                            "Attachment %s could not be interpreted: %s",
                            attachments[idx].file_id,
                            e,
                        )
                        failed.append(attachments[idx].file_id)
            except concurrent.futures.TimeoutError:
                done = {idx for idx, _ in results}
                for idx, attachment in enumerate(attachments):
                    if idx not in done and attachment.file_id not in failed:
                        failed.append(attachment.file_id)
                counter("pipeline.attachment.timeout")
                logger.warning("Attachment interpretation timed out for %d file(s)", len(failed))
            finally:
                executor.shutdown(wait=False)

        # Restore original order (deterministic context)
        results.sort(key=lambda pair: pair[0])
        summaries = [summary for _, summary in results]

        interpretation = self._aggregate(summaries, failed, attachments)
        log_event(
            "pipeline.attachment.result",
            files=len(summaries),
            failed=len(failed),
            attachment_type=interpretation.attachment_type.value,
        )
        return interpretation

    def _interpret_one(self, attachment: FileMetadata, user_text: str) -> AttachmentSummary:
        """
        Raises:
            UpstreamUnavailable: Model call failed
            ParseError: Model reply had no JSON object
        """
        context = f"File name: {attachment.display_name}\nMIME type: {attachment.mime_type}"
        hint = sanitize(user_text, max_length=1000)
        prompt = ModelPrompt(
            stage=STAGE,
            system_instruction=self.system_instruction,
            context=context,
            user_text=hint or "(no message)",
            attachments=(attachment,),
        )
        raw = self.model.generate(prompt)
        data = extract_json_object(raw)

        findings = data.get("key_findings") or []
        if isinstance(findings, str):
            findings = [findings]

        counter("pipeline.attachment.file_success")
        return AttachmentSummary(
            file_id=attachment.file_id,
            file_name=str(data.get("file_name") or attachment.display_name),
            content_summary=str(data.get("content_summary") or ""),
            extracted_text=str(data.get("extracted_text") or ""),
            key_findings=[str(f) for f in findings if f],
            detected_type=_parse_attachment_type(data.get("detected_type")),
            confidence=_clamp_confidence(data.get("confidence")),
        )

    def _aggregate(
        self,
        summaries: list[AttachmentSummary],
        failed: list[str],
        attachments: list[FileMetadata],
    ) -> AttachmentInterpretation:
        types = {s.detected_type for s in summaries}
        if not types:
            attachment_type = AttachmentType.OTHER
        elif len(types) == 1:
            attachment_type = next(iter(types))
        else:
            attachment_type = AttachmentType.MIXED

        if not summaries:
            overall = "No attachments could be interpreted."
        elif len(summaries) == 1:
            overall = summaries[0].content_summary
        else:
            overall = f"{len(summaries)} files: " + "; ".join(
                f"{s.file_name}: {s.content_summary}" for s in summaries
            )

        failure_note = None
        if failed:
            names = {a.file_id: a.display_name for a in attachments}
            failure_note = "Could not read: " + ", ".join(names.get(fid, f"file-{fid}") for fid in failed)

        return AttachmentInterpretation(
            files=summaries,
            overall_summary=overall,
            attachment_type=attachment_type,
            failed_file_ids=failed,
            failure_note=failure_note,
        )
