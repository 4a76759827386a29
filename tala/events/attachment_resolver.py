"""
Attachment Resolver - attachment ids -> AttachmentRef via the file directory.

Partial success: an id the file directory cannot resolve is logged and
dropped; the caller gets every ref that did resolve, in input order.
"""

from __future__ import annotations

from tala.events.models import AttachmentRef
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter
from tala.ports.files import FileDirectory, FileMetadata

logger = get_logger(__name__)


def to_attachment_ref(metadata: FileMetadata) -> AttachmentRef:
    return AttachmentRef(
        resource_id=metadata.file_id,
        url=metadata.url,
        thumbnail_url=metadata.thumbnail_url,
        mime_type=metadata.mime_type,
        file_name=metadata.file_name or None,
        size=metadata.size,
    )


class AttachmentResolver:
    """Resolves stored attachment ids for display."""

    def __init__(self, files: FileDirectory):
        self.files = files

    def resolve(self, attachment_ids: list[str]) -> list[AttachmentRef]:
        if not attachment_ids:
            return []

        refs: list[AttachmentRef] = []
        for file_id in attachment_ids:
            try:
                refs.append(to_attachment_ref(self.files.resolve_metadata(str(file_id))))
            except Exception as e:
                counter("events.attachment_resolver.failed")
                logger.warning("Failed to resolve attachment %s, omitting it: %s", file_id, e)

        if len(refs) < len(attachment_ids):
            logger.info("Resolved %d/%d attachments", len(refs), len(attachment_ids))
        return refs
