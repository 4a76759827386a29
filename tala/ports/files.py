"""
File/Media Directory port.

Resolves an attachment id to its metadata (URL, thumbnail, MIME type, size).
Lookups are best-effort: callers drop ids that fail to resolve.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from tala.errors import UpstreamUnavailable
from tala.ports.http import get_json


@dataclass(frozen=True)
class FileMetadata:
    """Metadata for one stored file."""

    file_id: str
    url: str
    mime_type: str = "application/octet-stream"
    file_name: str = ""
    thumbnail_url: str | None = None
    size: int | None = None

    @property
    def display_name(self) -> str:
        return self.file_name or f"file-{self.file_id}"

    @classmethod
    def from_api(cls, file_id: str, data: dict[str, Any]) -> FileMetadata:
        """Build from a file service JSON reply (camelCase keys)."""
        url = data.get("publicUrl") or data.get("url")
        if not url:
            raise ValueError(f"File {file_id} has no URL")
        size = data.get("fileSize", data.get("size"))
        return cls(
            file_id=str(data.get("id", file_id)),
            url=url,
            mime_type=data.get("mimeType") or "application/octet-stream",
            file_name=data.get("originalFilename") or "",
            thumbnail_url=data.get("thumbnailUrl"),
            size=int(size) if size is not None else None,
        )


class FileDirectory(Protocol):
    """Protocol for file metadata lookups."""

    def resolve_metadata(self, file_id: str) -> FileMetadata:
        """Look up one file.

        Raises:
            UpstreamUnavailable: If the file is unknown or the service fails
        """
        ...


class HttpFileDirectory:
    """Production adapter: GET {base_url}/api/v1/files/{id}."""

    def __init__(self, base_url: str, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def resolve_metadata(self, file_id: str) -> FileMetadata:
        kwargs: dict[str, Any] = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        data = get_json("file_directory", f"{self.base_url}/api/v1/files/{file_id}", **kwargs)
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"File {file_id} lookup returned no metadata", "file_directory")
        try:
            return FileMetadata.from_api(file_id, data)
        except (TypeError, ValueError) as e:
            raise UpstreamUnavailable(f"File {file_id} metadata invalid: {e}", "file_directory") from e


class InMemoryFileDirectory:
    """Fake adapter backed by a dict; unknown ids raise like a 404."""

    def __init__(self, files: list[FileMetadata] | None = None):
        self.files: dict[str, FileMetadata] = {f.file_id: f for f in files or []}
        self.lookups: list[str] = []

    def add(self, metadata: FileMetadata) -> None:
        self.files[metadata.file_id] = metadata

    def forget(self, file_id: str) -> None:
        self.files.pop(file_id, None)

    def resolve_metadata(self, file_id: str) -> FileMetadata:
        self.lookups.append(file_id)
        try:
            return self.files[file_id]
        except KeyError:
            raise UpstreamUnavailable(
                f"File {file_id} not found", "file_directory", status_code=404
            ) from None
