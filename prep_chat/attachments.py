"""Staged attachments and the file service that owns their previews.

Files are staged before a send, each with an encoded preview handle. A
preview is released exactly once: on removal, on discard (model switch or
conversation switch), or once a send that took the staged files has been
accepted. A rejected send puts the files back.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
import logging
import mimetypes
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from .message import FilePart

LOGGER = logging.getLogger(__name__)

PREVIEW_SCHEME = "preview:"
DEFAULT_MEDIA_TYPE = "application/octet-stream"


@dataclass
class AttachmentFile:
    """An unsent file picked by the user."""

    name: str
    media_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: str | Path) -> AttachmentFile:
        resolved = Path(path).expanduser()
        media_type, _ = mimetypes.guess_type(resolved.name)
        return cls(
            name=resolved.name,
            media_type=media_type or DEFAULT_MEDIA_TYPE,
            data=resolved.read_bytes(),
        )


@dataclass(frozen=True)
class Preview:
    preview_url: str


@dataclass
class ValidationResult:
    valid: list[AttachmentFile]
    error: str | None = None


class FileService(Protocol):
    def create_preview(self, file: AttachmentFile) -> Preview: ...

    def revoke_preview(self, preview: Preview) -> None: ...

    def is_image_file(self, file: AttachmentFile) -> bool: ...

    def validate_files(self, files: list[AttachmentFile]) -> ValidationResult: ...


def encode_data_url(media_type: str, data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


class LocalFileService:
    """In-process file service keeping previews as data URLs."""

    def __init__(
        self,
        *,
        max_file_bytes: int = 10 * 1024 * 1024,  # 10 MB
        allowed_media_types: tuple[str, ...] = (),
    ) -> None:
        self.max_file_bytes = max_file_bytes
        self.allowed_media_types = allowed_media_types
        self._previews: dict[str, str] = {}

    @property
    def active_previews(self) -> int:
        return len(self._previews)

    def create_preview(self, file: AttachmentFile) -> Preview:
        preview_url = f"{PREVIEW_SCHEME}{uuid4().hex}"
        self._previews[preview_url] = encode_data_url(file.media_type, file.data)
        return Preview(preview_url=preview_url)

    def resolve_preview(self, preview: Preview) -> str | None:
        return self._previews.get(preview.preview_url)

    def revoke_preview(self, preview: Preview) -> None:
        if self._previews.pop(preview.preview_url, None) is None:
            LOGGER.warning(
                "attachments.preview.unknown",
                extra={
                    "event": "attachments.preview.unknown",
                    "preview_url": preview.preview_url,
                },
            )

    @staticmethod
    def is_image_file(file: AttachmentFile) -> bool:
        return file.media_type.lower().startswith("image/")

    def _check(self, file: AttachmentFile) -> str | None:
        if not file.data:
            return f"{file.name} is empty"
        if self.allowed_media_types and not any(
            file.media_type.startswith(prefix) for prefix in self.allowed_media_types
        ):
            return f"{file.name} has an unsupported type ({file.media_type})"
        if file.size > self.max_file_bytes:
            max_mb = self.max_file_bytes / (1024 * 1024)
            return f"{file.name} is too large (max {max_mb:.1f}MB)"
        return None

    def validate_files(self, files: list[AttachmentFile]) -> ValidationResult:
        """Split ``files`` into accepted files and a combined warning."""
        valid: list[AttachmentFile] = []
        problems: list[str] = []
        for file in files:
            problem = self._check(file)
            if problem is None:
                valid.append(file)
            else:
                problems.append(problem)
        return ValidationResult(
            valid=valid, error="; ".join(problems) if problems else None
        )


@dataclass
class StagedAttachment:
    file: AttachmentFile
    preview: Preview


class AttachmentManager:
    """Own the staged, unsent attachments and their preview resources."""

    def __init__(self, file_service: FileService) -> None:
        self.file_service = file_service
        self._staged: list[StagedAttachment] = []
        self._outgoing: list[StagedAttachment] = []

    @property
    def staged(self) -> list[AttachmentFile]:
        return [item.file for item in self._staged]

    def __len__(self) -> int:
        return len(self._staged)

    def has_images(self) -> bool:
        return any(self.file_service.is_image_file(item.file) for item in self._staged)

    def stage(self, files: list[AttachmentFile]) -> str | None:
        """Stage the valid files; return the warning for rejected ones, if any."""
        result = self.file_service.validate_files(list(files))
        for file in result.valid:
            preview = self.file_service.create_preview(file)
            self._staged.append(StagedAttachment(file=file, preview=preview))
        if result.error:
            LOGGER.warning(
                "attachments.rejected",
                extra={"event": "attachments.rejected", "reason": result.error},
            )
        return result.error

    def remove(self, index: int) -> AttachmentFile:
        item = self._staged.pop(index)
        self.file_service.revoke_preview(item.preview)
        return item.file

    def discard_all(self) -> int:
        """Release every staged preview and return how many were dropped."""
        self.release_sent()
        staged, self._staged = self._staged, []
        for item in staged:
            self.file_service.revoke_preview(item.preview)
        if staged:
            LOGGER.info(
                "attachments.discarded",
                extra={"event": "attachments.discarded", "count": len(staged)},
            )
        return len(staged)

    def take_for_send(self) -> list[FilePart]:
        """Move the staged files into the outgoing request as data-encoded parts.

        Their previews stay alive until ``release_sent``; ``restore_unsent``
        stages them again when the send is rejected.
        """
        self.release_sent()
        self._outgoing, self._staged = self._staged, []
        return [
            FilePart(
                media_type=item.file.media_type,
                url=encode_data_url(item.file.media_type, item.file.data),
                filename=item.file.name,
            )
            for item in self._outgoing
        ]

    def release_sent(self) -> None:
        outgoing, self._outgoing = self._outgoing, []
        for item in outgoing:
            self.file_service.revoke_preview(item.preview)

    def restore_unsent(self) -> None:
        if self._outgoing:
            LOGGER.info(
                "attachments.restored",
                extra={"event": "attachments.restored", "count": len(self._outgoing)},
            )
        self._staged[:0] = self._outgoing
        self._outgoing = []
