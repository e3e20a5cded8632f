"""Upload validation, file store abstraction and local filesystem implementation."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol

from slugify import slugify

from invoice_flow.errors import FileTooLargeError, InvalidFileFormatError, NotFoundError

if TYPE_CHECKING:
    from collections.abc import Callable

    from invoice_flow.models import UploadedFile

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024

# image/jpg is not a registered type but some clients send it
MIME_EXTENSIONS = {
    "application/pdf": ".pdf",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
}
ALLOWED_EXTENSIONS = frozenset({".pdf", ".png", ".jpg", ".jpeg"})


def validate_upload(upload: UploadedFile) -> None:
    """Reject unsupported MIME types and files over the size limit."""
    if upload.mime_type not in MIME_EXTENSIONS:
        msg = (
            f"Unsupported file type {upload.mime_type!r}; "
            "only PDF, PNG and JPEG files are allowed"
        )
        raise InvalidFileFormatError(msg)

    if upload.size > MAX_FILE_SIZE_BYTES:
        msg = f"File size {upload.size} exceeds the {MAX_FILE_SIZE_BYTES} byte limit"
        raise FileTooLargeError(msg)

    logger.debug("File validation passed: %s (%d bytes)", upload.filename, upload.size)


class FileStore(Protocol):
    """Protocol for invoice document storage backends."""

    def save(self, filename: str, data: bytes, mime_type: str | None = None) -> str: ...

    def get_path(self, relative_path: str) -> Path: ...

    def exists(self, relative_path: str) -> bool: ...


class LocalFileStore:
    """Local filesystem implementation of FileStore.

    Directory layout: {root}/{YYYY}/{MM}/{timestamp_ms}-{slug}{ext}

    Saved files are never overwritten; a numeric suffix is appended when a
    name is already taken.
    """

    def __init__(
        self, root: Path, clock: Callable[[], datetime] | None = None
    ) -> None:
        self.root = root
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def save(self, filename: str, data: bytes, mime_type: str | None = None) -> str:
        """Save the document and return the relative path from store root."""
        now = self._clock()
        stem, ext = self._split_name(filename, mime_type)
        dir_path = self.root / str(now.year) / f"{now.month:02d}"
        dir_path.mkdir(parents=True, exist_ok=True)

        prefix = f"{int(now.timestamp() * 1000)}-{stem}"
        file_path = dir_path / f"{prefix}{ext}"

        counter = 1
        while file_path.exists():
            counter += 1
            file_path = dir_path / f"{prefix}_{counter}{ext}"

        # "xb" fails instead of truncating if another writer got here first
        with file_path.open("xb") as fh:
            fh.write(data)

        relative = file_path.relative_to(self.root).as_posix()
        logger.info("File saved: %s", relative)
        return relative

    def get_path(self, relative_path: str) -> Path:
        """Return the absolute path for a relative store path.

        Raises NotFoundError for paths that would resolve outside the root.
        """
        pure = PurePosixPath(relative_path)
        if pure.is_absolute() or ".." in pure.parts:
            msg = f"Invalid file path: {relative_path}"
            raise NotFoundError(msg)

        root = self.root.resolve()
        path = (root / pure).resolve()
        if not path.is_relative_to(root):
            msg = f"Invalid file path: {relative_path}"
            raise NotFoundError(msg)
        return path

    def exists(self, relative_path: str) -> bool:
        """Check whether a file exists in the store."""
        try:
            return self.get_path(relative_path).is_file()
        except NotFoundError:
            return False

    @staticmethod
    def _split_name(filename: str, mime_type: str | None) -> tuple[str, str]:
        """Return a filesystem-safe stem (max 50 chars) and a known extension."""
        name = PurePosixPath(filename.replace("\\", "/")).name
        suffix = PurePosixPath(name).suffix.lower()
        stem = name[: -len(suffix)] if suffix else name

        if suffix not in ALLOWED_EXTENSIONS:
            suffix = MIME_EXTENSIONS.get(mime_type or "", ".bin")

        slug = str(slugify(stem, max_length=50)) or "invoice"
        return slug, suffix
