from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .models import Answer, ArtworkAsset, LayoutAnswer, PhotoAnswer, PhotoEntry

BLOB_PREFIX = "blob:"
DEFAULT_MIME_TYPE = "application/octet-stream"

logger = logging.getLogger(__name__)


class ArtifactError(ValueError):
    """Raised when an uploaded file cannot be read or converted."""


@dataclass(slots=True)
class UploadedFile:
    """A raw upload, either already in memory or still on disk."""

    file_name: str
    mime_type: str
    source: bytes | Path

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> UploadedFile:
        resolved = Path(path)
        guessed = mime_type or mimetypes.guess_type(resolved.name)[0] or DEFAULT_MIME_TYPE
        return cls(file_name=resolved.name, mime_type=guessed, source=resolved)

    def read(self) -> bytes:
        if isinstance(self.source, bytes):
            return self.source
        return self.source.read_bytes()


class PreviewUrlRegistry:
    """Issues ephemeral ``blob:`` URLs and tracks who still holds them.

    Every URL handed out must be revoked by its owner; ``active_count`` is how
    leaks show up.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[bytes, str]] = {}
        self.revocations = 0

    def create(self, content: bytes, mime_type: str) -> str:
        url = f"{BLOB_PREFIX}{uuid.uuid4()}"
        self._entries[url] = (content, mime_type)
        return url

    def resolve(self, url: str) -> tuple[bytes, str] | None:
        return self._entries.get(url)

    def copy(self, url: str | None) -> str | None:
        """Issue a new URL over the same content, owned by the caller.

        Non-``blob:`` URLs are returned unchanged; a ``blob:`` URL that is no
        longer registered yields ``None``.
        """
        if not url or not url.startswith(BLOB_PREFIX):
            return url
        resolved = self._entries.get(url)
        if resolved is None:
            return None
        return self.create(*resolved)

    def revoke(self, url: str | None) -> bool:
        if not url or not url.startswith(BLOB_PREFIX):
            return False
        if self._entries.pop(url, None) is None:
            return False
        self.revocations += 1
        logger.debug("preview_revoked", extra={"url": url})
        return True

    def revoke_all(self, urls: Iterable[str | None]) -> int:
        return sum(1 for url in urls if self.revoke(url))

    def revoke_answer(self, answer: Answer | None) -> int:
        if answer is None:
            return 0
        return self.revoke_all(answer.preview_urls())

    @property
    def active_count(self) -> int:
        return len(self._entries)


def to_data_url(content: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def reindex(photos: list[PhotoEntry]) -> list[PhotoEntry]:
    for index, photo in enumerate(photos):
        photo.position = index
    return photos


class ArtifactSerializer:
    def __init__(self, previews: PreviewUrlRegistry) -> None:
        self.previews = previews

    async def to_artifact(self, file: UploadedFile) -> ArtworkAsset:
        content = await self._read(file)
        return ArtworkAsset(
            base64_data=to_data_url(content, file.mime_type),
            mime_type=file.mime_type,
            file_name=file.file_name,
            size=len(content),
        )

    def to_preview_url(self, file: UploadedFile) -> str:
        try:
            content = file.read()
        except OSError as exc:
            raise ArtifactError(f"could not read {file.file_name}: {exc}") from exc
        return self.previews.create(content, file.mime_type)

    async def to_photo_entry(self, file: UploadedFile, position: int) -> PhotoEntry:
        content = await self._read(file)
        return PhotoEntry(
            position=position,
            file_name=file.file_name,
            mime_type=file.mime_type,
            size=len(content),
            base64_data=to_data_url(content, file.mime_type),
            preview_url=self.previews.create(content, file.mime_type),
            temp_file_id=f"temp-{uuid.uuid4().hex}",
        )

    async def to_photo_entries(self, files: Iterable[UploadedFile], start: int = 0) -> list[PhotoEntry]:
        entries: list[PhotoEntry] = []
        try:
            for file in files:
                try:
                    entries.append(await self.to_photo_entry(file, start + len(entries)))
                except ArtifactError:
                    logger.warning("artifact_conversion_failed", extra={"file_name": file.file_name}, exc_info=True)
        except asyncio.CancelledError:
            self.previews.revoke_all(entry.preview_url for entry in entries)
            raise
        return entries

    def merge_photos(
        self,
        current: list[PhotoEntry],
        incoming: list[PhotoEntry],
        max_items: int | None,
    ) -> list[PhotoEntry]:
        """Append ``incoming`` to ``current``, clamped to ``max_items``.

        Overflow is dropped without error and its previews are released.
        """
        combined = [*current, *incoming]
        if max_items is not None and max_items >= 0 and len(combined) > max_items:
            kept, dropped = combined[:max_items], combined[max_items:]
            released = self.previews.revoke_all(photo.preview_url for photo in dropped)
            logger.info(
                "photo_overflow_dropped",
                extra={"max_items": max_items, "dropped": len(dropped), "released": released},
            )
            combined = kept
        return reindex(combined)

    def copy_previews(self, answer: Answer) -> Answer:
        """Give ``answer`` its own preview URLs so no other holder can revoke them."""
        if isinstance(answer, PhotoAnswer):
            for photo in answer.photos:
                photo.preview_url = self.previews.copy(photo.preview_url)
        elif isinstance(answer, LayoutAnswer):
            for image in answer.images:
                image.preview_url = self.previews.copy(image.preview_url)
            answer.preview_url = self.previews.copy(answer.preview_url)
        return answer

    def remove_photo(self, photos: list[PhotoEntry], position: int) -> list[PhotoEntry]:
        remaining: list[PhotoEntry] = []
        for photo in photos:
            if photo.position == position:
                self.previews.revoke(photo.preview_url)
                continue
            remaining.append(photo)
        return reindex(remaining)

    async def _read(self, file: UploadedFile) -> bytes:
        try:
            return await asyncio.to_thread(file.read)
        except OSError as exc:
            raise ArtifactError(f"could not read {file.file_name}: {exc}") from exc
