from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .artifacts import BLOB_PREFIX
from .backend import BackendClient, BackendError
from .models import CustomizationInput, ItemType, LayoutAnswer, PhotoAnswer, RuleType
from .session import CustomizationSession

REMOTE_FAILURE_MESSAGE = "Erro ao validar customizações"
REMOTE_URL_PREFIXES = ("http://", "https://")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RequiredValidationResult:
    valid: bool
    missing_titles: list[str] = field(default_factory=list)

    @property
    def message(self) -> str | None:
        if self.valid:
            return None
        if not self.missing_titles:
            return "Nenhuma customização carregada"
        return f"Campos obrigatórios não preenchidos: {', '.join(self.missing_titles)}"

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "missing_titles": self.missing_titles, "message": self.message}


@dataclass(slots=True)
class ImageValidationResult:
    valid: bool
    invalid_images: list[str] = field(default_factory=list)
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "invalid_images": self.invalid_images, "message": self.message}


@dataclass(slots=True)
class RemoteValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RemoteValidationResult:
        return cls(
            valid=bool(payload.get("valid", False)),
            errors=[str(error) for error in payload.get("errors") or []],
            warnings=[str(warning) for warning in payload.get("warnings") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


class ValidationEngine:
    """Required-rule completeness, checked locally and then by the backend."""

    def __init__(self, backend: BackendClient | None = None) -> None:
        self.backend = backend

    def validate_required(self, session: CustomizationSession) -> RequiredValidationResult:
        state = session.state
        if state is None:
            return RequiredValidationResult(valid=False)
        missing = [rule.title for rule in state.rules if rule.required and rule.id not in state.answers]
        return RequiredValidationResult(valid=not missing, missing_titles=missing)

    async def validate_images(self, session: CustomizationSession) -> ImageValidationResult:
        """Check that every uploaded image an answer points at still exists.

        Required dynamic layouts without an image are reported first. Local
        ``blob:`` previews are checked against the session's registry, remote
        URLs against the backend.
        """
        state = session.state
        if state is None:
            return ImageValidationResult(valid=True)
        missing: list[str] = []
        urls: list[str] = []
        for rule in state.rules:
            entry = state.answers.get(rule.id)
            data = entry.data if entry else None
            if isinstance(data, PhotoAnswer):
                urls.extend(data.preview_urls())
            elif rule.rule_type == RuleType.DYNAMIC_LAYOUT:
                if isinstance(data, LayoutAnswer) and data.preview_url:
                    urls.append(data.preview_url)
                elif rule.required:
                    missing.append(f"{rule.title} - Imagem obrigatória não foi enviada")
        if missing:
            return ImageValidationResult(
                valid=False,
                invalid_images=missing,
                message=f"{len(missing)} customização(ões) obrigatória(s) sem imagem:\n" + "\n".join(missing),
            )

        checked = [url for url in urls if url.startswith(BLOB_PREFIX) or url.startswith(REMOTE_URL_PREFIXES)]
        exists = await asyncio.gather(*(self._image_exists(session, url) for url in checked))
        invalid = [url for url, present in zip(checked, exists) if not present]
        if invalid:
            logger.info("images_missing", extra={"item_id": state.item_id, "count": len(invalid)})
            return ImageValidationResult(
                valid=False,
                invalid_images=invalid,
                message=(
                    f"{len(invalid)} imagem(ns) expirou(aram) ou foi(foram) deletada(s). "
                    "Por favor, faça upload novamente."
                ),
            )
        return ImageValidationResult(valid=True)

    async def _image_exists(self, session: CustomizationSession, url: str) -> bool:
        if url.startswith(BLOB_PREFIX):
            return session.previews.resolve(url) is not None
        if self.backend is None:
            return True
        return await self.backend.image_exists(url)

    async def validate_remote(
        self,
        item_type: ItemType | str,
        item_id: str,
        inputs: Iterable[CustomizationInput],
    ) -> RemoteValidationResult:
        if self.backend is None:
            return RemoteValidationResult(valid=True)
        try:
            payload = await self.backend.validate_customizations(ItemType(item_type), str(item_id), list(inputs))
        except BackendError:
            logger.warning(
                "remote_validation_failed",
                extra={"item_type": ItemType(item_type).value, "item_id": str(item_id)},
                exc_info=True,
            )
            return RemoteValidationResult(valid=False, errors=[REMOTE_FAILURE_MESSAGE])
        return RemoteValidationResult.from_payload(payload)

    async def validate(self, session: CustomizationSession) -> RemoteValidationResult:
        """Local completeness, then image availability, then the backend.

        The backend is only asked once the local checks pass, and its answer
        is final.
        """
        local = self.validate_required(session)
        if not local.valid:
            return RemoteValidationResult(valid=False, errors=[local.message or REMOTE_FAILURE_MESSAGE])
        images = await self.validate_images(session)
        if not images.valid:
            return RemoteValidationResult(valid=False, errors=[images.message or REMOTE_FAILURE_MESSAGE])
        state = session.require_state()
        return await self.validate_remote(state.item_type, state.item_id, session.build_inputs())
