from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterable

from .artifacts import ArtifactSerializer, PreviewUrlRegistry, UploadedFile, reindex
from .constraints import ConstraintType, ItemConstraint
from .models import (
    ZERO,
    Answer,
    ArtworkAsset,
    CustomizationInput,
    CustomizationRule,
    CustomizationSessionState,
    ItemType,
    LayoutAnswer,
    OptionAnswer,
    PhotoAnswer,
    RuleType,
    parse_answer,
)

logger = logging.getLogger(__name__)


class SessionNotInitializedError(RuntimeError):
    """Raised when a session is mutated before ``initialize``."""


class UnknownRuleError(ValueError):
    """Raised when an answer targets a rule outside the session catalog."""


class AnswerTypeError(ValueError):
    """Raised when an answer does not match its rule's kind."""


class RuleBusyError(RuntimeError):
    """Raised when async work is already pending for a rule."""


class IncompleteConfigurationError(ValueError):
    """Raised when an order payload is requested without any answers."""


@dataclass(slots=True)
class OptionSelectionResult:
    applied: bool
    reason: str | None = None
    deselected: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "reason": self.reason,
            "deselected": self.deselected,
            "notices": self.notices,
        }


@dataclass(slots=True)
class SaveOrderItemCustomizationPayload:
    customization_rule_id: str | None
    customization_type: RuleType
    title: str
    selected_layout_id: str | None
    data: dict[str, Any]
    final_artwork: ArtworkAsset | None = None
    final_artworks: list[ArtworkAsset] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "customizationRuleId": self.customization_rule_id,
            "customizationType": self.customization_type.value,
            "title": self.title,
            "selectedLayoutId": self.selected_layout_id,
            "data": self.data,
        }
        if self.final_artwork is not None:
            payload["finalArtwork"] = self.final_artwork.to_dict()
        if self.final_artworks:
            payload["finalArtworks"] = [asset.to_dict() for asset in self.final_artworks]
        return payload


class CustomizationSession:
    """Working memory for configuring one item instance.

    One object per wizard; the owning flow passes it around explicitly. Every
    preview URL referenced by an answer is owned by the session and revoked
    when that answer is replaced, removed or cleared.
    """

    def __init__(self, previews: PreviewUrlRegistry | None = None) -> None:
        self.previews = previews or PreviewUrlRegistry()
        self.serializer = ArtifactSerializer(self.previews)
        self.state: CustomizationSessionState | None = None
        self.generation = 0
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    @property
    def is_active(self) -> bool:
        return self.state is not None

    def initialize(
        self,
        item_type: ItemType | str,
        item_id: str,
        rule_catalog: list[CustomizationRule],
    ) -> CustomizationSessionState:
        if self.state is not None:
            self.clear()
        self.generation += 1
        self.state = CustomizationSessionState(
            item_type=ItemType(item_type),
            item_id=str(item_id),
            rules=list(rule_catalog),
        )
        logger.info(
            "session_initialized",
            extra={"item_type": self.state.item_type.value, "item_id": self.state.item_id, "rules": len(rule_catalog)},
        )
        return self.state

    def clear(self) -> None:
        self.generation += 1
        self._cancel_in_flight()
        if self.state is None:
            return
        released = 0
        for answer in self.state.answers.values():
            released += self.previews.revoke_answer(answer.data)
        logger.info(
            "session_cleared",
            extra={"item_id": self.state.item_id, "answers": len(self.state.answers), "previews_released": released},
        )
        self.state = None

    def get(self, rule_id: str) -> CustomizationInput | None:
        if self.state is None:
            return None
        return self.state.answers.get(rule_id)

    def update(
        self,
        rule_id: str,
        data: Answer,
        selected_layout_id: str | None = None,
    ) -> CustomizationInput:
        state = self.require_state()
        rule = self._require_rule(rule_id)
        if data.kind != rule.kind:
            raise AnswerTypeError(f"rule {rule_id} expects a {rule.kind} answer, got {data.kind}")
        previous = state.answers.get(rule_id)
        entry = CustomizationInput(
            rule_id=rule_id,
            customization_type=rule.rule_type,
            data=data,
            selected_layout_id=selected_layout_id,
        )
        state.answers[rule_id] = entry
        if previous is not None:
            kept = set(data.preview_urls())
            self.previews.revoke_all(url for url in previous.data.preview_urls() if url not in kept)
        return entry

    def update_from_payload(
        self,
        rule_id: str,
        payload: dict[str, Any],
        selected_layout_id: str | None = None,
    ) -> CustomizationInput:
        rule = self._require_rule(rule_id)
        return self.update(rule_id, parse_answer(rule.rule_type, payload), selected_layout_id)

    def remove(self, rule_id: str) -> None:
        if self.state is None:
            return
        previous = self.state.answers.pop(rule_id, None)
        if previous is not None:
            self.previews.revoke_answer(previous.data)

    def set_final_artwork(self, artwork: ArtworkAsset) -> None:
        self.require_state().final_artwork = artwork

    def set_final_artworks(self, artworks: list[ArtworkAsset]) -> None:
        self.require_state().final_artworks = list(artworks)

    def build_inputs(self) -> list[CustomizationInput]:
        if self.state is None:
            return []
        return [self.state.answers[rule.id] for rule in self.state.rules if rule.id in self.state.answers]

    def selected_options(self) -> list[OptionAnswer]:
        return [entry.data for entry in self.build_inputs() if isinstance(entry.data, OptionAnswer)]

    async def run_async(
        self,
        rule_id: str,
        producer: Callable[[], Awaitable[Answer]],
        selected_layout_id: str | None = None,
    ) -> CustomizationInput | None:
        """Run ``producer`` and store its answer unless the session moved on.

        Only one producer may be pending per rule. ``clear`` and
        ``initialize`` cancel pending producers; a result that still arrives
        for an older generation is dropped and its previews released.
        """
        self._require_rule(rule_id)
        if rule_id in self._in_flight:
            raise RuleBusyError(f"rule {rule_id} already has pending work")
        generation = self.generation
        task = asyncio.create_task(producer())
        self._in_flight[rule_id] = task
        try:
            data = await task
        except asyncio.CancelledError:
            if generation != self.generation:
                logger.info("async_work_cancelled", extra={"rule_id": rule_id})
                return None
            raise
        finally:
            if self._in_flight.get(rule_id) is task:
                del self._in_flight[rule_id]

        if generation != self.generation or self.state is None:
            owned = self._owned_urls()
            released = self.previews.revoke_all(url for url in data.preview_urls() if url not in owned)
            logger.info("stale_result_discarded", extra={"rule_id": rule_id, "previews_released": released})
            return None
        return self.update(rule_id, data, selected_layout_id)

    def is_pending(self, rule_id: str) -> bool:
        return rule_id in self._in_flight

    async def add_photos(self, rule_id: str, files: Iterable[UploadedFile]) -> CustomizationInput | None:
        rule = self._require_rule(rule_id)
        if rule.kind != "photo":
            raise AnswerTypeError(f"rule {rule_id} does not accept photos")
        uploads = list(files)

        async def produce() -> Answer:
            current = self.get(rule_id)
            existing = list(current.data.photos) if current and isinstance(current.data, PhotoAnswer) else []
            incoming = await self.serializer.to_photo_entries(uploads, start=len(existing))
            merged = self.serializer.merge_photos(existing, incoming, rule.max_items)
            adjustment = current.data.price_adjustment if current else ZERO
            return PhotoAnswer(photos=merged, price_adjustment=adjustment)

        return await self.run_async(rule_id, produce)

    def remove_photo(self, rule_id: str, position: int) -> CustomizationInput | None:
        current = self.get(rule_id)
        if current is None or not isinstance(current.data, PhotoAnswer):
            return None
        remaining = self.serializer.remove_photo(list(current.data.photos), position)
        if not remaining:
            self.remove(rule_id)
            return None
        return self.update(rule_id, PhotoAnswer(photos=remaining, price_adjustment=current.data.price_adjustment))

    def remove_invalid_images(self, invalid_urls: Iterable[str]) -> list[str]:
        """Drop photos and layout images whose URL is no longer usable.

        A photo answer left without photos is removed. Returns the ids of the
        rules that changed.
        """
        invalid = set(invalid_urls)
        if self.state is None or not invalid:
            return []
        changed: list[str] = []
        for rule_id, entry in list(self.state.answers.items()):
            data = entry.data
            if isinstance(data, PhotoAnswer):
                kept = [photo for photo in data.photos if photo.preview_url and photo.preview_url not in invalid]
                if len(kept) == len(data.photos):
                    continue
                changed.append(rule_id)
                if not kept:
                    self.remove(rule_id)
                    continue
                self.update(
                    rule_id,
                    PhotoAnswer(photos=reindex(kept), price_adjustment=data.price_adjustment),
                    entry.selected_layout_id,
                )
            elif isinstance(data, LayoutAnswer):
                images = [image for image in data.images if image.preview_url not in invalid]
                preview_url = None if data.preview_url in invalid else data.preview_url
                if len(images) == len(data.images) and preview_url == data.preview_url:
                    continue
                changed.append(rule_id)
                self.update(
                    rule_id,
                    replace(data, images=reindex(images), preview_url=preview_url),
                    entry.selected_layout_id,
                )
        if changed:
            logger.info("invalid_images_removed", extra={"rules": changed, "urls": len(invalid)})
        return changed

    def select_option(
        self,
        rule_id: str,
        option_id: str,
        constraints: Iterable[ItemConstraint] = (),
        other_selections: dict[str, list[OptionAnswer]] | None = None,
    ) -> OptionSelectionResult:
        """Select an option, honouring mutual exclusion between options.

        A conflict with an option chosen for another item blocks the
        selection. A conflict inside this session deselects the older answer.
        """
        state = self.require_state()
        rule = self._require_rule(rule_id)
        if rule.kind != "option":
            raise AnswerTypeError(f"rule {rule_id} is not an option rule")
        option = rule.option(option_id)
        if option is None:
            raise UnknownRuleError(f"option {option_id} is not available for rule {rule_id}")

        exclusive = [
            constraint
            for constraint in constraints
            if constraint.constraint_type == ConstraintType.MUTUALLY_EXCLUSIVE
            and option_id in (constraint.target.item_id, constraint.related.item_id)
        ]

        for constraint in exclusive:
            conflicting_id = (
                constraint.related.item_id if constraint.target.item_id == option_id else constraint.target.item_id
            )
            for other_item_id, selections in (other_selections or {}).items():
                if other_item_id == state.item_id:
                    continue
                for selection in selections:
                    if selection.option_id != conflicting_id:
                        continue
                    reason = constraint.message or (
                        f'Não é possível selecionar "{option.label}" pois "{selection.label}" '
                        "já está selecionado em outro componente."
                    )
                    logger.info(
                        "option_selection_blocked",
                        extra={"rule_id": rule_id, "option_id": option_id, "conflicting": conflicting_id},
                    )
                    return OptionSelectionResult(applied=False, reason=reason)

        result = OptionSelectionResult(applied=True)
        for constraint in exclusive:
            conflicting_id = (
                constraint.related.item_id if constraint.target.item_id == option_id else constraint.target.item_id
            )
            for other_rule_id, entry in list(state.answers.items()):
                if other_rule_id == rule_id or not isinstance(entry.data, OptionAnswer):
                    continue
                if entry.data.option_id != conflicting_id:
                    continue
                self.remove(other_rule_id)
                result.deselected.append(other_rule_id)
                result.notices.append(
                    constraint.message
                    or f'"{entry.data.label}" foi desmarcado pois não é compatível com "{option.label}"'
                )

        self.update(rule_id, OptionAnswer(option_id=option.id, label=option.label, price_adjustment=option.price_adjustment))
        return result

    def build_order_payload(self, title: str) -> SaveOrderItemCustomizationPayload:
        state = self.require_state()
        inputs = self.build_inputs()
        if not inputs:
            raise IncompleteConfigurationError("no customization defined")
        primary = inputs[0]
        data: dict[str, Any] = {}
        for entry in inputs:
            data.update(entry.data.to_dict())
        return SaveOrderItemCustomizationPayload(
            customization_rule_id=primary.rule_id,
            customization_type=primary.customization_type,
            title=title,
            selected_layout_id=primary.selected_layout_id,
            data=data,
            final_artwork=state.final_artwork,
            final_artworks=state.final_artworks or None,
        )

    def snapshot(self) -> dict[str, Any]:
        state = self.require_state()
        return {
            "itemType": state.item_type.value,
            "itemId": state.item_id,
            "customizations": [entry.to_dict() for entry in self.build_inputs()],
            "finalArtwork": state.final_artwork.to_dict() if state.final_artwork else None,
            "finalArtworks": [asset.to_dict() for asset in state.final_artworks or []],
        }

    def _owned_urls(self) -> set[str]:
        if self.state is None:
            return set()
        return {url for entry in self.state.answers.values() for url in entry.data.preview_urls()}

    def _cancel_in_flight(self) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        for task in self._in_flight.values():
            loop = task.get_loop()
            if loop is running:
                task.cancel()
            elif not loop.is_closed():
                # the task belongs to another request's loop, running in another thread
                loop.call_soon_threadsafe(task.cancel)
        self._in_flight = {}

    def require_state(self) -> CustomizationSessionState:
        if self.state is None:
            raise SessionNotInitializedError("customization session is not initialized")
        return self.state

    def _require_rule(self, rule_id: str) -> CustomizationRule:
        rule = self.require_state().rule(rule_id)
        if rule is None:
            raise UnknownRuleError(f"rule {rule_id} is not part of this catalog")
        return rule


@dataclass(slots=True)
class _RegisteredSession:
    session: CustomizationSession
    owner: str | None
    last_seen: float


class SessionRegistry:
    """Live sessions of a service, keyed by an opaque token.

    A flow may pass an ``owner`` (a cart or client id); opening a new session
    for the same owner clears the one it replaces. Sessions idle for longer
    than ``idle_ttl_seconds`` are cleared and dropped on the next access.
    """

    def __init__(self, idle_ttl_seconds: float = 1800.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.idle_ttl_seconds = idle_ttl_seconds
        self.clock = clock
        self._entries: dict[str, _RegisteredSession] = {}
        self._owners: dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def open(self, session: CustomizationSession, owner: str | None = None) -> str:
        self.evict_idle()
        session_id = uuid.uuid4().hex
        with self._lock:
            replaced = self._pop(self._owners[owner]) if owner and owner in self._owners else None
            self._entries[session_id] = _RegisteredSession(session, owner, self.clock())
            if owner:
                self._owners[owner] = session_id
        if replaced is not None:
            replaced.clear()
            logger.info("session_replaced", extra={"owner": owner, "session_id": session_id})
        return session_id

    def get(self, session_id: str) -> CustomizationSession | None:
        self.evict_idle()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            entry.last_seen = self.clock()
            return entry.session

    def close(self, session_id: str) -> bool:
        with self._lock:
            session = self._pop(session_id)
        if session is None:
            return False
        session.clear()
        return True

    def evict_idle(self) -> int:
        cutoff = self.clock() - self.idle_ttl_seconds
        with self._lock:
            expired = [session_id for session_id, entry in self._entries.items() if entry.last_seen <= cutoff]
            sessions = [self._pop(session_id) for session_id in expired]
        for session in sessions:
            if session is not None:
                session.clear()
        if expired:
            logger.info("sessions_evicted", extra={"count": len(expired)})
        return len(expired)

    def _pop(self, session_id: str) -> CustomizationSession | None:
        entry = self._entries.pop(session_id, None)
        if entry is None:
            return None
        if entry.owner and self._owners.get(entry.owner) == session_id:
            del self._owners[entry.owner]
        return entry.session
