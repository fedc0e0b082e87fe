from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

from .cart import Cart
from .db import connect, json_dumps
from .models import CustomizationInput, CustomizationRule, ItemType
from .session import CustomizationSession

DEFAULT_TTL_HOURS = 24.0
DEFAULT_MAX_DRAFTS = 5
DATA_URL_PREFIX = "data:"

logger = logging.getLogger(__name__)


def draft_key(item_type: ItemType | str, item_id: str) -> str:
    return f"customizations_data_{ItemType(item_type).value.lower()}_{item_id}"


def strip_binary(value: Any) -> Any:
    """Drop inline ``data:`` payloads, keeping preview urls and metadata."""
    if isinstance(value, dict):
        return {key: strip_binary(item) for key, item in value.items()}
    if isinstance(value, list):
        return [strip_binary(item) for item in value]
    if isinstance(value, str) and value.startswith(DATA_URL_PREFIX):
        return None
    return value


class DraftStore:
    """Local key-value store for unfinished customization sessions."""

    def __init__(
        self,
        db_path: str | Path,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        max_drafts: int = DEFAULT_MAX_DRAFTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.ttl_seconds = ttl_hours * 3600
        self.max_drafts = max_drafts
        self.clock = clock

    def save(self, session: CustomizationSession, key: str | None = None) -> str:
        snapshot = session.snapshot()
        key = key or draft_key(snapshot["itemType"], snapshot["itemId"])
        now = self.clock()
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO customization_drafts(draft_key, item_type, item_id, state, saved_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(draft_key) DO UPDATE SET
                        item_type = excluded.item_type,
                        item_id = excluded.item_id,
                        state = excluded.state,
                        saved_at = excluded.saved_at,
                        expires_at = excluded.expires_at
                    """,
                    (
                        key,
                        snapshot["itemType"],
                        snapshot["itemId"],
                        json_dumps(strip_binary(snapshot)),
                        now,
                        now + self.ttl_seconds,
                    ),
                )
        finally:
            conn.close()
        logger.info("draft_saved", extra={"draft_key": key, "answers": len(snapshot["customizations"])})
        self.prune(self.max_drafts)
        return key

    def load(self, key: str) -> dict[str, Any] | None:
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT state, expires_at FROM customization_drafts WHERE draft_key = ?",
                (key,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        if row["expires_at"] <= self.clock():
            self.delete(key)
            logger.info("draft_expired", extra={"draft_key": key})
            return None
        return json.loads(row["state"])

    def restore(
        self,
        session: CustomizationSession,
        key: str,
        rule_catalog: list[CustomizationRule],
    ) -> bool:
        """Re-open ``session`` from a stored draft.

        Answers for rules that are no longer in ``rule_catalog`` are skipped.
        Preview URLs are copied into the session, so clearing the session the
        draft was saved from leaves them usable.
        """
        state = self.load(key)
        if state is None:
            return False
        session.initialize(state["itemType"], state["itemId"], rule_catalog)
        for payload in state.get("customizations") or []:
            try:
                entry = CustomizationInput.from_payload(payload)
            except ValueError:
                logger.warning("draft_answer_skipped", extra={"draft_key": key, "rule_id": payload.get("ruleId")})
                continue
            data = session.serializer.copy_previews(entry.data)
            try:
                session.update(entry.rule_id, data, entry.selected_layout_id)
            except ValueError:
                session.previews.revoke_answer(data)
                logger.warning("draft_answer_skipped", extra={"draft_key": key, "rule_id": payload.get("ruleId")})
        logger.info("draft_restored", extra={"draft_key": key})
        return True

    def delete(self, key: str) -> bool:
        conn = connect(self.db_path)
        try:
            with conn:
                cursor = conn.execute("DELETE FROM customization_drafts WHERE draft_key = ?", (key,))
        finally:
            conn.close()
        return cursor.rowcount > 0

    def list_drafts(self) -> list[dict[str, Any]]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT draft_key, item_type, item_id, saved_at, expires_at
                FROM customization_drafts
                WHERE expires_at > ?
                ORDER BY saved_at DESC
                """,
                (self.clock(),),
            ).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    def cleanup_expired(self) -> int:
        conn = connect(self.db_path)
        try:
            with conn:
                cursor = conn.execute("DELETE FROM customization_drafts WHERE expires_at <= ?", (self.clock(),))
        finally:
            conn.close()
        if cursor.rowcount:
            logger.info("drafts_expired", extra={"deleted": cursor.rowcount})
        return cursor.rowcount

    def prune(self, keep: int = DEFAULT_MAX_DRAFTS) -> int:
        conn = connect(self.db_path)
        try:
            with conn:
                cursor = conn.execute(
                    """
                    DELETE FROM customization_drafts
                    WHERE draft_key NOT IN (
                        SELECT draft_key FROM customization_drafts
                        ORDER BY saved_at DESC, draft_key
                        LIMIT ?
                    )
                    """,
                    (max(keep, 0),),
                )
        finally:
            conn.close()
        if cursor.rowcount:
            logger.info("drafts_pruned", extra={"deleted": cursor.rowcount, "kept": keep})
        return cursor.rowcount


class CartStore:
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = db_path

    def load(self, cart_id: str) -> Cart:
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT state FROM carts WHERE cart_id = ?", (cart_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return Cart(cart_id=cart_id)
        return Cart.from_dict(json.loads(row["state"]))

    def save(self, cart: Cart) -> None:
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO carts(cart_id, state) VALUES (?, ?)
                    ON CONFLICT(cart_id) DO UPDATE SET
                        state = excluded.state,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (cart.cart_id, json_dumps(cart.to_dict())),
                )
        finally:
            conn.close()

    def delete(self, cart_id: str) -> None:
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute("DELETE FROM carts WHERE cart_id = ?", (cart_id,))
        finally:
            conn.close()
