from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from .db import connect
from .models import ItemRef, ItemType

MIN_SEARCH_LENGTH = 2
SEARCH_LIMIT = 20

logger = logging.getLogger(__name__)


class ConstraintType(str, Enum):
    MUTUALLY_EXCLUSIVE = "MUTUALLY_EXCLUSIVE"
    REQUIRES = "REQUIRES"


class InvalidConstraintError(ValueError):
    """Raised when a constraint row is malformed or self-referencing."""


class DuplicateConstraintError(ValueError):
    """Raised when the same (target, type, related) triple already exists."""


class ConstraintNotFoundError(LookupError):
    """Raised when deleting a constraint id that is not stored."""


@dataclass(slots=True)
class ItemConstraint:
    id: str
    target: ItemRef
    constraint_type: ConstraintType
    related: ItemRef
    message: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ItemConstraint:
        try:
            target = ItemRef(
                ItemType(str(payload["target_item_type"])),
                str(payload["target_item_id"]),
                payload.get("target_item_name"),
            )
            related = ItemRef(
                ItemType(str(payload["related_item_type"])),
                str(payload["related_item_id"]),
                payload.get("related_item_name"),
            )
            constraint_type = ConstraintType(str(payload["constraint_type"]))
        except (KeyError, ValueError) as exc:
            raise InvalidConstraintError(f"invalid constraint payload: {exc}") from exc
        message = payload.get("message")
        return cls(
            id=str(payload.get("id") or ""),
            target=target,
            constraint_type=constraint_type,
            related=related,
            message=str(message).strip() or None if message is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_item_id": self.target.item_id,
            "target_item_type": self.target.item_type.value,
            "target_item_name": self.target.name,
            "constraint_type": self.constraint_type.value,
            "related_item_id": self.related.item_id,
            "related_item_type": self.related.item_type.value,
            "related_item_name": self.related.name,
            "message": self.message,
        }

    def other_side(self, item: ItemRef) -> ItemRef | None:
        if self.target == item:
            return self.related
        if self.related == item:
            return self.target
        return None


@dataclass(slots=True)
class AdmissionResult:
    allowed: bool
    reason: str | None = None
    constraint_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "constraint_id": self.constraint_id}


def exclusion_message(candidate: ItemRef, other: ItemRef) -> str:
    return f"{candidate.label} não pode ser combinado com {other.label}"


def requirement_message(candidate: ItemRef, required: ItemRef) -> str:
    return f"{candidate.label} requer {required.label}"


def _label_from(constraint: ItemConstraint, item: ItemRef) -> ItemRef:
    # Constraint rows carry display names; cart items often do not.
    if item.name:
        return item
    if constraint.target == item and constraint.target.name:
        return constraint.target
    if constraint.related == item and constraint.related.name:
        return constraint.related
    return item


class ConstraintResolver:
    """Admission checks over the constraint graph of the current cart.

    Rows are stored directionally; mutual exclusion is evaluated from both
    ends, requirements only from the target. The resolver never mutates the
    cart and never inserts dependencies on its own.
    """

    def __init__(self, constraints: Iterable[ItemConstraint]) -> None:
        self.constraints = list(constraints)

    def relevant_to(self, candidate: ItemRef) -> list[ItemConstraint]:
        return [
            constraint
            for constraint in self.constraints
            if constraint.target == candidate
            or (
                constraint.constraint_type == ConstraintType.MUTUALLY_EXCLUSIVE
                and constraint.related == candidate
            )
        ]

    def can_add(self, candidate: ItemRef, current_items: Iterable[ItemRef]) -> AdmissionResult:
        present = set(current_items)
        relevant = self.relevant_to(candidate)

        for constraint in relevant:
            if constraint.constraint_type != ConstraintType.MUTUALLY_EXCLUSIVE:
                continue
            other = constraint.other_side(candidate)
            if other is None or other not in present:
                continue
            reason = constraint.message or exclusion_message(
                _label_from(constraint, candidate), _label_from(constraint, other)
            )
            logger.info(
                "constraint_rejected",
                extra={
                    "constraint_id": constraint.id,
                    "constraint_type": constraint.constraint_type.value,
                    "candidate": candidate.item_id,
                    "conflicting": other.item_id,
                },
            )
            return AdmissionResult(allowed=False, reason=reason, constraint_id=constraint.id)

        for constraint in relevant:
            if constraint.constraint_type != ConstraintType.REQUIRES or constraint.target != candidate:
                continue
            if constraint.related in present:
                continue
            reason = constraint.message or requirement_message(
                _label_from(constraint, candidate), _label_from(constraint, constraint.related)
            )
            logger.info(
                "constraint_rejected",
                extra={
                    "constraint_id": constraint.id,
                    "constraint_type": constraint.constraint_type.value,
                    "candidate": candidate.item_id,
                    "missing": constraint.related.item_id,
                },
            )
            return AdmissionResult(allowed=False, reason=reason, constraint_id=constraint.id)

        return AdmissionResult(allowed=True)

    def can_add_all(self, candidates: list[ItemRef], current_items: Iterable[ItemRef]) -> AdmissionResult:
        """Admit a group of items that enter the cart together.

        Each candidate is checked against the cart plus the other members of
        the group, so a line may satisfy its own requirements.
        """
        present = list(current_items)
        for index, candidate in enumerate(candidates):
            companions = [item for position, item in enumerate(candidates) if position != index]
            result = self.can_add(candidate, [*present, *companions])
            if not result.allowed:
                return result
        return AdmissionResult(allowed=True)

    def unsatisfied_requirements(self, current_items: Iterable[ItemRef]) -> list[ItemConstraint]:
        """REQUIRES rows whose target is present but whose dependency is not.

        Removal is not cascaded; callers use this to warn about a cart left
        inconsistent by an earlier removal.
        """
        present = set(current_items)
        return [
            constraint
            for constraint in self.constraints
            if constraint.constraint_type == ConstraintType.REQUIRES
            and constraint.target in present
            and constraint.related not in present
        ]


def _row_to_constraint(row: sqlite3.Row) -> ItemConstraint:
    return ItemConstraint(
        id=row["id"],
        target=ItemRef(ItemType(row["target_item_type"]), row["target_item_id"], row["target_item_name"]),
        constraint_type=ConstraintType(row["constraint_type"]),
        related=ItemRef(ItemType(row["related_item_type"]), row["related_item_id"], row["related_item_name"]),
        message=row["message"],
    )


CONSTRAINT_SELECT = """
SELECT
    c.id,
    c.target_item_id,
    c.target_item_type,
    t.name AS target_item_name,
    c.constraint_type,
    c.related_item_id,
    c.related_item_type,
    r.name AS related_item_name,
    c.message
FROM item_constraints c
LEFT JOIN catalog_items t ON t.item_type = c.target_item_type AND t.item_id = c.target_item_id
LEFT JOIN catalog_items r ON r.item_type = c.related_item_type AND r.item_id = c.related_item_id
"""


class ConstraintRepository:
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = db_path

    def create(self, constraint: ItemConstraint) -> ItemConstraint:
        if constraint.target.item_id == constraint.related.item_id:
            raise InvalidConstraintError("target and related items must differ")
        constraint_id = constraint.id or str(uuid.uuid4())
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO item_constraints(
                        id, target_item_id, target_item_type, constraint_type,
                        related_item_id, related_item_type, message
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        constraint_id,
                        constraint.target.item_id,
                        constraint.target.item_type.value,
                        constraint.constraint_type.value,
                        constraint.related.item_id,
                        constraint.related.item_type.value,
                        constraint.message,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateConstraintError("constraint already exists") from exc
        finally:
            conn.close()
        logger.info(
            "constraint_created",
            extra={"constraint_id": constraint_id, "constraint_type": constraint.constraint_type.value},
        )
        return self.get(constraint_id) or constraint

    def get(self, constraint_id: str) -> ItemConstraint | None:
        conn = connect(self.db_path)
        try:
            row = conn.execute(f"{CONSTRAINT_SELECT} WHERE c.id = ?", (constraint_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_constraint(row) if row else None

    def delete(self, constraint_id: str) -> None:
        conn = connect(self.db_path)
        try:
            with conn:
                cursor = conn.execute("DELETE FROM item_constraints WHERE id = ?", (constraint_id,))
        finally:
            conn.close()
        if cursor.rowcount == 0:
            raise ConstraintNotFoundError(constraint_id)
        logger.info("constraint_deleted", extra={"constraint_id": constraint_id})

    def list_all(self) -> list[ItemConstraint]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute(f"{CONSTRAINT_SELECT} ORDER BY c.created_at, c.id").fetchall()
        finally:
            conn.close()
        return [_row_to_constraint(row) for row in rows]

    def list_for_item(self, item: ItemRef) -> list[ItemConstraint]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                f"""
                {CONSTRAINT_SELECT}
                WHERE (c.target_item_type = ? AND c.target_item_id = ?)
                   OR (c.related_item_type = ? AND c.related_item_id = ?)
                ORDER BY c.created_at, c.id
                """,
                (item.item_type.value, item.item_id, item.item_type.value, item.item_id),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_constraint(row) for row in rows]

    def list_for_items(self, items: Iterable[ItemRef]) -> list[ItemConstraint]:
        seen: dict[str, ItemConstraint] = {}
        for item in set(items):
            for constraint in self.list_for_item(item):
                seen.setdefault(constraint.id, constraint)
        return list(seen.values())

    def register_item(self, item: ItemRef) -> None:
        conn = connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO catalog_items(item_type, item_id, name) VALUES (?, ?, ?)
                    ON CONFLICT(item_type, item_id) DO UPDATE SET
                        name = excluded.name,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (item.item_type.value, item.item_id, item.name or item.item_id),
                )
        finally:
            conn.close()

    def search_items(self, query: str) -> dict[str, list[dict[str, str]]]:
        text = query.strip()
        results: dict[str, list[dict[str, str]]] = {"products": [], "additionals": []}
        if len(text) < MIN_SEARCH_LENGTH:
            return results
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT item_type, item_id, name FROM catalog_items
                WHERE name LIKE ? COLLATE NOCASE
                ORDER BY name
                LIMIT ?
                """,
                (f"%{text}%", SEARCH_LIMIT),
            ).fetchall()
        finally:
            conn.close()
        for row in rows:
            bucket = "products" if row["item_type"] == ItemType.PRODUCT.value else "additionals"
            results[bucket].append({"id": row["item_id"], "name": row["name"]})
        return results
