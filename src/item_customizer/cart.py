from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from .constraints import AdmissionResult, ConstraintResolver
from .db import json_dumps
from .models import (
    EPHEMERAL_FIELDS,
    ZERO,
    CustomizationInput,
    ItemRef,
    to_decimal,
)
from .pricing import effective_unit_price

AMOUNT_FIELDS = frozenset({"price_adjustment"})

logger = logging.getLogger(__name__)


class LineNotFoundError(LookupError):
    """Raised when no cart line carries the requested fingerprint."""


def canonical_amount(value: Any) -> str:
    """``5``, ``5.0`` and ``5.00`` all render as ``5``."""
    return format(to_decimal(value).normalize(), "f")


def _canonical(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: canonical_amount(item) if key in AMOUNT_FIELDS else _canonical(item)
            for key, item in value.items()
            if key not in EPHEMERAL_FIELDS
        }
    if isinstance(value, list):
        return [_canonical(item) for item in value]
    return value


def normalize_customizations(customizations: Iterable[CustomizationInput]) -> list[dict[str, Any]]:
    return [
        {
            "rule_id": entry.rule_id,
            "type": entry.customization_type.value,
            "layout": entry.selected_layout_id,
            "data": _canonical(entry.data.to_dict()),
        }
        for entry in sorted(customizations, key=lambda entry: entry.rule_id)
    ]


def fingerprint(
    product_id: str,
    additional_ids: Iterable[str] | None = None,
    customizations: Iterable[CustomizationInput] | None = None,
    additional_colors: dict[str, str] | None = None,
) -> str:
    """Stable identity of a configured line.

    ``product_id | sorted additional ids | normalized customizations`` with
    colors appended when present, hashed with sha256.
    """
    parts = [
        str(product_id),
        ",".join(sorted(str(item) for item in additional_ids or [])),
        json_dumps(normalize_customizations(customizations or [])),
    ]
    if additional_colors:
        parts.append(json_dumps({str(key): str(value) for key, value in additional_colors.items()}))
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


@dataclass(slots=True)
class AdditionalItem:
    id: str
    name: str = ""
    price: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "price": str(self.price)}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AdditionalItem:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            price=to_decimal(payload.get("price")),
        )


@dataclass(slots=True)
class CartLine:
    product_id: str
    quantity: int
    unit_price: Decimal
    discount_percent: Decimal = ZERO
    product_name: str | None = None
    additionals: list[AdditionalItem] = field(default_factory=list)
    customizations: list[CustomizationInput] = field(default_factory=list)
    additional_colors: dict[str, str] = field(default_factory=dict)

    @property
    def additional_ids(self) -> list[str]:
        return sorted(additional.id for additional in self.additionals)

    @property
    def effective_unit_price(self) -> Decimal:
        return effective_unit_price(self.unit_price, self.discount_percent)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.product_id, self.additional_ids, self.customizations, self.additional_colors)

    def items(self) -> list[ItemRef]:
        return [
            ItemRef.product(self.product_id, self.product_name),
            *(ItemRef.additional(additional.id, additional.name or None) for additional in self.additionals),
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "discount_percent": str(self.discount_percent),
            "additional_ids": self.additional_ids,
            "additionals": [additional.to_dict() for additional in self.additionals],
            "customizations": [entry.to_dict() for entry in self.customizations],
            "additional_colors": dict(self.additional_colors),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CartLine:
        return cls(
            product_id=str(payload["product_id"]),
            quantity=int(payload["quantity"]),
            unit_price=to_decimal(payload.get("unit_price")),
            discount_percent=to_decimal(payload.get("discount_percent")),
            product_name=payload.get("product_name"),
            additionals=[AdditionalItem.from_payload(item) for item in payload.get("additionals") or []],
            customizations=[CustomizationInput.from_payload(item) for item in payload.get("customizations") or []],
            additional_colors=dict(payload.get("additional_colors") or {}),
        )


@dataclass(slots=True)
class Cart:
    cart_id: str
    lines: list[CartLine] = field(default_factory=list)

    def items(self) -> list[ItemRef]:
        return [item for line in self.lines for item in line.items()]

    def find(self, line_fingerprint: str) -> CartLine | None:
        for line in self.lines:
            if line.fingerprint == line_fingerprint:
                return line
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"cart_id": self.cart_id, "lines": [line.to_dict() for line in self.lines]}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Cart:
        return cls(
            cart_id=str(payload["cart_id"]),
            lines=[CartLine.from_dict(item) for item in payload.get("lines") or []],
        )


@dataclass(slots=True)
class CartMutationResult:
    applied: bool
    line: CartLine | None = None
    reason: str | None = None
    merged: bool = False
    constraint_id: str | None = None


class CartComposer:
    def __init__(self, resolver: ConstraintResolver | None = None) -> None:
        self.resolver = resolver or ConstraintResolver([])

    def admit(self, cart: Cart, candidate: CartLine) -> AdmissionResult:
        return self.resolver.can_add_all(candidate.items(), cart.items())

    def add_or_merge(
        self,
        cart: Cart,
        product_id: str,
        quantity: int,
        unit_price: Any,
        additionals: Iterable[AdditionalItem] = (),
        customizations: Iterable[CustomizationInput] = (),
        *,
        discount_percent: Any = None,
        product_name: str | None = None,
        additional_colors: dict[str, str] | None = None,
    ) -> CartMutationResult:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        candidate = CartLine(
            product_id=str(product_id),
            quantity=quantity,
            unit_price=to_decimal(unit_price),
            discount_percent=to_decimal(discount_percent),
            product_name=product_name,
            additionals=sorted(additionals, key=lambda additional: additional.id),
            customizations=list(customizations),
            additional_colors=dict(additional_colors or {}),
        )

        admission = self.admit(cart, candidate)
        if not admission.allowed:
            return CartMutationResult(applied=False, reason=admission.reason, constraint_id=admission.constraint_id)

        line_fingerprint = candidate.fingerprint
        existing = cart.find(line_fingerprint)
        if existing is not None:
            existing.quantity += quantity
            logger.info(
                "cart_line_merged",
                extra={"cart_id": cart.cart_id, "fingerprint": line_fingerprint, "quantity": existing.quantity},
            )
            return CartMutationResult(applied=True, line=existing, merged=True)

        cart.lines.append(candidate)
        logger.info(
            "cart_line_created",
            extra={"cart_id": cart.cart_id, "fingerprint": line_fingerprint, "quantity": quantity},
        )
        return CartMutationResult(applied=True, line=candidate)

    def update_quantity(self, cart: Cart, line_fingerprint: str, quantity: int) -> CartLine | None:
        line = cart.find(line_fingerprint)
        if line is None:
            raise LineNotFoundError(line_fingerprint)
        if quantity <= 0:
            cart.lines.remove(line)
            logger.info("cart_line_removed", extra={"cart_id": cart.cart_id, "fingerprint": line_fingerprint})
            return None
        line.quantity = quantity
        return line

    def remove(
        self,
        cart: Cart,
        product_id: str,
        additional_ids: Iterable[str] | None = None,
        customizations: Iterable[CustomizationInput] | None = None,
        additional_colors: dict[str, str] | None = None,
    ) -> bool:
        target = fingerprint(product_id, additional_ids, customizations, additional_colors)
        line = cart.find(target)
        if line is None:
            return False
        cart.lines.remove(line)
        logger.info("cart_line_removed", extra={"cart_id": cart.cart_id, "fingerprint": target})
        return True

    def replace_customizations(
        self,
        cart: Cart,
        line_fingerprint: str,
        customizations: Iterable[CustomizationInput],
    ) -> CartLine:
        """Swap a line's customizations, merging into an identical line if one appears."""
        line = cart.find(line_fingerprint)
        if line is None:
            raise LineNotFoundError(line_fingerprint)
        line.customizations = list(customizations)
        new_fingerprint = line.fingerprint
        for other in cart.lines:
            if other is not line and other.fingerprint == new_fingerprint:
                other.quantity += line.quantity
                cart.lines.remove(line)
                logger.info(
                    "cart_line_merged",
                    extra={"cart_id": cart.cart_id, "fingerprint": new_fingerprint, "quantity": other.quantity},
                )
                return other
        return line
