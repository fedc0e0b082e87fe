from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, Iterable

from .models import ZERO, CustomizationInput, to_decimal

if TYPE_CHECKING:
    from .cart import AdditionalItem, CartLine

HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def round_currency(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(value: Decimal) -> str:
    return f"{round_currency(value):.2f}"


def effective_unit_price(base_price: Any, discount_percent: Any = None) -> Decimal:
    return to_decimal(base_price) * (1 - to_decimal(discount_percent) / HUNDRED)


def customization_matches_additional(rule_id: str, additional_id: str) -> bool:
    # Shared rules are answered once per additional; the answer's id embeds
    # the additional id, either anywhere or as a "_<id>" suffix.
    return additional_id in rule_id or rule_id.endswith(f"_{additional_id}")


def additional_contribution(additional: AdditionalItem, customizations: Iterable[CustomizationInput]) -> Decimal:
    adjustments = sum(
        (
            entry.price_adjustment
            for entry in customizations
            if customization_matches_additional(entry.rule_id, additional.id)
        ),
        ZERO,
    )
    return to_decimal(additional.price) + adjustments


@dataclass(slots=True)
class PriceBreakdown:
    unit_price: Decimal
    effective_unit_price: Decimal
    additional_contributions: dict[str, Decimal] = field(default_factory=dict)
    quantity: int = 1

    @property
    def per_unit_total(self) -> Decimal:
        return self.effective_unit_price + sum(self.additional_contributions.values(), ZERO)

    @property
    def line_total(self) -> Decimal:
        return self.per_unit_total * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_price": format_currency(self.unit_price),
            "effective_unit_price": format_currency(self.effective_unit_price),
            "additional_contributions": {
                additional_id: format_currency(value)
                for additional_id, value in self.additional_contributions.items()
            },
            "quantity": self.quantity,
            "per_unit_total": format_currency(self.per_unit_total),
            "line_total": format_currency(self.line_total),
        }


class PriceCalculator:
    """Line pricing over unrounded Decimals; rounding happens in ``format_currency``."""

    def breakdown(self, line: CartLine) -> PriceBreakdown:
        return PriceBreakdown(
            unit_price=to_decimal(line.unit_price),
            effective_unit_price=effective_unit_price(line.unit_price, line.discount_percent),
            additional_contributions={
                additional.id: additional_contribution(additional, line.customizations)
                for additional in line.additionals
            },
            quantity=line.quantity,
        )

    def line_total(self, line: CartLine) -> Decimal:
        return self.breakdown(line).line_total

    def cart_total(self, lines: Iterable[CartLine]) -> Decimal:
        return sum((self.line_total(line) for line in lines), ZERO)

    def item_count(self, lines: Iterable[CartLine]) -> int:
        return sum(line.quantity for line in lines)
