from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Union

ZERO = Decimal("0")


class CatalogError(ValueError):
    """Raised when a rule catalog cannot be assembled."""


class ItemType(str, Enum):
    PRODUCT = "PRODUCT"
    ADDITIONAL = "ADDITIONAL"


class RuleType(str, Enum):
    PHOTO_UPLOAD = "PHOTO_UPLOAD"
    TEXT_INPUT = "TEXT_INPUT"
    LAYOUT_PRESET = "LAYOUT_PRESET"
    OPTION_SELECT = "OPTION_SELECT"
    ITEM_SUBSTITUTION = "ITEM_SUBSTITUTION"
    # legacy
    BASE_LAYOUT = "BASE_LAYOUT"
    TEXT = "TEXT"
    IMAGES = "IMAGES"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    DYNAMIC_LAYOUT = "DYNAMIC_LAYOUT"


LEGACY_RULE_TYPES = {
    RuleType.BASE_LAYOUT,
    RuleType.TEXT,
    RuleType.IMAGES,
    RuleType.MULTIPLE_CHOICE,
    RuleType.DYNAMIC_LAYOUT,
}

ANSWER_KINDS = {
    RuleType.PHOTO_UPLOAD: "photo",
    RuleType.IMAGES: "photo",
    RuleType.TEXT_INPUT: "text",
    RuleType.TEXT: "text",
    RuleType.OPTION_SELECT: "option",
    RuleType.MULTIPLE_CHOICE: "option",
    RuleType.LAYOUT_PRESET: "layout",
    RuleType.BASE_LAYOUT: "layout",
    RuleType.DYNAMIC_LAYOUT: "layout",
    RuleType.ITEM_SUBSTITUTION: "substitution",
}

# Fields that only make sense on the device that produced them.
EPHEMERAL_FIELDS = frozenset({"preview_url", "temp_file_id"})


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def answer_kind(rule_type: RuleType | str) -> str:
    return ANSWER_KINDS[RuleType(rule_type)]


@dataclass(slots=True, frozen=True)
class ItemRef:
    item_type: ItemType
    item_id: str
    name: str | None = field(default=None, compare=False, hash=False)

    @classmethod
    def product(cls, item_id: str, name: str | None = None) -> ItemRef:
        return cls(ItemType.PRODUCT, str(item_id), name)

    @classmethod
    def additional(cls, item_id: str, name: str | None = None) -> ItemRef:
        return cls(ItemType.ADDITIONAL, str(item_id), name)

    @property
    def label(self) -> str:
        return self.name or self.item_id


@dataclass(slots=True)
class RuleOption:
    id: str
    label: str
    value: str
    price_adjustment: Decimal = ZERO

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RuleOption:
        value = str(payload.get("value", payload.get("label", "")))
        return cls(
            id=str(payload.get("id") or value),
            label=str(payload.get("label", value)),
            value=value,
            price_adjustment=to_decimal(payload.get("price_adjustment")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "value": self.value,
            "price_adjustment": str(self.price_adjustment),
        }


@dataclass(slots=True)
class CustomizationRule:
    id: str
    title: str
    rule_type: RuleType
    required: bool = False
    display_order: int = 0
    description: str | None = None
    max_items: int | None = None
    available_options: list[RuleOption] = field(default_factory=list)
    substitutions: dict[str, list[RuleOption]] = field(default_factory=dict)
    legacy: bool = False

    @property
    def kind(self) -> str:
        return answer_kind(self.rule_type)

    def option(self, option_id: str) -> RuleOption | None:
        for option in self.available_options:
            if option.id == option_id:
                return option
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "rule_type": self.rule_type.value,
            "required": self.required,
            "display_order": self.display_order,
            "description": self.description,
            "max_items": self.max_items,
            "available_options": [option.to_dict() for option in self.available_options],
            "substitutions": {
                original: [option.to_dict() for option in options]
                for original, options in self.substitutions.items()
            },
            "legacy": self.legacy,
        }


def _parse_options(raw: Any) -> tuple[list[RuleOption], dict[str, list[RuleOption]]]:
    if isinstance(raw, list):
        return [RuleOption.from_payload(item) for item in raw if isinstance(item, dict)], {}
    if isinstance(raw, dict) and isinstance(raw.get("items"), list):
        substitutions: dict[str, list[RuleOption]] = {}
        for entry in raw["items"]:
            original = str(entry.get("original_item", ""))
            if not original:
                continue
            substitutions[original] = [
                RuleOption(
                    id=str(substitute.get("item", "")),
                    label=str(substitute.get("item", "")),
                    value=str(substitute.get("item", "")),
                    price_adjustment=to_decimal(substitute.get("price_adjustment")),
                )
                for substitute in entry.get("available_substitutes", [])
            ]
        return [], substitutions
    return [], {}


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_rule(payload: dict[str, Any], legacy: bool = False) -> CustomizationRule:
    if legacy:
        raw_type = payload.get("customization_type") or payload.get("type")
        required = payload.get("is_required", payload.get("isRequired", False))
    else:
        raw_type = payload.get("rule_type") or payload.get("type")
        required = payload.get("required", False)
    try:
        rule_type = RuleType(str(raw_type))
    except ValueError as exc:
        raise CatalogError(f"unsupported rule type: {raw_type}") from exc
    options, substitutions = _parse_options(payload.get("available_options"))
    return CustomizationRule(
        id=str(payload["id"]),
        title=str(payload.get("title") or payload.get("name") or payload["id"]),
        rule_type=rule_type,
        required=bool(required),
        display_order=int(payload.get("display_order", 0) or 0),
        description=payload.get("description"),
        max_items=_int_or_none(payload.get("max_items")),
        available_options=options,
        substitutions=substitutions,
        legacy=legacy,
    )


def build_rule_catalog(
    rules: list[CustomizationRule],
    legacy_rules: list[CustomizationRule] | None = None,
) -> list[CustomizationRule]:
    """Concatenate current and legacy rules and order them for stepping.

    Ordering is by ``display_order``; ties keep current rules ahead of legacy
    ones and otherwise preserve source order.
    """
    combined = [*rules, *(legacy_rules or [])]
    seen: set[str] = set()
    for rule in combined:
        if rule.id in seen:
            raise CatalogError(f"duplicate rule id in catalog: {rule.id}")
        seen.add(rule.id)
    indexed = list(enumerate(combined))
    indexed.sort(key=lambda pair: (pair[1].display_order, pair[1].legacy, pair[0]))
    return [rule for _, rule in indexed]


@dataclass(slots=True)
class Layout:
    id: str
    name: str
    image_url: str | None = None
    slots: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class CustomizationConfig:
    allows_customization: bool
    rules: list[CustomizationRule]
    layouts: list[Layout] = field(default_factory=list)


def parse_customization_config(payload: dict[str, Any]) -> CustomizationConfig:
    current = [parse_rule(item) for item in payload.get("rules") or []]
    legacy = [parse_rule(item, legacy=True) for item in payload.get("legacyRules") or []]
    catalog = build_rule_catalog(current, legacy)
    item = payload.get("item") or {}
    allows = item.get("allowsCustomization", item.get("allows_customization"))
    if allows is None:
        allows = bool(catalog)
    layouts = [
        Layout(
            id=str(entry["id"]),
            name=str(entry.get("name", "")),
            image_url=entry.get("image_url") or entry.get("imageUrl"),
            slots=list(entry.get("slots") or []),
        )
        for entry in payload.get("layouts") or []
    ]
    return CustomizationConfig(allows_customization=bool(allows), rules=catalog, layouts=layouts)


@dataclass(slots=True)
class ArtworkAsset:
    base64_data: str
    mime_type: str
    file_name: str
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "base64Data": self.base64_data,
            "mimeType": self.mime_type,
            "fileName": self.file_name,
            "size": self.size,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ArtworkAsset:
        return cls(
            base64_data=str(payload.get("base64Data", "")),
            mime_type=str(payload.get("mimeType", "")),
            file_name=str(payload.get("fileName", "")),
            size=int(payload.get("size", 0) or 0),
        )


@dataclass(slots=True)
class PhotoEntry:
    position: int
    file_name: str
    mime_type: str
    size: int = 0
    base64_data: str | None = None
    preview_url: str | None = None
    temp_file_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "original_name": self.file_name,
            "mime_type": self.mime_type,
            "size": self.size,
            "base64": self.base64_data,
            "preview_url": self.preview_url,
            "temp_file_id": self.temp_file_id,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PhotoEntry:
        return cls(
            position=int(payload.get("position", 0) or 0),
            file_name=str(payload.get("original_name") or payload.get("file_name") or ""),
            mime_type=str(payload.get("mime_type") or "image/jpeg"),
            size=int(payload.get("size", 0) or 0),
            base64_data=payload.get("base64"),
            preview_url=payload.get("preview_url"),
            temp_file_id=payload.get("temp_file_id"),
        )


@dataclass(slots=True)
class PhotoAnswer:
    photos: list[PhotoEntry] = field(default_factory=list)
    price_adjustment: Decimal = ZERO
    kind = "photo"

    def preview_urls(self) -> list[str]:
        return [photo.preview_url for photo in self.photos if photo.preview_url]

    def to_dict(self) -> dict[str, Any]:
        return {
            "photos": [photo.to_dict() for photo in self.photos],
            "price_adjustment": str(self.price_adjustment),
        }


@dataclass(slots=True)
class TextAnswer:
    text: str
    price_adjustment: Decimal = ZERO
    kind = "text"

    def preview_urls(self) -> list[str]:
        return []

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "price_adjustment": str(self.price_adjustment)}


@dataclass(slots=True)
class OptionAnswer:
    option_id: str
    label: str
    price_adjustment: Decimal = ZERO
    kind = "option"

    def preview_urls(self) -> list[str]:
        return []

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_option": self.option_id,
            "selected_option_label": self.label,
            "price_adjustment": str(self.price_adjustment),
        }


@dataclass(slots=True)
class LayoutAnswer:
    layout_id: str
    name: str = ""
    images: list[PhotoEntry] = field(default_factory=list)
    editor_state: str | None = None
    preview_url: str | None = None
    price_adjustment: Decimal = ZERO
    kind = "layout"

    def preview_urls(self) -> list[str]:
        urls = [image.preview_url for image in self.images if image.preview_url]
        if self.preview_url:
            urls.append(self.preview_url)
        return urls

    def to_dict(self) -> dict[str, Any]:
        return {
            "layout_id": self.layout_id,
            "name": self.name,
            "images": [image.to_dict() for image in self.images],
            "editor_state": self.editor_state,
            "preview_url": self.preview_url,
            "price_adjustment": str(self.price_adjustment),
        }


@dataclass(slots=True)
class SubstitutionAnswer:
    original_item: str
    selected_item: str
    price_adjustment: Decimal = ZERO
    kind = "substitution"

    def preview_urls(self) -> list[str]:
        return []

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_item": {
                "original_item": self.original_item,
                "selected_item": self.selected_item,
                "price_adjustment": str(self.price_adjustment),
            },
            "price_adjustment": str(self.price_adjustment),
        }


Answer = Union[PhotoAnswer, TextAnswer, OptionAnswer, LayoutAnswer, SubstitutionAnswer]


def parse_answer(rule_type: RuleType | str, payload: dict[str, Any]) -> Answer:
    """Build the tagged answer for ``rule_type`` from a JSON-shaped payload."""
    kind = answer_kind(rule_type)
    price_adjustment = to_decimal(payload.get("price_adjustment", payload.get("_priceAdjustment")))
    if kind == "photo":
        return PhotoAnswer(
            photos=[PhotoEntry.from_payload(item) for item in payload.get("photos") or []],
            price_adjustment=price_adjustment,
        )
    if kind == "text":
        return TextAnswer(text=str(payload.get("text", "")), price_adjustment=price_adjustment)
    if kind == "option":
        option_id = payload.get("selected_option") or payload.get("id") or ""
        label = payload.get("selected_option_label") or payload.get("label") or option_id
        return OptionAnswer(option_id=str(option_id), label=str(label), price_adjustment=price_adjustment)
    if kind == "layout":
        return LayoutAnswer(
            layout_id=str(payload.get("layout_id") or payload.get("id") or ""),
            name=str(payload.get("name", "")),
            images=[PhotoEntry.from_payload(item) for item in payload.get("images") or []],
            editor_state=payload.get("editor_state") or payload.get("fabricState"),
            preview_url=payload.get("preview_url") or payload.get("previewUrl"),
            price_adjustment=price_adjustment,
        )
    selected = payload.get("selected_item") or {}
    substitution_adjustment = selected.get("price_adjustment")
    return SubstitutionAnswer(
        original_item=str(selected.get("original_item", "")),
        selected_item=str(selected.get("selected_item", "")),
        price_adjustment=(
            to_decimal(substitution_adjustment) if substitution_adjustment is not None else price_adjustment
        ),
    )


@dataclass(slots=True)
class CustomizationInput:
    rule_id: str
    customization_type: RuleType
    data: Answer
    selected_layout_id: str | None = None

    @property
    def price_adjustment(self) -> Decimal:
        return self.data.price_adjustment

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "customizationType": self.customization_type.value,
            "selectedLayoutId": self.selected_layout_id,
            "data": self.data.to_dict(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CustomizationInput:
        rule_id = payload.get("ruleId") or payload.get("customizationRuleId") or payload.get("rule_id")
        if not rule_id:
            raise ValueError("customization input requires ruleId")
        rule_type = RuleType(str(payload.get("customizationType") or payload.get("customization_type")))
        return cls(
            rule_id=str(rule_id),
            customization_type=rule_type,
            data=parse_answer(rule_type, dict(payload.get("data") or {})),
            selected_layout_id=payload.get("selectedLayoutId"),
        )


@dataclass(slots=True)
class CustomizationSessionState:
    item_type: ItemType
    item_id: str
    rules: list[CustomizationRule]
    answers: dict[str, CustomizationInput] = field(default_factory=dict)
    final_artwork: ArtworkAsset | None = None
    final_artworks: list[ArtworkAsset] | None = None

    def rule(self, rule_id: str) -> CustomizationRule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None
