from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

import httpx

from .cart import AdditionalItem
from .constraints import ItemConstraint
from .models import ZERO, CustomizationConfig, CustomizationInput, ItemType, parse_customization_config, to_decimal

DEFAULT_TIMEOUT_SECONDS = 10.0

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """Raised when the storefront backend is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class ProductInfo:
    id: str
    name: str
    price: Decimal
    discount: Decimal = ZERO

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProductInfo:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            price=to_decimal(payload.get("price")),
            discount=to_decimal(payload.get("discount")),
        )


class BackendClient:
    """Async JSON client for the storefront backend.

    A fresh ``httpx.AsyncClient`` is opened per call so the client can be
    shared between requests that each run on their own event loop.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(method, path, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "backend_http_error",
                extra={"method": method, "path": path, "status_code": exc.response.status_code},
            )
            raise BackendError(
                f"{method} {path} failed with HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("backend_request_error", extra={"method": method, "path": path, "error": str(exc)})
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise BackendError(f"{method} {path} returned invalid JSON") from exc

    async def fetch_customization_config(self, item_type: ItemType, item_id: str) -> CustomizationConfig:
        payload = await self._request("GET", f"/customizations/{ItemType(item_type).value}/{item_id}")
        return parse_customization_config(payload or {})

    async def generate_preview(self, product_id: str, customization_data: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/customization/preview",
            {"productId": product_id, "customizationData": customization_data},
        )

    async def validate_customizations(
        self,
        item_type: ItemType,
        item_id: str,
        inputs: Iterable[CustomizationInput],
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/customizations/validate",
            {
                "itemType": ItemType(item_type).value,
                "itemId": item_id,
                "inputs": [entry.to_dict() for entry in inputs],
            },
        )

    async def validate_legacy(self, product_id: str, inputs: Iterable[CustomizationInput]) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/customization/validate",
            {
                "productId": product_id,
                "customizations": [{"rule_id": entry.rule_id, "data": entry.data.to_dict()} for entry in inputs],
            },
        )

    async def image_exists(self, url: str) -> bool:
        """Whether an uploaded image is still served; any failure counts as missing."""
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.head(url)
        except httpx.RequestError as exc:
            logger.warning("image_check_failed", extra={"url": url, "error": str(exc)})
            return False
        return response.is_success

    async def get_item_constraints(self, item_type: ItemType, item_id: str) -> list[ItemConstraint]:
        payload = await self._request("GET", f"/admin/constraints/item/{ItemType(item_type).value}/{item_id}")
        rows = payload.get("constraints", []) if isinstance(payload, dict) else payload or []
        return [ItemConstraint.from_payload(row) for row in rows]

    async def get_product(self, product_id: str) -> ProductInfo:
        return ProductInfo.from_payload(await self._request("GET", f"/products/{product_id}"))

    async def get_additional(self, additional_id: str) -> AdditionalItem:
        return AdditionalItem.from_payload(await self._request("GET", f"/additionals/{additional_id}"))
