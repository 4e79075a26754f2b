from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

import httpx

from app.domain.errors import ExternalPermanentError, ValidationError
from app.domain.money import to_money
from .http import RetryPolicy, send_with_retry


@dataclass(frozen=True)
class ProductSnapshot:
    product_id: str
    name: str
    price: Decimal
    thumbnail: Optional[str] = None


class Catalog(ABC):
    @abstractmethod
    def get_product(self, product_id: str) -> ProductSnapshot:
        """Current name/price/thumbnail, or ValidationError if it cannot be sold."""

    def get_products(self, product_ids: Iterable[str]) -> dict:
        return {product_id: self.get_product(product_id) for product_id in dict.fromkeys(product_ids)}


class HttpCatalog(Catalog):
    """Reads snapshots from the products service."""

    def __init__(
        self,
        base_url: str,
        policy: RetryPolicy = RetryPolicy(),
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.policy = policy
        self.timeout = timeout
        self.transport = transport

    def get_product(self, product_id: str) -> ProductSnapshot:
        with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = send_with_retry(
                    lambda: client.get(f"/products/{product_id}"),
                    provider="catalog", operation="get_product", policy=self.policy,
                )
            except ExternalPermanentError as e:
                raise ValidationError(
                    f"Product {product_id} is not available",
                    code="product_unavailable", details={"product_id": product_id},
                ) from e
        data = response.json()
        if data.get("is_active") is False:
            raise ValidationError(
                f"Product {product_id} is not available",
                code="product_unavailable", details={"product_id": product_id},
            )
        images = data.get("images") or []
        return ProductSnapshot(
            product_id=str(product_id),
            name=data.get("name", ""),
            price=to_money(data.get("price", 0)),
            thumbnail=data.get("thumbnail") or (images[0] if images else None),
        )
