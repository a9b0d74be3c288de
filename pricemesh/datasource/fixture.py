"""
Fixture backend serving products from local data.

Used for demos and tests; calls never touch the network and never spend
quota.
"""

from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from pricemesh.datasource.base import BackendMode, BaseBackend
from pricemesh.services.aggregator import normalize_text
from pricemesh.services.errors import BackendError, BackendErrorKind
from pricemesh.services.types import Product


def load_fixture_file(path: Path) -> list[dict[str, Any]]:
    """Read a JSON or YAML list of products, or a mapping with a ``products`` key."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("products", [])
    if not isinstance(data, list):
        raise ValueError(f"Fixture {path} must contain a list of products")
    return data


class FixtureBackend(BaseBackend):
    """Backend over an in-memory product list."""

    def __init__(
        self,
        name: str,
        products: list[Product] | None = None,
        fixture_path: Path | str | None = None,
        max_related: int = 10,
    ):
        super().__init__(name)
        self.fixture_path = Path(fixture_path) if fixture_path else None
        self.max_related = max_related
        self._products: list[Product] = [
            p.model_copy(update={"source_name": name}) for p in products or []
        ]
        if self.fixture_path is not None:
            self._products.extend(self._load(self.fixture_path))

    def _load(self, path: Path) -> list[Product]:
        products = []
        for item in load_fixture_file(path):
            try:
                products.append(Product.model_validate({**item, "source_name": self.name}))
            except ValidationError as e:
                logger.warning(f"[{self.name}] Skipping invalid fixture item: {e}")
        logger.info(f"[{self.name}] Loaded {len(products)} fixture products from {path}")
        return products

    @property
    def mode(self) -> BackendMode:
        return BackendMode.FIXTURE

    @property
    def products(self) -> list[Product]:
        return list(self._products)

    def is_configured(self) -> bool:
        return True

    async def search(self, query: str) -> list[Product]:
        tokens = normalize_text(query).split()
        if not tokens:
            raise BackendError(self.name, BackendErrorKind.INVALID_INPUT, "empty query")

        return [p for p in self._products if all(t in _haystack(p) for t in tokens)]

    async def details(self, product_id: str) -> Product:
        for product in self._products:
            if product.id == product_id:
                return product
        raise BackendError(
            self.name, BackendErrorKind.NO_DATA, f"product '{product_id}' not found"
        )

    async def related_products(self, product_id: str) -> list[Product]:
        product = await self.details(product_id)
        if not product.category:
            return []
        related = [
            p
            for p in self._products
            if p.id != product.id and p.category == product.category
        ]
        return related[: self.max_related]


def _haystack(product: Product) -> str:
    parts = [product.name, product.brand, product.description or "", product.category or ""]
    return normalize_text(" ".join(parts))
