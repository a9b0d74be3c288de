"""
Base backend interface.
"""

from abc import ABC, abstractmethod
from enum import Enum

from pricemesh.services.types import Product


class BackendMode(str, Enum):
    """Where a backend gets its data."""

    LIVE = "live"  # Upstream API, counts against quota
    FIXTURE = "fixture"  # Local data, never spends quota


class BaseBackend(ABC):
    """
    Abstract base class for all product search backends.

    All backends should:
    - Return ``Product`` models tagged with their own ``source_name``
    - Raise ``BackendError`` with a kind for upstream failures
    - Never retry or cache on their own; the coordinator does that
    """

    def __init__(self, name: str):
        self._name = name

    @property
    def name(self) -> str:
        """Unique identifier for this backend."""
        return self._name

    @property
    @abstractmethod
    def mode(self) -> BackendMode:
        ...

    @abstractmethod
    async def search(self, query: str) -> list[Product]:
        """Search the backend for products matching ``query``."""
        ...

    @abstractmethod
    async def details(self, product_id: str) -> Product:
        """Fetch one product by its source-scoped id."""
        ...

    async def related_products(self, product_id: str) -> list[Product]:
        """Products related to ``product_id``. Empty unless overridden."""
        return []

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the backend is properly configured."""
        ...

    async def close(self) -> None:
        """Release held resources."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(name={self.name}, mode={self.mode.value})>"
