"""
Generic JSON-over-HTTP product backend.

Maps an upstream JSON API onto ``Product`` through a configurable field map:

    backend = HttpBackend(
        "acme",
        HttpBackendConfig(
            base_url="https://api.acme.test/v1",
            credential_name="ACME_API_KEY",
            results_field="items",
            field_map={"sku": "id", "title": "name", "images": "image_urls"},
        ),
        credentials=EnvCredentialProvider(),
    )
    products = await backend.search("usb hub")
"""

from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from pricemesh.datasource.base import BackendMode, BaseBackend
from pricemesh.datasource.credentials import CredentialProvider
from pricemesh.services.errors import (
    BackendError,
    BackendErrorKind,
    MissingCredentialError,
    RequestTimeoutError,
)
from pricemesh.services.types import Product


class HttpBackendConfig(BaseModel):
    """Endpoint layout of an upstream API."""

    base_url: str
    search_path: str = "/search"
    details_path: str = "/products/{id}"
    related_path: str | None = None
    query_param: str = "q"
    results_field: str | None = "products"  # None: response body is the list
    details_field: str | None = None  # None: response body is the item
    field_map: dict[str, str] = Field(default_factory=dict)  # upstream key -> Product field
    credential_name: str | None = None
    timeout: float = 10.0


def classify_status(status_code: int) -> BackendErrorKind:
    """Map an HTTP error status to a backend error kind."""
    if status_code in (400, 422):
        return BackendErrorKind.INVALID_INPUT
    if status_code in (401, 403):
        return BackendErrorKind.AUTHENTICATION
    if status_code == 404:
        return BackendErrorKind.NO_DATA
    if status_code == 429:
        return BackendErrorKind.RATE_LIMITED
    if status_code >= 500:
        return BackendErrorKind.SERVER_ERROR
    return BackendErrorKind.OTHER


class HttpBackend(BaseBackend):
    """Live backend talking to a JSON HTTP API with httpx."""

    def __init__(
        self,
        name: str,
        config: HttpBackendConfig,
        credentials: CredentialProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name)
        self.config = config
        self._credentials = credentials
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @property
    def mode(self) -> BackendMode:
        return BackendMode.LIVE

    def is_configured(self) -> bool:
        if not self.config.credential_name:
            return True
        if self._credentials is None:
            return False
        try:
            self._credentials.get_credential(self.config.credential_name)
        except MissingCredentialError:
            return False
        return True

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http_client

    def _auth_headers(self) -> dict[str, str]:
        name = self.config.credential_name
        if not name:
            return {}
        if self._credentials is None:
            raise BackendError(
                self.name, BackendErrorKind.AUTHENTICATION, "no credential provider"
            )
        try:
            token = self._credentials.get_credential(name)
        except MissingCredentialError as e:
            raise BackendError(self.name, BackendErrorKind.AUTHENTICATION, str(e)) from e
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and decode the JSON body."""
        client = self._get_http_client()

        try:
            response = await client.get(path, params=params, headers=self._auth_headers())
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.name, self.config.timeout) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise BackendError(
                self.name,
                classify_status(status),
                detail=e.response.text[:200],
                status_code=status,
            ) from e
        except httpx.RequestError as e:
            raise BackendError(self.name, BackendErrorKind.OTHER, str(e)) from e

        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                self.name, BackendErrorKind.MALFORMED_RESPONSE, "response is not JSON"
            ) from e

    def _extract(self, body: Any, field: str | None) -> Any:
        if field is None:
            return body
        if not isinstance(body, dict) or field not in body:
            raise BackendError(
                self.name,
                BackendErrorKind.MALFORMED_RESPONSE,
                f"missing field '{field}'",
            )
        return body[field]

    def _to_product(self, item: Any) -> Product:
        if not isinstance(item, dict):
            raise ValueError(f"expected object, got {type(item).__name__}")

        data: dict[str, Any] = {}
        for key, value in item.items():
            field = self.config.field_map.get(key, key)
            if field in Product.model_fields and field != "source_name":
                data[field] = value

        if isinstance(data.get("image_urls"), str):
            data["image_urls"] = [data["image_urls"]]
        if "id" in data and data["id"] is not None:
            data["id"] = str(data["id"])
        if data.get("brand") is None:
            data.pop("brand", None)
        data["source_name"] = self.name
        return Product.model_validate(data)

    def _to_products(self, items: Any) -> list[Product]:
        if not isinstance(items, list):
            raise BackendError(
                self.name, BackendErrorKind.MALFORMED_RESPONSE, "results are not a list"
            )

        products = []
        for item in items:
            try:
                products.append(self._to_product(item))
            except (ValidationError, ValueError) as e:
                logger.warning(f"[{self.name}] Skipping invalid item: {e}")

        if items and not products:
            raise BackendError(
                self.name, BackendErrorKind.MALFORMED_RESPONSE, "no valid items in response"
            )
        return products

    async def search(self, query: str) -> list[Product]:
        if not query.strip():
            raise BackendError(self.name, BackendErrorKind.INVALID_INPUT, "empty query")

        body = await self._request(
            self.config.search_path, params={self.config.query_param: query}
        )
        products = self._to_products(self._extract(body, self.config.results_field))
        logger.debug(f"[{self.name}] search '{query}' returned {len(products)} products")
        return products

    async def details(self, product_id: str) -> Product:
        body = await self._request(self.config.details_path.format(id=product_id))
        item = self._extract(body, self.config.details_field)
        try:
            return self._to_product(item)
        except (ValidationError, ValueError) as e:
            raise BackendError(
                self.name, BackendErrorKind.MALFORMED_RESPONSE, str(e)[:200]
            ) from e

    async def related_products(self, product_id: str) -> list[Product]:
        if not self.config.related_path:
            return []
        body = await self._request(self.config.related_path.format(id=product_id))
        return self._to_products(self._extract(body, self.config.results_field))

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
