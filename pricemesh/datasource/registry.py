"""
Backend registry - maps backend names to backends and their rate limits.

Backends are declared in YAML:

    version: "1.0"
    backends:
      - name: acme
        mode: live
        http:
          base_url: https://api.acme.test/v1
          credential_name: ACME_API_KEY
        rate_limits:
          requests_per_second: 2
          requests_per_minute: 30
      - name: demo
        mode: fixture
        fixture: fixtures/demo.json
"""

from pathlib import Path
from typing import Iterable

import yaml
from loguru import logger
from pydantic import BaseModel, Field, model_validator

from pricemesh.datasource.base import BackendMode, BaseBackend
from pricemesh.datasource.credentials import CredentialProvider
from pricemesh.datasource.fixture import FixtureBackend
from pricemesh.datasource.http import HttpBackend, HttpBackendConfig
from pricemesh.services.errors import UnknownBackendError
from pricemesh.services.rate_limiter import RateLimitConfig


class RateLimitSettings(BaseModel):
    """Per-backend rate limits as written in YAML."""

    requests_per_second: int = Field(default=1, ge=1)
    requests_per_minute: int = Field(default=10, ge=1)
    requests_per_hour: int = Field(default=100, ge=1)
    burst_limit: int = Field(default=2, ge=1)
    queue_size: int = Field(default=100, ge=0)

    def to_config(self) -> RateLimitConfig:
        return RateLimitConfig(**self.model_dump())


class BackendSpec(BaseModel):
    """One backend entry."""

    name: str = Field(min_length=1)
    mode: BackendMode = BackendMode.LIVE
    enabled: bool = True
    description: str = ""
    http: HttpBackendConfig | None = None
    fixture: str | None = None
    rate_limits: RateLimitSettings = Field(default_factory=RateLimitSettings)

    @model_validator(mode="after")
    def _check_mode(self) -> "BackendSpec":
        if self.mode == BackendMode.LIVE and self.http is None:
            raise ValueError(f"live backend '{self.name}' needs an 'http' section")
        if self.mode == BackendMode.FIXTURE and not self.fixture:
            raise ValueError(f"fixture backend '{self.name}' needs a 'fixture' path")
        return self


class BackendsConfig(BaseModel):
    """Whole backends file."""

    version: str = "1.0"
    backends: list[BackendSpec] = Field(default_factory=list)


class BackendRegistry:
    """Name -> backend mapping. Names are validated on every lookup."""

    def __init__(self):
        self._backends: dict[str, BaseBackend] = {}
        self._rate_limits: dict[str, RateLimitConfig] = {}

    def register(
        self,
        backend: BaseBackend,
        rate_limit: RateLimitConfig | None = None,
    ) -> None:
        if backend.name in self._backends:
            raise ValueError(f"Backend '{backend.name}' is already registered")
        self._backends[backend.name] = backend
        if rate_limit is not None:
            self._rate_limits[backend.name] = rate_limit
        logger.debug(f"Registered backend: {backend.name} ({backend.mode.value})")

    @property
    def names(self) -> list[str]:
        return sorted(self._backends)

    def get(self, name: str) -> BaseBackend:
        try:
            return self._backends[name]
        except KeyError:
            raise UnknownBackendError(name, self.names) from None

    def resolve(self, subset: Iterable[str] | None = None) -> list[str]:
        """Sorted, de-duplicated backend names; all backends when ``subset`` is empty."""
        if subset is None:
            return self.names
        names = sorted(set(subset))
        if not names:
            return self.names
        for name in names:
            if name not in self._backends:
                raise UnknownBackendError(name, self.names)
        return names

    def rate_limit_configs(self) -> dict[str, RateLimitConfig]:
        return dict(self._rate_limits)

    def __contains__(self, name: object) -> bool:
        return name in self._backends

    def __len__(self) -> int:
        return len(self._backends)

    async def close_all(self) -> None:
        for backend in self._backends.values():
            await backend.close()


def load_backends_config(path: Path | str) -> BackendsConfig:
    """Parse and validate a backends YAML file."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return BackendsConfig.model_validate(data)


def load_backends(
    path: Path | str,
    credentials: CredentialProvider | None = None,
) -> BackendRegistry:
    """Build a registry from a backends YAML file. Fixture paths are file-relative."""
    path = Path(path)
    config = load_backends_config(path)
    registry = BackendRegistry()

    for entry in config.backends:
        if not entry.enabled:
            logger.info(f"Backend '{entry.name}' is disabled, skipping")
            continue

        backend: BaseBackend
        if entry.mode == BackendMode.FIXTURE:
            assert entry.fixture is not None
            fixture_path = Path(entry.fixture)
            if not fixture_path.is_absolute():
                fixture_path = path.parent / fixture_path
            backend = FixtureBackend(entry.name, fixture_path=fixture_path)
        else:
            assert entry.http is not None
            backend = HttpBackend(entry.name, entry.http, credentials=credentials)
            if not backend.is_configured():
                logger.warning(
                    f"Backend '{entry.name}' has no credential "
                    f"'{entry.http.credential_name}'; calls will fail authentication"
                )

        registry.register(backend, entry.rate_limits.to_config())

    logger.info(f"Loaded {len(registry)} backends from {path}")
    return registry
