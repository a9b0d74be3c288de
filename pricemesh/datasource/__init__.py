"""
Product search backends.
"""

from pricemesh.datasource.base import BackendMode, BaseBackend
from pricemesh.datasource.credentials import CredentialProvider, EnvCredentialProvider
from pricemesh.datasource.fixture import FixtureBackend
from pricemesh.datasource.http import HttpBackend, HttpBackendConfig
from pricemesh.datasource.registry import BackendRegistry, load_backends

__all__ = [
    "BackendMode",
    "BaseBackend",
    "CredentialProvider",
    "EnvCredentialProvider",
    "FixtureBackend",
    "HttpBackend",
    "HttpBackendConfig",
    "BackendRegistry",
    "load_backends",
]
