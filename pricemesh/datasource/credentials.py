"""
Credential lookup for live backends.
"""

import os
from typing import Mapping, Protocol

from pricemesh.services.errors import MissingCredentialError


class CredentialProvider(Protocol):
    """Opaque secret store."""

    def get_credential(self, name: str) -> str:
        ...


class EnvCredentialProvider:
    """Reads credentials from environment variables."""

    def __init__(self, environ: Mapping[str, str] | None = None, prefix: str = ""):
        self._environ = environ if environ is not None else os.environ
        self._prefix = prefix

    def get_credential(self, name: str) -> str:
        value = self._environ.get(f"{self._prefix}{name}", "")
        if not value:
            raise MissingCredentialError(name)
        return value

    def has_credential(self, name: str) -> bool:
        return bool(self._environ.get(f"{self._prefix}{name}"))
