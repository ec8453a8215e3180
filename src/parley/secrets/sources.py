# src/parley/secrets/sources.py

from __future__ import annotations
import getpass
import os
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union

import keyring as _keyring
from loguru import logger


class SecretSource(Protocol):
    name: str

    def get(self, service: str) -> Optional[str]: ...


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def env_candidates(service: str) -> Tuple[str, ...]:
    """`OPENAI_API_KEY` is used as is; `openai` also tries OPENAI_API_KEY and OPENAI."""
    upper = service.upper()
    if upper.endswith("_API_KEY"):
        return (service,)
    return (service, f"{upper}_API_KEY", upper)


class EnvSource:
    name = "env"

    def get(self, service: str) -> Optional[str]:
        for key in env_candidates(service):
            value = _clean(os.getenv(key))
            if value:
                return value
        return None


class SystemKeyringSource:
    """
    OS keyring lookup. Tries the backend's credential API first, then a list
    of account names under the service. Backend failures count as a miss.
    """
    name = "keyring"

    def __init__(self, accounts: Optional[Iterable[str]] = None):
        self._accounts = list(accounts) if accounts is not None else None

    def accounts(self, service: str) -> List[str]:
        if self._accounts is not None:
            return self._accounts
        return ["API_KEY", f"{service.upper()}_API_KEY", "default", service, getpass.getuser()]

    def get(self, service: str) -> Optional[str]:
        try:
            cred = _keyring.get_credential(service, None)
        except Exception as e:
            logger.debug("keyring credential lookup failed for {}: {}", service, e)
            cred = None
        value = _clean(getattr(cred, "password", None))
        if value:
            return value

        for account in self.accounts(service):
            try:
                value = _clean(_keyring.get_password(service, account))
            except Exception as e:
                logger.debug("keyring lookup failed for {}/{}: {}", service, account, e)
                continue
            if value:
                return value
        return None


_SOURCES: Dict[str, Callable[[], SecretSource]] = {
    "env": EnvSource,
    "keyring": SystemKeyringSource,
}


def build_secret_sources(method: Union[str, Iterable[str]]) -> List[SecretSource]:
    """Sources in the configured order; duplicates collapse and unknown names raise ValueError."""
    names = [method] if isinstance(method, str) else list(method)
    seen: List[str] = []
    for raw in names:
        key = str(raw).strip().lower()
        if key not in _SOURCES:
            raise ValueError(f"Unknown secrets method '{raw}'. Allowed: {sorted(_SOURCES)}")
        if key not in seen:
            seen.append(key)
    return [_SOURCES[key]() for key in seen]


class SecretsResolver:
    """
    Resolves provider secrets (API keys) through the configured sources.
    `mapping` maps provider code -> secret name -> env var or keyring service:
        {"openai": {"api_key": "OPENAI_API_KEY"}}
    Without a mapping entry the provider code itself is the service name.
    """

    def __init__(self, method: Union[str, Iterable[str]], mapping: Optional[Dict[str, Dict[str, str]]] = None):
        self.sources = build_secret_sources(method)
        self.mapping = mapping or {}

    def service_for(self, provider: str, name: str = "api_key") -> str:
        return (self.mapping.get(provider) or {}).get(name, provider)

    def secret(self, provider: str, name: str = "api_key") -> Optional[str]:
        service = self.service_for(provider, name)
        for source in self.sources:
            value = source.get(service)
            if value:
                logger.debug("{} for {} resolved from {}", name, provider, source.name)
                return value
        logger.debug("{} for {} not found ({})", name, provider, service)
        return None
