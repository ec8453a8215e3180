# src/parley/providers/factory.py
from __future__ import annotations
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from parley.core.errors import ValidationError
from parley.core.models import ModelRecord, ProviderRecord
from parley.core.ports import GenerationBackend
from parley.providers.param_policy import ParamPolicy
from parley.providers.registry import ProviderRegistry
from parley.resilience.resilient_provider import ResiliencePolicy, ResilientProvider


class BackendFactory:
    """
    Builds the retry-wrapped backend for a model record and caches it per
    model record id. Generation params come from the model config merged over
    the provider's `params`, then filtered through the provider's param policy
    (config/providers/<code>.yaml unless the provider names a policy_file).
    """

    def __init__(
        self,
        secrets,
        *,
        config_dir: Optional[Path] = None,
        resilience: Optional[ResiliencePolicy] = None,
    ):
        self.secrets = secrets
        self.config_dir = config_dir
        self.resilience = resilience or ResiliencePolicy()
        self.warnings: List[Dict[str, Any]] = []
        self._cache: Dict[str, GenerationBackend] = {}
        self._policies: Dict[Path, ParamPolicy] = {}
        self._warned: Set[str] = set()
        self._lock = threading.Lock()

    def _policy_path(self, provider: ProviderRecord) -> Optional[Path]:
        if provider.config.policy_file:
            path = Path(provider.config.policy_file)
            if not path.is_absolute() and self.config_dir is not None:
                path = self.config_dir / path
            return path
        if self.config_dir is None:
            return None
        return self.config_dir / "providers" / f"{provider.code}.yaml"

    def _policy(self, provider: ProviderRecord) -> Optional[ParamPolicy]:
        path = self._policy_path(provider)
        if path is None or not path.exists():
            return None
        if path not in self._policies:
            self._policies[path] = ParamPolicy.load(path)
        return self._policies[path]

    def effective_params(self, model: ModelRecord, provider: ProviderRecord) -> Dict[str, Any]:
        raw = {**(provider.config.params or {}), **model.config.generation_params()}
        policy = self._policy(provider)
        if policy is None:
            return raw
        outcome = policy.apply(model.model_id, raw)
        if outcome.dropped and model.id not in self._warned:
            self._warned.add(model.id)
            self.warnings.append({
                "type": "policy_drop",
                "provider": provider.code,
                "model": model.id,
                "policy": str(policy.source),
                "dropped": outcome.dropped,
                "message": outcome.warning,
            })
            logger.warning("param policy dropped {} for model {}", sorted(outcome.dropped), model.id)
        return outcome.params

    def _build(self, model: ModelRecord, provider: ProviderRecord) -> GenerationBackend:
        if not model.enabled:
            raise ValidationError(f"model is disabled: {model.id}")
        if not provider.enabled:
            raise ValidationError(f"provider is disabled: {provider.code}")
        try:
            adapter = ProviderRegistry.get(provider.type.value)
        except KeyError as e:
            raise ValidationError(f"unsupported provider type: {provider.type.value}") from e

        cfg = provider.config
        inner = adapter.create(
            model_name=model.model_id,
            provider_cfg={
                "name": provider.code,
                "type": provider.type.value,
                "base_url": cfg.base_url,
                "timeout": cfg.timeout,
                "organization": cfg.organization,
                "api_version": cfg.api_version,
                "extra_headers": cfg.extra_headers,
                "token_delay": cfg.token_delay,
                "params": self.effective_params(model, provider),
            },
            secrets=self.secrets,
        )
        logger.info("backend ready: model={} provider={} ({})", model.id, provider.code, provider.type.value)
        return ResilientProvider(inner, policy=self.resilience)

    def get(self, model: ModelRecord, provider: ProviderRecord) -> GenerationBackend:
        with self._lock:
            backend = self._cache.get(model.id)
            if backend is None:
                backend = self._build(model, provider)
                self._cache[model.id] = backend
            return backend
