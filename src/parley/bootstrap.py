from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv
from loguru import logger

from .config_loader import ConfigError, load_config
from .logging_config import setup_logging
from .providers.registry import ProviderRegistry
from .providers.factory import BackendFactory
from .resilience.resilient_provider import ResiliencePolicy
from .secrets.sources import SecretsResolver
from .storage.memory_store import MemoryRecordStore
from parley.core.chat_service import ChatService
from parley.core.errors import ProviderClientError
from parley.core.models import ModelConfig, ModelRecord, ProviderConfig, ProviderRecord, ProviderType
from parley.core.streams import StreamRegistry

_MODEL_CONFIG_KEYS = (
    "max_tokens", "context_length", "temperature", "top_p",
    "frequency_penalty", "presence_penalty", "support_streaming",
)


def _provider_record(code: str, p: Dict[str, Any]) -> ProviderRecord:
    return ProviderRecord(
        id=code,
        name=str(p.get("name") or code),
        code=code,
        type=ProviderType(p["type"]),
        enabled=bool(p.get("enabled", True)),
        config=ProviderConfig(
            base_url=p.get("base_url"),
            timeout=p.get("timeout"),
            organization=p.get("organization"),
            api_version=p.get("api_version"),
            extra_headers=dict(p.get("extra_headers") or {}),
            params=dict(p.get("params") or {}),
            policy_file=p.get("policy_file"),
            token_delay=p.get("token_delay"),
        ),
    )


def _model_record(m: Dict[str, Any]) -> ModelRecord:
    try:
        config = ModelConfig(**{k: m[k] for k in _MODEL_CONFIG_KEYS if k in m})
    except TypeError as e:
        raise ConfigError(f"Invalid config for model '{m['id']}': {e}") from e
    return ModelRecord(
        id=m["id"],
        name=str(m.get("name") or m["id"]),
        model_id=m["model_id"],
        provider_id=m["provider"],
        config=config,
        is_default=bool(m.get("default", False)),
        enabled=bool(m.get("enabled", True)),
    )


def build_app(config_path: Path, store: Optional[MemoryRecordStore] = None) -> Dict[str, Any]:
    """
    Composition root: load YAML, configure logging, seed provider and model
    records, and wire the single StreamRegistry into the chat service.
    Returns: dict with cfg, paths, store, registry, backends, service, default_model, warnings.
    """
    load_dotenv()
    cfg = load_config(config_path)
    config_dir = config_path.resolve().parent

    sinks = setup_logging(cfg["logging"]["level"], cfg["logging"].get("consumers"))
    logger.debug("log sinks: {}", ", ".join(sinks))

    # ----- Providers -----
    ProviderRegistry.ensure_imports()  # make sure built-ins register

    secrets_cfg = cfg.get("secrets") or {}
    resolver = SecretsResolver(method=secrets_cfg.get("method", "env"), mapping=secrets_cfg.get("mapping", {}))

    providers = {code: _provider_record(code, p) for code, p in cfg["providers"].items()}
    models = [_model_record(m) for m in cfg["models"]]
    default = next((m for m in models if m.is_default), models[0])
    default.is_default = True

    backends = BackendFactory(
        resolver,
        config_dir=config_dir,
        resilience=ResiliencePolicy.from_config(cfg.get("resilience")),
    )

    # Evaluate param policies up front so drops and rejects surface at startup.
    rejects: List[Dict[str, Any]] = []
    for model in models:
        try:
            backends.effective_params(model, providers[model.provider_id])
        except ProviderClientError as e:
            model.enabled = False
            rejects.append({"type": "policy_reject", "model": model.id, "message": str(e)})
            logger.error("model {} disabled by param policy: {}", model.id, e)
    warnings = list(backends.warnings) + rejects

    # ----- Store -----
    if store is None:
        store = MemoryRecordStore()
    store.seed(list(providers.values()))
    store.seed(models)

    registry = StreamRegistry()

    context_cfg = cfg.get("context") or {}
    service = ChatService(store, registry, backends, reserve_ratio=float(context_cfg.get("reserve_ratio", 0.2)))

    logger.info("parley ready: {} providers, {} models, default={}", len(providers), len(models), default.id)
    return {
        "cfg": cfg,
        "paths": {"config_dir": config_dir},
        "store": store,
        "registry": registry,
        "backends": backends,
        "service": service,
        "default_model": default.id,
        "warnings": warnings,
    }
