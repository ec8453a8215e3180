# src/parley/config_loader.py

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict
import yaml

from parley.core.models import ProviderType

_PROVIDER_TYPES = tuple(t.value for t in ProviderType)
_LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    pass


_TYPE_NAMES = {bool: "a boolean", str: "a string", int: "an integer", dict: "a mapping", list: "a list"}


def _require(d: Dict[str, Any], dotted: str, typ: type) -> Any:
    """Look up a dotted key and check its type; bools never pass as ints."""
    node: Any = d
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            raise ConfigError(f"Missing config key: {dotted}")
        node = node[part]
    ok = isinstance(node, typ) and not (typ is int and isinstance(node, bool))
    if not ok:
        raise ConfigError(f"'{dotted}' must be {_TYPE_NAMES[typ]}")
    return node


def _check_providers(raw: Dict[str, Any]) -> None:
    providers = _require(raw, "providers", dict)
    if not providers:
        raise ConfigError("'providers' must define at least one provider")
    for code, p in providers.items():
        if not isinstance(p, dict):
            raise ConfigError(f"'providers.{code}' must be a mapping")
        ptype = str(_require(raw, f"providers.{code}.type", str)).lower()
        if ptype not in _PROVIDER_TYPES:
            raise ConfigError(
                f"Unknown providers.{code}.type '{ptype}' (expected one of {', '.join(_PROVIDER_TYPES)})."
            )
        p["type"] = ptype


def _check_models(raw: Dict[str, Any]) -> None:
    models = _require(raw, "models", list)
    if not models:
        raise ConfigError("'models' must list at least one model")
    seen = set()
    for i, m in enumerate(models):
        if not isinstance(m, dict):
            raise ConfigError(f"'models[{i}]' must be a mapping")
        for key in ("id", "provider", "model_id"):
            if not isinstance(m.get(key), str) or not m[key]:
                raise ConfigError(f"'models[{i}].{key}' must be a non-empty string")
        if m["id"] in seen:
            raise ConfigError(f"Duplicate model id '{m['id']}'")
        seen.add(m["id"])
        m["provider"] = m["provider"].lower()
        if m["provider"] not in raw["providers"]:
            raise ConfigError(f"models[{i}].provider '{m['provider']}' is not a configured provider")


def load_config(path: Path) -> Dict[str, Any]:
    if not path or not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Config is empty or invalid YAML: {path}")

    _require(raw, "server.host", str)
    _require(raw, "server.port", int)
    _require(raw, "runtime.stream", bool)

    # Provider keys are case-insensitive
    raw["providers"] = {str(k).lower(): v for k, v in (raw.get("providers") or {}).items()}
    _check_providers(raw)
    _check_models(raw)

    logging_cfg = raw.get("logging") or {}
    level = str(logging_cfg.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"Unknown logging.level '{level}'")
    logging_cfg["level"] = level
    raw["logging"] = logging_cfg

    # Relative paths are resolved by bootstrap against the config file's directory.
    return raw
