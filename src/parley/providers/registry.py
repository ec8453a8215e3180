from __future__ import annotations
from importlib import import_module
from typing import Callable, Dict, List, Type, Union

from parley.core.models import ProviderType

_BUILTIN_ADAPTERS = (
    "parley.providers.openai_adapter",
    "parley.providers.anthropic_adapter",
    "parley.providers.echo",
)


def _key(name: Union[str, ProviderType]) -> str:
    return (name.value if isinstance(name, ProviderType) else str(name)).lower()


class ProviderRegistry:
    """
    Adapter classes by provider type. One adapter may serve several types
    (the OpenAI adapter handles openai, custom and local).
    """
    _classes: Dict[str, Type] = {}

    @classmethod
    def register(cls, *names: Union[str, ProviderType]) -> Callable[[Type], Type]:
        keys = [_key(n) for n in names]

        def deco(klass: Type) -> Type:
            for key in keys:
                cls._classes[key] = klass
            return klass
        return deco

    @classmethod
    def get(cls, name: Union[str, ProviderType]) -> Type:
        try:
            return cls._classes[_key(name)]
        except KeyError:
            raise KeyError(f"No adapter registered for provider type '{_key(name)}'") from None

    @classmethod
    def names(cls) -> List[str]:
        return sorted(cls._classes)

    @classmethod
    def ensure_imports(cls) -> None:
        """Import the built-in adapters so their @register decorators run. Call once at bootstrap."""
        for module in _BUILTIN_ADAPTERS:
            import_module(module)
