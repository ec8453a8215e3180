from __future__ import annotations
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from loguru import logger


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format="<green>{time:HH:mm:ss}</green> <level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(self, path: str = "logs/parley.log", rotation: str = "10 MB", retention: int = 3):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


_CONSUMER_TYPES: Dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS: List[Dict[str, Any]] = [{"type": "console"}]


def setup_logging(level: str = "INFO", consumers: Optional[List[Dict[str, Any]]] = None) -> List[str]:
    """Replace loguru's sinks with the configured consumers. Returns a description of each."""
    logger.remove()
    level = str(level).upper()

    descriptions: List[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = str(config.get("type", "")).lower()
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning("Unknown log consumer type: {!r}", sink_type)
            continue
        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = str(config.get("level", level)).upper()
        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))
    return descriptions
