from __future__ import annotations
import asyncio
import random
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Tuple, Type

from loguru import logger

from parley.core.errors import ProviderClientError, ProviderError, ProviderTransientError
from parley.core.ports import Completion, StreamChunk, Turn


@dataclass
class ResiliencePolicy:
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    total_timeout: float = 30.0
    # Raw exceptions that count as transient besides ProviderTransientError.
    retry_exceptions: Tuple[Type[BaseException], ...] = (TimeoutError, asyncio.TimeoutError)

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "ResiliencePolicy":
        cfg = cfg or {}
        default = cls()
        return cls(
            max_retries=int(cfg.get("max_retries", default.max_retries)),
            base_delay=float(cfg.get("base_delay", default.base_delay)),
            max_delay=float(cfg.get("max_delay", default.max_delay)),
            total_timeout=float(cfg.get("total_timeout", default.total_timeout)),
        )

    def retryable(self, exc: Exception) -> bool:
        if isinstance(exc, ProviderClientError):
            return False
        return isinstance(exc, ProviderTransientError) or isinstance(exc, self.retry_exceptions)

    def compute_backoff(self, attempt: int) -> float:
        """Exponential backoff with up to 100ms of jitter, capped at max_delay."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)) + random.random() * 0.1)


class _Attempts:
    """Attempt counter and deadline for one logical call."""

    def __init__(self, policy: ResiliencePolicy):
        self.policy = policy
        self.count = 0
        self.started = time.monotonic()

    def begin(self) -> None:
        self.count += 1

    def backoff(self, exc: Exception) -> Optional[float]:
        """Delay before the next attempt, or None when the call should give up."""
        if not self.policy.retryable(exc) or self.count > self.policy.max_retries:
            return None
        if time.monotonic() - self.started > self.policy.total_timeout:
            return None
        return self.policy.compute_backoff(self.count)


def _final_error(what: str, exc: Exception) -> ProviderError:
    # Keep the client/transient distinction for callers.
    kind = type(exc) if isinstance(exc, ProviderError) else ProviderError
    return kind(f"Provider {what} failed after retries: {exc}")


class ResilientProvider:
    """
    Retry wrapper around a backend adapter. Client errors are never retried;
    a stream is only retried before its first chunk, so a client never sees
    duplicated text.
    """

    def __init__(self, inner, policy: ResiliencePolicy):
        self.inner = inner
        self.policy = policy
        self.model = getattr(inner, "model", "unknown")

    async def _wait(self, what: str, attempts: _Attempts, exc: Exception) -> None:
        delay = attempts.backoff(exc)
        if delay is None:
            raise _final_error(what, exc) from exc
        logger.warning("{} {} failed (attempt {}), retrying in {:.2f}s: {}", self.model, what, attempts.count, delay, exc)
        await asyncio.sleep(delay)

    async def generate(self, messages: List[Turn]) -> Completion:
        attempts = _Attempts(self.policy)
        while True:
            attempts.begin()
            try:
                return await self.inner.generate(messages)
            except Exception as e:
                await self._wait("call", attempts, e)

    async def stream(self, messages: List[Turn]) -> AsyncIterator[StreamChunk]:
        attempts = _Attempts(self.policy)
        started = False
        while True:
            attempts.begin()
            try:
                async for chunk in self.inner.stream(messages):
                    started = True
                    yield chunk
                return
            except Exception as e:
                if started:
                    raise _final_error("stream", e) from e
                await self._wait("stream", attempts, e)
