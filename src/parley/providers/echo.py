from __future__ import annotations
import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

from parley.providers.registry import ProviderRegistry
from parley.core.models import Usage
from parley.core.ports import Completion, StreamChunk

_LOREM_50 = (
    "Lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor "
    "incididunt ut labore et dolore magna aliqua Curabitur non nulla sit amet nisl "
    "tempor convallis quis ac lectus Phasellus viverra nulla ut metus varius laoreet "
    "Quisque rutrum Aenean imperdiet Etiam ultricies nisi vel augue Curabitur ullamcorper ultricies nisi"
).split()


@ProviderRegistry.register("echo")
class EchoProvider:
    """
    Offline stub that returns a fixed 50-word lorem ipsum.
    Streaming yields one word at a time with a small delay to simulate tokens.
    Usage is reported as word counts.
    """

    def __init__(self, token_delay: float = 0.125, words: Optional[List[str]] = None, model: str = "echo-lorem"):
        self.model = model
        self.token_delay = float(token_delay)
        self.words = list(words) if words is not None else list(_LOREM_50)

    @classmethod
    def create(cls, *, model_name: str, provider_cfg: Dict[str, Any], secrets) -> "EchoProvider":
        delay = (provider_cfg or {}).get("token_delay")
        return cls(token_delay=0.125 if delay is None else float(delay), model=model_name or "echo-lorem")

    def _usage(self, messages: List[Dict[str, Any]]) -> Usage:
        prompt = sum(len(str(m.get("content") or "").split()) for m in messages)
        return Usage(prompt_tokens=prompt, completion_tokens=len(self.words), total_tokens=prompt + len(self.words))

    async def generate(self, messages: List[Dict[str, Any]]) -> Completion:
        return Completion(text=" ".join(self.words), usage=self._usage(messages), finish_reason="stop")

    async def stream(self, messages: List[Dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        last_idx = len(self.words) - 1
        for i, w in enumerate(self.words):
            yield StreamChunk(text=w + ("" if i == last_idx else " "))
            if self.token_delay > 0:
                await asyncio.sleep(self.token_delay)
        yield StreamChunk(usage=self._usage(messages), finish_reason="stop")
