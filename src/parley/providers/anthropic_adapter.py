# src/parley/providers/anthropic_adapter.py
from __future__ import annotations
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import anthropic

from parley.providers.registry import ProviderRegistry
from parley.core.errors import ProviderClientError, ProviderTransientError
from parley.core.models import Usage
from parley.core.ports import Completion, StreamChunk

DEFAULT_MAX_TOKENS = 4096

_TRANSIENT = (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.APITimeoutError, anthropic.InternalServerError)


def _classify_anthropic_exception(exc: Exception) -> Exception:
    if isinstance(exc, _TRANSIENT):
        return ProviderTransientError(str(exc))
    status = getattr(exc, "status_code", None)
    if status is not None:
        s = int(status)
        if s == 429 or s >= 500:
            return ProviderTransientError(str(exc))
        return ProviderClientError(str(exc))
    return ProviderTransientError(str(exc))


def split_system(messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """The messages API takes system text as a separate parameter."""
    system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system" and m.get("content"))
    rest = [{"role": m["role"], "content": m["content"]} for m in messages if m.get("role") in ("user", "assistant")]
    return system, rest


def _usage(raw: Any) -> Optional[Usage]:
    if raw is None:
        return None
    prompt = int(getattr(raw, "input_tokens", 0) or 0)
    completion = int(getattr(raw, "output_tokens", 0) or 0)
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


@ProviderRegistry.register("anthropic")
class AnthropicAdapter:
    """
    Claude messages-API adapter. max_tokens is mandatory for this API and
    defaults to 4096 when the model config leaves it unset.
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        base_url: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        client: Any = None,
    ):
        self.model = model
        client_kwargs: Dict[str, Any] = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        if extra_headers:
            client_kwargs["default_headers"] = dict(extra_headers)
        self.client = client if client is not None else anthropic.AsyncAnthropic(**client_kwargs)
        self.params = dict(params or {})
        self.params.setdefault("max_tokens", DEFAULT_MAX_TOKENS)
        # Not part of the messages API.
        for key in ("frequency_penalty", "presence_penalty"):
            self.params.pop(key, None)

    @classmethod
    def create(cls, *, model_name: str, provider_cfg: Dict[str, Any], secrets) -> "AnthropicAdapter":
        cfg = provider_cfg or {}
        name = cfg.get("name") or "anthropic"
        api_key = secrets.secret(name, "api_key")
        if not api_key:
            raise ProviderClientError(f"No API key for '{name}'")
        return cls(
            model=model_name,
            api_key=api_key,
            params=cfg.get("params") or {},
            timeout=cfg.get("timeout"),
            base_url=cfg.get("base_url"),
            extra_headers=cfg.get("extra_headers"),
        )

    def _build_args(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        system, rest = split_system(messages)
        args: Dict[str, Any] = {"model": self.model, "messages": rest, **self.params}
        if system:
            args["system"] = system
        return args

    async def generate(self, messages: List[Dict[str, Any]]) -> Completion:
        try:
            resp = await self.client.messages.create(**self._build_args(messages))
        except Exception as e:
            raise _classify_anthropic_exception(e) from e
        text = "".join(getattr(b, "text", "") for b in resp.content if getattr(b, "type", "") == "text")
        return Completion(text=text, usage=_usage(resp.usage), finish_reason=resp.stop_reason)

    async def stream(self, messages: List[Dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        try:
            async with self.client.messages.stream(**self._build_args(messages)) as stream:
                async for event in stream:
                    if event.type == "content_block_delta" and event.delta.type == "text_delta":
                        if event.delta.text:
                            yield StreamChunk(text=event.delta.text)
                final = await stream.get_final_message()
        except Exception as e:
            raise _classify_anthropic_exception(e) from e
        yield StreamChunk(usage=_usage(final.usage), finish_reason=final.stop_reason)
