# src/parley/providers/openai_adapter.py
from __future__ import annotations
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import APIConnectionError, AsyncOpenAI

from parley.providers.registry import ProviderRegistry
from parley.core.errors import ProviderClientError, ProviderError, ProviderTransientError
from parley.core.models import ProviderType, Usage
from parley.core.ports import Completion, StreamChunk

OLLAMA_BASE_URL = "http://localhost:11434/v1"
# Ollama ignores the key but the SDK requires one.
_LOCAL_API_KEY = "ollama"

_TRANSIENT_HINTS = ("rate limit", "temporarily unavailable", "overloaded", "timeout", "timed out", "connection")
_CLIENT_HINTS = ("invalid_request_error", "unsupported", "parameter", "authentication", "api key")


def classify_error(exc: Exception) -> ProviderError:
    """
    Map an SDK (or transport) exception onto ProviderClientError or
    ProviderTransientError. HTTP status wins when the exception carries one;
    otherwise the message is matched against known hints, and anything
    unrecognised is treated as transient.
    """
    if isinstance(exc, ProviderError):
        return exc
    msg = str(exc)
    if isinstance(exc, APIConnectionError):  # includes APITimeoutError
        return ProviderTransientError(msg)

    status = getattr(exc, "status_code", None)
    if status is not None:
        status = int(status)
        return ProviderTransientError(msg) if status == 429 or status >= 500 else ProviderClientError(msg)

    lower = msg.lower()
    if any(h in lower for h in _TRANSIENT_HINTS):
        return ProviderTransientError(msg)
    if any(h in lower for h in _CLIENT_HINTS):
        return ProviderClientError(msg)
    return ProviderTransientError(msg)


def _usage(raw: Any) -> Optional[Usage]:
    if raw is None:
        return None
    return Usage(
        prompt_tokens=int(getattr(raw, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(raw, "completion_tokens", 0) or 0),
        total_tokens=int(getattr(raw, "total_tokens", 0) or 0),
    )


@ProviderRegistry.register(ProviderType.OPENAI, ProviderType.CUSTOM, ProviderType.LOCAL)
class OpenAIAdapter:
    """
    Chat-completions backend for OpenAI and any OpenAI-compatible endpoint
    (custom gateways, Ollama as `local`). `params` arrive already filtered by
    the provider's param policy and are sent as is.
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        client: Any = None,
    ):
        self.model = model
        self.params = dict(params or {})
        self.timeout = timeout
        if client is None:
            options = {
                "base_url": base_url,
                "organization": organization,
                "default_headers": dict(extra_headers) if extra_headers else None,
            }
            client = AsyncOpenAI(api_key=api_key, **{k: v for k, v in options.items() if v})
        self.client = client

    @classmethod
    def create(cls, *, model_name: str, provider_cfg: Dict[str, Any], secrets) -> "OpenAIAdapter":
        cfg = provider_cfg or {}
        code = cfg.get("name") or "openai"
        kind = ProviderType(str(cfg.get("type") or "openai").lower())
        base_url = cfg.get("base_url")
        api_key = secrets.secret(code, "api_key")

        if kind == ProviderType.LOCAL:
            base_url = base_url or OLLAMA_BASE_URL
            api_key = api_key or _LOCAL_API_KEY
        elif kind == ProviderType.CUSTOM and not base_url:
            raise ProviderClientError(f"Provider '{code}' of type 'custom' needs a base_url")
        if not api_key:
            raise ProviderClientError(f"No API key for provider '{code}'")

        return cls(
            model_name,
            api_key,
            params=cfg.get("params"),
            timeout=cfg.get("timeout"),
            base_url=base_url,
            organization=cfg.get("organization"),
            extra_headers=cfg.get("extra_headers"),
        )

    def _request(self, messages: List[Dict[str, Any]], stream: bool) -> Dict[str, Any]:
        request: Dict[str, Any] = {**self.params, "model": self.model, "messages": messages, "stream": stream}
        if stream:
            # Usage arrives on a final chunk with no choices.
            request["stream_options"] = {"include_usage": True}
        if self.timeout is not None:
            request["timeout"] = self.timeout
        return request

    async def generate(self, messages: List[Dict[str, Any]]) -> Completion:
        try:
            resp = await self.client.chat.completions.create(**self._request(messages, stream=False))
        except Exception as e:
            raise classify_error(e) from e
        choice = resp.choices[0]
        return Completion(
            text=choice.message.content or "",
            usage=_usage(getattr(resp, "usage", None)),
            finish_reason=getattr(choice, "finish_reason", None),
        )

    async def stream(self, messages: List[Dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        try:
            chunks = await self.client.chat.completions.create(**self._request(messages, stream=True))
            async for chunk in chunks:
                usage = _usage(getattr(chunk, "usage", None))
                if not chunk.choices:
                    if usage is not None:
                        yield StreamChunk(usage=usage)
                    continue
                choice = chunk.choices[0]
                text = getattr(choice.delta, "content", None) or ""
                finish = getattr(choice, "finish_reason", None)
                if text or finish or usage is not None:
                    yield StreamChunk(text=text, usage=usage, finish_reason=finish)
        except Exception as e:
            raise classify_error(e) from e
