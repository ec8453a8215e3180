# src/parley/core/context.py
from __future__ import annotations
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import tiktoken
from loguru import logger

from .models import DEFAULT_CONTEXT_LENGTH, Message, MessageRole
from .ports import Turn

# Per-message overhead (role tags, separators).
MESSAGE_OVERHEAD_TOKENS = 4

# Family prefixes tried in order when the exact model name is unknown to
# tiktoken: (prefix, ("model", name) | ("encoding", name)).
FAMILY_PREFIXES: Tuple[Tuple[str, Tuple[str, str]], ...] = (
    ("gpt-4o", ("model", "gpt-4o")),
    ("gpt-4", ("model", "gpt-4")),
    ("gpt-3.5-turbo", ("model", "gpt-3.5-turbo")),
    ("o1", ("encoding", "o200k_base")),
    # No public Claude tokenizer; approximate with the gpt-3.5 encoding.
    ("claude-", ("model", "gpt-3.5-turbo")),
)
DEFAULT_ENCODING = "cl100k_base"


def _resolve(kind: str, name: str) -> tiktoken.Encoding:
    if kind == "model":
        return tiktoken.encoding_for_model(name)
    return tiktoken.get_encoding(name)


@lru_cache(maxsize=64)
def encoding_for_model(model_id: str, prefixes: Tuple[Tuple[str, Tuple[str, str]], ...] = FAMILY_PREFIXES) -> tiktoken.Encoding:
    """
    Exact tiktoken lookup, then family prefixes, then the default encoding.
    Never raises for an unknown model name.
    """
    if model_id:
        try:
            return tiktoken.encoding_for_model(model_id)
        except KeyError:
            pass
    for prefix, (kind, name) in prefixes:
        if model_id.startswith(prefix):
            try:
                return _resolve(kind, name)
            except (KeyError, ValueError):
                logger.warning("tokenizer {}:{} unavailable for {}; trying next", kind, name, model_id)
    return tiktoken.get_encoding(DEFAULT_ENCODING)


class TokenCounter:
    """
    Counts tokens for OpenAI-style turns with a tokenizer picked from the model id.
    count_messages(ms) is exactly sum(count(m) for m in ms).
    """
    def __init__(self, model_id: str = "", prefixes: Optional[Sequence[Tuple[str, Tuple[str, str]]]] = None):
        self.model_id = model_id
        self._enc = encoding_for_model(model_id, tuple(prefixes) if prefixes is not None else FAMILY_PREFIXES)

    @property
    def encoding_name(self) -> str:
        return self._enc.name

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return len(self._enc.encode(text, disallowed_special=()))

    def count(self, message: Optional[Turn]) -> int:
        if message is None:
            return 0
        return self.count_text(str(message.get("content") or "")) + MESSAGE_OVERHEAD_TOKENS

    def count_messages(self, messages: Iterable[Turn]) -> int:
        return sum(self.count(m) for m in messages)

    count_all = count_messages


@dataclass(frozen=True)
class ContextPolicy:
    """
    context_length: the model's full window (prompt + reply).
    reserve_ratio: share of the window held back for the reply and the new input.
    """
    context_length: int = DEFAULT_CONTEXT_LENGTH
    reserve_ratio: float = 0.2

    @property
    def available_tokens(self) -> int:
        length = self.context_length if self.context_length > 0 else DEFAULT_CONTEXT_LENGTH
        return length - int(length * self.reserve_ratio)


HistoryItem = Union[Message, Turn]


def _to_turn(item: HistoryItem) -> Optional[Turn]:
    if isinstance(item, Message):
        role = item.role.value if isinstance(item.role, MessageRole) else str(item.role)
        content = item.content
    else:
        role = str(item.get("role", ""))
        content = str(item.get("content") or "")
    if role not in ("system", "user", "assistant"):
        return None
    return {"role": role, "content": content}


class ContextWindowManager:
    """
    Fits history plus new input into the model's window.
    System turns are always kept, in order, ahead of everything else. The
    conversational turns (history + new input) are trimmed oldest-first with
    a sliding window that keeps the most recent turns fitting the budget.
    """
    def __init__(self, policy: ContextPolicy, model_id: str = "", counter: Optional[TokenCounter] = None):
        self.policy = policy
        self.counter = counter or TokenCounter(model_id=model_id)

    def build(self, history: Iterable[HistoryItem], new_user_inputs: Iterable[str] = ()) -> List[Turn]:
        system: List[Turn] = []
        conversation: List[Turn] = []
        for item in history:
            turn = _to_turn(item)
            if turn is None:
                continue
            (system if turn["role"] == "system" else conversation).append(turn)

        budget = max(0, self.policy.available_tokens - self.counter.count_messages(system))

        conversation.extend({"role": "user", "content": text} for text in new_user_inputs)
        trimmed = self.trim(conversation, budget)

        if len(trimmed) < len(conversation):
            logger.debug(
                "context trimmed {} -> {} turns (budget={}, model={})",
                len(conversation), len(trimmed), budget, self.counter.model_id,
            )
        return system + trimmed

    def trim(self, messages: List[Turn], max_tokens: int) -> List[Turn]:
        if not messages:
            return []
        if self.counter.count_messages(messages) <= max_tokens:
            return list(messages)

        kept: List[Turn] = []
        used = 0
        for m in reversed(messages):
            cost = self.counter.count(m)
            if used + cost > max_tokens:
                break
            kept.append(m)
            used += cost
        kept.reverse()
        return kept
