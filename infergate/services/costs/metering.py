from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping


USAGE_SOURCE_PROVIDER = "provider"
USAGE_SOURCE_ESTIMATED = "estimated"

# Per-message framing overhead charged by chat-completion providers.
_MESSAGE_OVERHEAD_TOKENS = 4


@dataclass(frozen=True)
class TokenUsage:
    # Exact counts come from the provider; approximations are flagged so the ledger never blends them silently.
    prompt_tokens: int
    completion_tokens: int
    exact: bool = True

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def source(self) -> str:
        return USAGE_SOURCE_PROVIDER if self.exact else USAGE_SOURCE_ESTIMATED


def estimate_tokens(text: str, *, ratio: float) -> int:
    # Deterministically estimate token counts when provider metadata is missing.
    if not text:
        return 0
    return max(1, int(len(text) / max(ratio, 0.1)))


def estimate_prompt_tokens(messages: Iterable[Mapping[str, str]], *, ratio: float) -> int:
    # Sum content estimates plus a fixed per-message overhead for role framing.
    total = 0
    for message in messages:
        total += estimate_tokens(message.get("content", ""), ratio=ratio) + _MESSAGE_OVERHEAD_TOKENS
    return total


def estimate_usage(
    messages: Iterable[Mapping[str, str]],
    completion_text: str,
    *,
    ratio: float,
) -> TokenUsage:
    # Client-side fallback tally for streams that ended without provider usage.
    return TokenUsage(
        prompt_tokens=estimate_prompt_tokens(messages, ratio=ratio),
        completion_tokens=estimate_tokens(completion_text, ratio=ratio),
        exact=False,
    )
