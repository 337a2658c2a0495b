from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from infergate.services.costs.metering import TokenUsage


@dataclass(frozen=True)
class CompletionOptions:
    model: str
    temperature: float = 0.7
    max_tokens: int = 500

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    usage: TokenUsage


class ChatStream(Protocol):
    """Lazy, finite, non-restartable sequence of text fragments.

    `text` accumulates the fragments yielded so far. `usage` holds the
    provider's final tally once reported, or None. `aclose()` releases the
    upstream transport and is safe to call more than once.
    """

    model: str

    @property
    def text(self) -> str:
        ...

    @property
    def usage(self) -> TokenUsage | None:
        ...

    def __aiter__(self) -> AsyncIterator[str]:
        ...

    async def __anext__(self) -> str:
        ...

    async def aclose(self) -> None:
        ...


class LLMProvider(Protocol):
    async def complete(self, messages: list[dict], options: CompletionOptions) -> Completion:
        ...

    async def open_stream(self, messages: list[dict], options: CompletionOptions) -> ChatStream:
        ...

    async def aclose(self) -> None:
        ...
