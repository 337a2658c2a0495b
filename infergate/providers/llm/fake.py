from __future__ import annotations

import re

from infergate.core.errors import UpstreamError
from infergate.providers.llm.base import Completion, CompletionOptions
from infergate.services.costs.metering import TokenUsage, estimate_prompt_tokens, estimate_tokens

# Split after whitespace so joined fragments reproduce the text byte for byte.
_FRAGMENT_BOUNDARY = re.compile(r"(?<=\s)(?=\S)")
_CHARS_PER_TOKEN = 4.0


def _usage_for(messages: list[dict], text: str) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=estimate_prompt_tokens(messages, ratio=_CHARS_PER_TOKEN),
        completion_tokens=estimate_tokens(text, ratio=_CHARS_PER_TOKEN),
        exact=True,
    )


class FakeChatStream:
    def __init__(
        self,
        fragments: list[str],
        *,
        model: str,
        final_usage: TokenUsage | None,
        error_after: int | None = None,
    ) -> None:
        self.model = model
        self._fragments = fragments
        self._final_usage = final_usage
        self._error_after = error_after
        self._index = 0
        self._parts: list[str] = []
        self._usage: TokenUsage | None = None
        self.closed = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def usage(self) -> TokenUsage | None:
        return self._usage

    def __aiter__(self) -> "FakeChatStream":
        return self

    async def __anext__(self) -> str:
        if self.closed:
            raise StopAsyncIteration
        if self._error_after is not None and self._index >= self._error_after:
            self.closed = True
            raise UpstreamError("Fake provider stream failed.")
        if self._index >= len(self._fragments):
            # The tally arrives with the last chunk, like providers that report stream usage.
            self._usage = self._final_usage
            self.closed = True
            raise StopAsyncIteration
        fragment = self._fragments[self._index]
        self._index += 1
        self._parts.append(fragment)
        return fragment

    async def aclose(self) -> None:
        self.closed = True


class FakeLLMProvider:
    def __init__(
        self,
        response: str = "This is a fake response.",
        *,
        stream_usage: bool = True,
        error: UpstreamError | None = None,
        stream_error_after: int | None = None,
    ) -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self._stream_usage = stream_usage
        self._error = error
        self._stream_error_after = stream_error_after
        self.calls: list[tuple[str, list[dict], CompletionOptions]] = []
        self.streams: list[FakeChatStream] = []

    def fragments(self) -> list[str]:
        return [part for part in _FRAGMENT_BOUNDARY.split(self._response) if part]

    async def complete(self, messages: list[dict], options: CompletionOptions) -> Completion:
        self.calls.append(("complete", messages, options))
        if self._error is not None:
            raise self._error
        return Completion(
            text=self._response,
            model=options.model,
            usage=_usage_for(messages, self._response),
        )

    async def open_stream(self, messages: list[dict], options: CompletionOptions) -> FakeChatStream:
        self.calls.append(("stream", messages, options))
        if self._error is not None:
            raise self._error
        stream = FakeChatStream(
            self.fragments(),
            model=options.model,
            final_usage=_usage_for(messages, self._response) if self._stream_usage else None,
            error_after=self._stream_error_after,
        )
        self.streams.append(stream)
        return stream

    async def aclose(self) -> None:
        return None
