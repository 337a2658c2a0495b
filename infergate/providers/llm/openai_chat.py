from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from infergate.core.errors import (
    ProviderConfigError,
    UpstreamError,
    UpstreamMalformedResponse,
    UpstreamRejected,
    UpstreamTimeout,
)
from infergate.providers.llm.base import Completion, CompletionOptions
from infergate.services.costs.metering import TokenUsage

logger = logging.getLogger(__name__)

_SSE_DATA_PREFIX = "data:"
_SSE_DONE = "[DONE]"


def _parse_usage(raw: Any) -> TokenUsage:
    # Provider-reported counts are exact by definition.
    if not isinstance(raw, dict):
        raise UpstreamMalformedResponse("Provider usage block is not an object.")
    try:
        prompt_tokens = int(raw["prompt_tokens"])
        completion_tokens = int(raw["completion_tokens"])
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamMalformedResponse("Provider usage block is incomplete.") from exc
    return TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, exact=True)


def _provider_error_message(response: httpx.Response) -> str | None:
    # Pull the provider's message for logs only; it is never returned to callers.
    try:
        body = response.json()
    except (ValueError, httpx.ResponseNotRead):
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
        return str(message) if message else None
    return None


def _rejected(response: httpx.Response) -> UpstreamRejected:
    logger.warning(
        "upstream_rejected status=%s detail=%s",
        response.status_code,
        _provider_error_message(response),
    )
    return UpstreamRejected(
        f"Model provider returned HTTP {response.status_code}.",
        status_code=response.status_code,
    )


class OpenAIChatStream:
    """Incremental chat-completion chunks read from an open HTTP response."""

    def __init__(self, response: httpx.Response, *, model: str) -> None:
        self.model = model
        self._response = response
        self._fragments = self._iter_fragments()
        self._parts: list[str] = []
        self._usage: TokenUsage | None = None
        self._closed = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def usage(self) -> TokenUsage | None:
        return self._usage

    def __aiter__(self) -> "OpenAIChatStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            fragment = await self._fragments.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except UpstreamError:
            await self.aclose()
            raise
        self._parts.append(fragment)
        return fragment

    async def aclose(self) -> None:
        # Closing the response drops the connection so the provider stops generating.
        if self._closed:
            return
        self._closed = True
        await self._fragments.aclose()
        await self._response.aclose()

    async def _iter_fragments(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                line = line.strip()
                if not line.startswith(_SSE_DATA_PREFIX):
                    continue
                data = line[len(_SSE_DATA_PREFIX):].strip()
                if data == _SSE_DONE:
                    return
                try:
                    chunk = json.loads(data)
                except ValueError as exc:
                    raise UpstreamMalformedResponse("Provider stream chunk is not valid JSON.") from exc
                if not isinstance(chunk, dict):
                    raise UpstreamMalformedResponse("Provider stream chunk is not an object.")
                if chunk.get("error"):
                    logger.warning("upstream_stream_error")
                    raise UpstreamRejected("Model provider aborted the stream.")
                if chunk.get("usage"):
                    self._usage = _parse_usage(chunk["usage"])
                for choice in chunk.get("choices") or []:
                    delta = (choice.get("delta") or {}).get("content")
                    if delta:
                        # Yield token deltas immediately to preserve streaming behavior.
                        yield delta
        except httpx.TimeoutException as exc:
            logger.warning("upstream_stream_timeout")
            raise UpstreamTimeout("Model provider stream timed out.") from exc
        except httpx.HTTPError as exc:
            logger.warning("upstream_stream_network_error")
            raise UpstreamError("Model provider stream failed.") from exc


class OpenAIChatProvider:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        stream_usage: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the openai provider.")
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._timeout_s = timeout_s
        self._stream_usage = stream_usage
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_s))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    def _payload(self, messages: list[dict], options: CompletionOptions, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stream": stream,
        }
        if stream and self._stream_usage:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def complete(self, messages: list[dict], options: CompletionOptions) -> Completion:
        client = self._get_client()
        logger.info("upstream_complete_start model=%s", options.model)
        try:
            response = await client.post(
                self._url,
                json=self._payload(messages, options, stream=False),
                headers=self._headers(),
            )
        except httpx.TimeoutException as exc:
            logger.warning("upstream_timeout")
            raise UpstreamTimeout("Model provider timed out.") from exc
        except httpx.HTTPError as exc:
            logger.warning("upstream_network_error")
            raise UpstreamError("Model provider unreachable.") from exc

        if response.status_code >= 400:
            raise _rejected(response)

        try:
            body = response.json()
            text = body["choices"][0]["message"]["content"]
            model = str(body.get("model") or options.model)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamMalformedResponse("Model provider returned an unreadable completion.") from exc
        if not isinstance(text, str):
            raise UpstreamMalformedResponse("Model provider returned no message content.")
        return Completion(text=text, model=model, usage=_parse_usage(body.get("usage")))

    async def open_stream(self, messages: list[dict], options: CompletionOptions) -> OpenAIChatStream:
        client = self._get_client()
        request = client.build_request(
            "POST",
            self._url,
            json=self._payload(messages, options, stream=True),
            headers=self._headers(),
        )
        logger.info("upstream_stream_start model=%s", options.model)
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            logger.warning("upstream_timeout")
            raise UpstreamTimeout("Model provider timed out.") from exc
        except httpx.HTTPError as exc:
            logger.warning("upstream_network_error")
            raise UpstreamError("Model provider unreachable.") from exc

        if response.status_code >= 400:
            # Read the error body before releasing the connection so it can be logged.
            try:
                await response.aread()
            except httpx.HTTPError as exc:
                logger.warning("upstream_error_body_unreadable", exc_info=exc)
            finally:
                await response.aclose()
            raise _rejected(response)
        return OpenAIChatStream(response, model=options.model)
