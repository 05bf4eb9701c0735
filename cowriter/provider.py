"""LLM provider client for OpenAI-compatible chat completion APIs.

Supports a real mode (forwarding to the provider endpoint) and a stub mode
that returns canned responses when no API key is configured, so the service
can run without credentials.
"""

import json
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from cowriter.config import ProviderConfig

Message = Dict[str, str]


class ProviderError(Exception):
    """Raised when the upstream provider fails or returns an unusable payload."""

    def __init__(self, provider: str, detail: str) -> None:
        self.provider = provider
        self.detail = detail
        super().__init__("Provider '{}' error: {}".format(provider, detail))


@dataclass(frozen=True)
class ChatOptions:
    """Per-call options derived from an LLM configuration."""

    provider: str
    model: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def with_model(self, model: str) -> "ChatOptions":
        """Return a copy targeting a different model."""
        return replace(self, model=model)


@dataclass(frozen=True)
class UsageStatistics:
    """Token accounting reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: Optional[float] = None


@dataclass(frozen=True)
class CompletionResponse:
    """Raw (unescaped) completion result."""

    content: str
    model: str
    usage: UsageStatistics
    finish_reason: str = "stop"
    provider: str = ""


_STUB_RESPONSE = (
    "This is a stub response from cowriter. "
    "Configure a valid API key to get real completions."
)


class LlmService:
    """Dispatches chat calls to the configured providers."""

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._providers = providers
        self._timeout = timeout
        self._transport = transport

    async def chat(
        self, messages: List[Message], options: ChatOptions
    ) -> CompletionResponse:
        """Send a chat completion request.

        Raises:
            ProviderError: On unknown provider, transport failure, non-2xx
                status or malformed response body.
        """
        provider = self._get_provider(options.provider)
        api_key = provider.api_key
        if not api_key:
            return _stub_response(provider, messages, options)

        url = "{}/chat/completions".format(provider.base_url.rstrip("/"))
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    url,
                    json=_build_payload(messages, options, stream=False),
                    headers=_headers(api_key),
                )
                resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                provider.name, "HTTP {}".format(exc.response.status_code)
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(provider.name, str(exc)) from exc

        return _parse_completion(provider, options, data)

    async def stream_chat(
        self, messages: List[Message], options: ChatOptions
    ) -> AsyncIterator[str]:
        """Yield content deltas from a streaming chat completion.

        Raises:
            ProviderError: Same conditions as chat().
        """
        provider = self._get_provider(options.provider)
        api_key = provider.api_key
        if not api_key:
            for word in _STUB_RESPONSE.split(" "):
                yield word + " "
            return

        url = "{}/chat/completions".format(provider.base_url.rstrip("/"))
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                async with client.stream(
                    "POST",
                    url,
                    json=_build_payload(messages, options, stream=True),
                    headers=_headers(api_key),
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        chunk = _parse_stream_line(line)
                        if chunk is None:
                            continue
                        if chunk == "":
                            break
                        yield chunk
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                provider.name, "HTTP {}".format(exc.response.status_code)
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(provider.name, str(exc)) from exc

    def _get_provider(self, name: str) -> ProviderConfig:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderError(name, "provider is not configured")
        return provider


def _headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": "Bearer {}".format(api_key),
        "Content-Type": "application/json",
    }


def _build_payload(
    messages: List[Message], options: ChatOptions, stream: bool
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": options.model,
        "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
    }
    if options.temperature is not None:
        payload["temperature"] = options.temperature
    if options.max_tokens is not None:
        payload["max_tokens"] = options.max_tokens
    if stream:
        payload["stream"] = True
    return payload


def _parse_completion(
    provider: ProviderConfig, options: ChatOptions, data: Any
) -> CompletionResponse:
    """Map an OpenAI-style response body to a CompletionResponse."""
    if not isinstance(data, dict):
        raise ProviderError(provider.name, "response body is not an object")

    try:
        choice = (data.get("choices") or [{}])[0]
        msg = choice.get("message") or {}
        usage_raw = data.get("usage") or {}
        usage = UsageStatistics(
            prompt_tokens=int(usage_raw.get("prompt_tokens") or 0),
            completion_tokens=int(usage_raw.get("completion_tokens") or 0),
            total_tokens=int(usage_raw.get("total_tokens") or 0),
        )
        content = msg.get("content") or ""
        finish_reason = choice.get("finish_reason") or ""
    except (AttributeError, IndexError, KeyError, TypeError, ValueError) as exc:
        raise ProviderError(
            provider.name, "malformed response body: {}".format(exc)
        ) from exc

    return CompletionResponse(
        content=str(content),
        model=str(data.get("model") or options.model),
        usage=usage,
        finish_reason=str(finish_reason),
        provider=provider.name,
    )


def _parse_stream_line(line: str) -> Optional[str]:
    """Extract the content delta from one SSE line.

    Returns None for lines without content and "" for the end marker.
    """
    if not line.startswith("data:"):
        return None
    raw = line[len("data:"):].strip()
    if raw == "[DONE]":
        return ""
    event = json.loads(raw)
    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) and content else None


def _stub_response(
    provider: ProviderConfig, messages: List[Message], options: ChatOptions
) -> CompletionResponse:
    """Return a canned response for running without real API keys."""
    prompt_tokens = sum(len(m["content"].split()) for m in messages)
    stub_tokens = len(_STUB_RESPONSE.split())
    return CompletionResponse(
        content=_STUB_RESPONSE,
        model=options.model,
        usage=UsageStatistics(
            prompt_tokens=prompt_tokens,
            completion_tokens=stub_tokens,
            total_tokens=prompt_tokens + stub_tokens,
        ),
        finish_reason="stop",
        provider=provider.name,
    )
