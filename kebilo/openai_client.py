"""
Thin wrapper around the OpenAI Chat Completion API with an offline fallback.

Behaviour hierarchy:
1. If USE_OFFLINE_MODEL is set, return a deterministic placeholder without any
   external calls.
2. Otherwise call OpenAI, or Azure OpenAI when AZURE_OPENAI_ENDPOINT is set.

Missing credentials raise :class:`MissingAPIKeyError`; any other failure
during the call is converted into a RuntimeError so callers have a consistent
error path.
"""

import hashlib
import json
import os
from typing import Any, Dict, Iterator, List, Optional

from openai import OpenAI

AZURE_API_VERSION = "2024-02-15-preview"


class MissingAPIKeyError(RuntimeError):
    """Raised when neither OPENAI_API_KEY nor AZURE_OPENAI_API_KEY is set."""


def _use_offline() -> bool:
    return os.getenv("USE_OFFLINE_MODEL", "").lower() in {"1", "true", "yes"}


def _deterministic_placeholder(messages: List[Dict[str, str]]) -> str:
    """Return a deterministic placeholder string based on the message content."""
    joined = "\n".join(f"{m.get('role')}:{m.get('content','')}" for m in messages)
    h = hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]
    return f"Offline response ({h})"


def get_api_key() -> Optional[str]:
    return os.getenv("OPENAI_API_KEY") or os.getenv("AZURE_OPENAI_API_KEY")


def get_client() -> OpenAI:
    """Build a client for OpenAI or, when configured, an Azure deployment."""

    api_key = get_api_key()
    if not api_key:
        raise MissingAPIKeyError("Server misconfiguration: Missing API Key")
    endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    if endpoint:
        deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME", "")
        return OpenAI(
            api_key=api_key,
            base_url=f"{endpoint.rstrip('/')}/openai/deployments/{deployment}",
            default_query={"api-version": AZURE_API_VERSION},
            default_headers={"api-key": api_key},
        )
    return OpenAI(api_key=api_key)


def call_openai(
    messages: List[Dict[str, str]],
    model: str = "gpt-4o-mini",
    temperature: float = 0,
    max_tokens: Optional[int] = None,
) -> str:
    """Chat completion with an offline fallback.

    Args:
        messages: OpenAI-style message dicts.
        model: Remote model name (ignored in offline mode).
        temperature: Sampling temperature.
        max_tokens: Optional completion limit.
    Returns:
        Assistant response content string.
    Raises:
        MissingAPIKeyError when no key is configured, RuntimeError on failure.
    """
    if _use_offline():
        return _deterministic_placeholder(messages)

    client = get_client()
    kwargs: Dict[str, Any] = {"model": model, "messages": messages, "temperature": temperature}
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    try:
        response = client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        raise RuntimeError(f"Error calling OpenAI: {exc}") from exc


def _offline_chunks(messages: List[Dict[str, str]]) -> Iterator[Dict[str, Any]]:
    text = _deterministic_placeholder(messages)
    words = text.split(" ")
    for index, word in enumerate(words):
        piece = word if index == len(words) - 1 else f"{word} "
        yield {
            "id": "offline",
            "object": "chat.completion.chunk",
            "model": "offline",
            "choices": [{"index": 0, "delta": {"content": piece}, "finish_reason": None}],
        }


def stream_chat(
    messages: List[Dict[str, str]],
    model: str = "gpt-4o-mini",
    temperature: float = 0,
    max_tokens: Optional[int] = None,
) -> Iterator[Dict[str, Any]]:
    """Return an iterator of streamed completion chunks (as plain dicts).

    Configuration and connection errors are raised here, before iteration
    starts; failures while reading the stream surface as RuntimeError.
    """

    if _use_offline():
        return _offline_chunks(messages)

    client = get_client()
    kwargs: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "stream": True,
    }
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    try:
        stream = client.chat.completions.create(**kwargs)
    except Exception as exc:
        raise RuntimeError(f"Error calling OpenAI: {exc}") from exc
    return _remote_chunks(stream)


def _remote_chunks(stream: Any) -> Iterator[Dict[str, Any]]:
    try:
        for chunk in stream:
            if not chunk.choices or not chunk.choices[0].delta.content:
                continue
            yield chunk.model_dump()
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        raise RuntimeError(f"Error calling OpenAI: {exc}") from exc


def sse_event(payload: Any) -> str:
    """Format *payload* as a server-sent ``data:`` event."""
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload)}\n\n"


__all__ = [
    "MissingAPIKeyError",
    "call_openai",
    "get_client",
    "sse_event",
    "stream_chat",
]
