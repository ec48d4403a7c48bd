"""Endpoint resolution and the default urllib HTTP transport."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import AuthenticationError, RateLimitError, TransportError
from .adapters import (
    AnthropicAdapter,
    CustomAdapter,
    GoogleAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ProviderAdapter,
    ProviderKind,
)

__all__ = [
    "DEFAULT_MODELS",
    "HttpTransport",
    "ProviderSettings",
    "adapter_for",
    "http_transport",
    "is_local_endpoint",
    "resolve_endpoint",
]

LOGGER = logging.getLogger(__name__)

HttpTransport = Callable[[str, Dict[str, str], Dict[str, Any], float], str]

DEFAULT_MODELS: Dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "gpt-4",
    ProviderKind.ANTHROPIC: "claude-3-5-sonnet-20241022",
    ProviderKind.GOOGLE: "gemini-2.0-flash",
    ProviderKind.OLLAMA: "llama3.1",
    ProviderKind.CUSTOM: "gemini-2.0-flash",
}

_DEFAULT_BASE_URLS: Dict[ProviderKind, str] = {
    ProviderKind.GOOGLE: "https://generativelanguage.googleapis.com",
    ProviderKind.OPENAI: "https://api.openai.com",
    ProviderKind.ANTHROPIC: "https://api.anthropic.com",
    ProviderKind.OLLAMA: "http://localhost:11434",
}

_LOCAL_MARKERS = ("localhost", "127.0.0.1", "ollama", ":11434")


@dataclass(slots=True)
class ProviderSettings:
    """Provider selection shared by the credential source and the client."""

    kind: ProviderKind = ProviderKind.GOOGLE
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_keys: List[str] = field(default_factory=list)
    max_tokens: Optional[int] = None
    interactive_timeout: float = 60.0
    generation_timeout: float = 300.0

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.kind]

    @property
    def requires_key(self) -> bool:
        if self.kind is ProviderKind.OLLAMA:
            return False
        if self.kind is ProviderKind.CUSTOM:
            return not is_local_endpoint(self.base_url or "")
        return True


def is_local_endpoint(url: str) -> bool:
    return any(marker in url for marker in _LOCAL_MARKERS)


def adapter_for(kind: ProviderKind, base_url: Optional[str] = None) -> ProviderAdapter:
    """Return the adapter speaking ``kind``'s wire format."""
    if kind is ProviderKind.OPENAI:
        return OpenAIAdapter()
    if kind is ProviderKind.ANTHROPIC:
        return AnthropicAdapter()
    if kind is ProviderKind.OLLAMA:
        return OllamaAdapter()
    if kind is ProviderKind.CUSTOM:
        if base_url and is_local_endpoint(base_url):
            return OllamaAdapter()
        return CustomAdapter()
    return GoogleAdapter()


def resolve_endpoint(
    settings: ProviderSettings, api_key: Optional[str], *, stream: bool = False
) -> Tuple[str, Dict[str, str]]:
    """Return the POST URL and headers for one request."""
    kind = settings.kind
    model = settings.resolved_model
    base = (settings.base_url or _DEFAULT_BASE_URLS.get(kind, "")).rstrip("/")
    headers = {"Content-Type": "application/json"}

    if kind is ProviderKind.GOOGLE:
        if stream:
            url = f"{base}/v1beta/models/{model}:streamGenerateContent?alt=sse&key={api_key or ''}"
        else:
            url = f"{base}/v1beta/models/{model}:generateContent?key={api_key or ''}"
        return url, headers
    if kind is ProviderKind.OPENAI:
        headers["Authorization"] = f"Bearer {api_key or ''}"
        return f"{base}/v1/chat/completions", headers
    if kind is ProviderKind.ANTHROPIC:
        headers["x-api-key"] = api_key or ""
        headers["anthropic-version"] = "2023-06-01"
        return f"{base}/v1/messages", headers
    if kind is ProviderKind.OLLAMA:
        return base if base.endswith("/api/chat") else f"{base}/api/chat", headers

    if not base:
        raise TransportError("Custom provider requires a base_url.")
    if is_local_endpoint(base):
        return base if base.endswith("/api/chat") else f"{base}/api/chat", headers
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return base, headers


def http_transport(url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: float) -> str:
    """POST ``payload`` as JSON and return the decoded body, classifying HTTP failures."""
    import urllib.error
    import urllib.request

    if os.getenv("RELAY_DEBUG_PAYLOAD"):
        LOGGER.debug("Request to %s: %s", url.split("?")[0], json.dumps(payload, indent=2, sort_keys=True))

    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(url, data=data, headers=headers, method="POST")

    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read()
            status = getattr(response, "status", 200)
    except TimeoutError as error:  # pragma: no cover - network-dependent
        raise TransportError(f"Request timed out after {timeout:.0f}s.") from error
    except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
        message = error.read().decode("utf-8", errors="ignore")
        raise classify_http_error(error.code, message) from error
    except urllib.error.URLError as error:  # pragma: no cover - network-dependent
        raise TransportError(f"Failed to reach provider endpoint: {error.reason}") from error

    if status >= 400:
        raise classify_http_error(status, "")
    return raw.decode("utf-8")


def classify_http_error(status: int, message: str) -> TransportError:
    """Map an HTTP status to the matching transport error type."""
    text = f"HTTP {status}: {message}".strip()
    if status in (401, 403):
        return AuthenticationError(text, status=status)
    if status in (429, 503):
        return RateLimitError(text, status=status)
    return TransportError(text, status=status)
