"""Provider client: one request/response primitive shared by the turn loop and the pipeline."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .adapters import ParsedResponse, ProviderAdapter
from .credentials import CredentialSource
from .messages import FunctionDeclaration, Message
from .transport import HttpTransport, ProviderSettings, adapter_for, http_transport, resolve_endpoint

__all__ = ["ProviderClient"]

LOGGER = logging.getLogger(__name__)


class ProviderClient:
    """Build, send, and parse one provider request."""

    def __init__(
        self,
        settings: ProviderSettings,
        credentials: Optional[CredentialSource] = None,
        *,
        transport: Optional[HttpTransport] = None,
        adapter: Optional[ProviderAdapter] = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials or CredentialSource(
            settings.api_keys, model=settings.resolved_model, requires_key=settings.requires_key
        )
        self._transport = transport or http_transport
        self._adapter = adapter or adapter_for(settings.kind, settings.base_url)

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    @property
    def model(self) -> str:
        return self._credentials.get_current_model()

    def generate(
        self,
        history: Sequence[Message],
        tools: Sequence[FunctionDeclaration] = (),
        system_prompt: Optional[str] = None,
        *,
        include_tools: bool = True,
        long_running: bool = False,
        stream: bool = False,
    ) -> ParsedResponse:
        """Send ``history`` and return the normalised response.

        ``long_running`` selects the generation timeout used by pipeline phases
        instead of the short interactive one.
        """
        body = self._adapter.build_request(
            history,
            tools,
            system_prompt,
            model=self.model,
            include_tools=include_tools,
            stream=stream,
            max_tokens=self._settings.max_tokens,
        )
        timeout = self._settings.generation_timeout if long_running else self._settings.interactive_timeout

        def _send(api_key: Optional[str]) -> str:
            url, headers = resolve_endpoint(self._settings, api_key, stream=stream)
            return self._transport(url, headers, body, timeout)

        raw = self._credentials.make_api_call_with_retry(_send)
        parsed = self._adapter.parse_response(raw)
        LOGGER.debug(
            "Provider %s answered: %d text chars, %d call(s), finish=%s",
            self._adapter.kind.value,
            len(parsed.text),
            len(parsed.calls),
            parsed.finish.value if parsed.finish else None,
        )
        return parsed

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Single-shot text completion without tools, used by pipeline phases."""
        parsed = self.generate([Message.user(prompt)], (), system_prompt, include_tools=False, long_running=True)
        return parsed.text
