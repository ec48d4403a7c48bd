"""Structured-output client used by the generation pipeline's phases."""

from __future__ import annotations

import ast
import json
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar, get_args, get_origin, get_type_hints

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from ..errors import ProtocolError
from .chat import ProviderClient

__all__ = [
    "AttemptLogger",
    "LLMClient",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "ProviderLLMClient",
    "strip_code_fence",
]


T = TypeVar("T")

AttemptLogger = Callable[[Dict[str, Any], Optional[str], Optional[Any], Optional[Exception], int], None]


class LLMResponseFormatError(ProtocolError):
    """Raised when the model returns payload that is not valid JSON."""


class LLMRetryError(ProtocolError):
    """Raised after exhausting retries due to repeated validation failures."""


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """Typed request payload sent to an LLM."""

    prompt: str
    response_model: Optional[Type[T]] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render the provider-neutral payload handed to ``_raw_invoke``."""
        prompt = self.prompt
        if self.response_model is not None:
            try:
                schema = TypeAdapter(self.response_model).json_schema()
            except Exception:  # pragma: no cover - exotic annotations
                schema = {"type": "object"}
            prompt = f"{prompt}\n\n## Response Schema\n{json.dumps(schema, sort_keys=True)}"

        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "text": self.system_prompt})
        messages.append({"role": "user", "text": prompt})

        payload: Dict[str, Any] = {"model": default_model, "input": messages}
        if self.metadata:
            max_metadata_len = 512
            serialised: Dict[str, Any] = {}
            for key, value in self.metadata.items():
                formatted = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised[key] = formatted
            payload["metadata"] = serialised
        return payload


class LLMClient:
    """High-level helper that enforces JSON responses and schema validation."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        return self._model

    def invoke(self, request: LLMRequest[T]) -> T:
        """Invoke the underlying model and return a validated response."""
        result, _ = self.invoke_structured(request)
        return result

    def invoke_structured(
        self, request: LLMRequest[T], *, logger: Optional[AttemptLogger] = None
    ) -> tuple[T, Any]:
        """Invoke the model and return both the structured response and parsed payload.

        Transport and credential errors propagate untouched; only unparseable or
        schema-invalid answers consume the attempt budget.
        """
        if request.response_model is None:
            raise ValueError("invoke_structured requires a response_model.")
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None
        adapter = _cached_type_adapter(request.response_model)

        for attempt in range(1, attempts + 1):
            payload = request.to_payload(self._model)
            raw: Optional[str] = None
            data: Optional[Any] = None
            try:
                raw = self._raw_invoke(payload)
                data = self._parse_json(raw)
                data = _wrap_bare_list(request.response_model, data)
                data = _hydrate_response_payload(request.response_model, data)
                data = _coerce_to_model_schema(request.response_model, data)
                validated = adapter.validate_python(data)
                if logger:
                    logger(payload, raw, data, None, attempt)
                return validated, data
            except (LLMResponseFormatError, ValidationError) as error:
                last_error = error
                if logger:
                    logger(payload, raw, data, error, attempt)
                if attempt >= attempts:
                    break
                time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"Failed to produce schema-valid JSON after {attempts} attempt(s) for model {self._model}"
        ) from last_error

    def invoke_text(self, request: LLMRequest[Any], *, logger: Optional[AttemptLogger] = None) -> str:
        """Invoke the model for free-form text; an empty answer consumes an attempt."""
        attempts = request.max_attempts or self._max_attempts
        for attempt in range(1, attempts + 1):
            payload = request.to_payload(self._model)
            raw = self._raw_invoke(payload)
            if raw.strip():
                if logger:
                    logger(payload, raw, None, None, attempt)
                return raw
            error = LLMResponseFormatError("Model returned an empty response.")
            if logger:
                logger(payload, raw, None, error, attempt)
            if attempt < attempts:
                time.sleep(self._retry_delay)
        raise LLMRetryError(f"Model returned no text after {attempts} attempt(s).")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Parse JSON payloads and normalize errors."""
        text = raw_response.strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        text = _normalise_json_string(text)
        candidates = [text]
        repaired = _repair_json_payload(text)
        if repaired and repaired not in candidates:
            candidates.append(_normalise_json_string(repaired))

        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pythonic = _coerce_python_literal(candidate)
                if pythonic is not None:
                    return pythonic

        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


class ProviderLLMClient(LLMClient):
    """Structured client that sends phase prompts through a :class:`ProviderClient`."""

    def __init__(self, provider: ProviderClient, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        super().__init__(provider.model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._provider = provider

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        system_prompt = None
        prompt_parts: list[str] = []
        for message in payload.get("input") or []:
            if message.get("role") == "system":
                system_prompt = message.get("text")
            else:
                prompt_parts.append(str(message.get("text") or ""))
        return self._provider.complete("\n\n".join(prompt_parts), system_prompt)


def strip_code_fence(payload: str) -> str:
    """Remove a Markdown code fence wrapping the whole payload, if any."""
    text = payload.strip()
    if not text.startswith("```"):
        return payload
    header_end = text.find("\n")
    if header_end == -1:
        return payload
    body = text[header_end + 1 :]
    fence_end = body.rfind("```")
    if fence_end == -1:
        return body.strip("\n")
    return body[:fence_end].rstrip("\n")


def _normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _repair_json_payload(raw: str) -> str | None:
    """Attempt to salvage a JSON object or array embedded in noisy output."""
    stripped = strip_code_fence(raw).strip()
    if not stripped:
        return None

    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        return stripped

    opening_idx = None
    expected: list[str] = []
    for index, char in enumerate(stripped):
        if char in "{[":
            if opening_idx is None:
                opening_idx = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening_idx is not None:
                return _strip_trailing_commas(stripped[opening_idx : index + 1].strip())
    return None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _wrap_bare_list(model: Type[Any], payload: Any) -> Any:
    """Accept a bare JSON array for dataclass responses that hold a single list field."""
    if not isinstance(payload, list) or not is_dataclass(model):
        return payload
    list_fields = [item for item in fields(model) if get_origin(_cached_type_hints(model).get(item.name)) is list]
    if len(list_fields) == 1:
        return {list_fields[0].name: payload}
    return payload


def _hydrate_response_payload(model: Type[Any], payload: Any) -> Any:
    """Populate missing dataclass fields with defaults during coercion."""
    if not isinstance(payload, dict) or not is_dataclass(model):
        return payload
    updated = dict(payload)
    for field_info in fields(model):
        if field_info.name in updated:
            continue
        if field_info.default is not MISSING:
            updated[field_info.name] = field_info.default
        elif field_info.default_factory is not MISSING:  # type: ignore[attr-defined]
            updated[field_info.name] = field_info.default_factory()  # type: ignore[misc]
    return updated


def _coerce_to_model_schema(model: Type[Any], value: Any) -> Any:
    """Drop unknown keys and coerce nested values to the dataclass annotations."""
    if not is_dataclass(model) or not isinstance(value, Mapping):
        return value
    hints = _cached_type_hints(model)
    cleaned: dict[str, Any] = {}
    for field_info in fields(model):
        name = field_info.name
        if name in value:
            cleaned[name] = _coerce_value(hints.get(name, field_info.type), value[name])
    return cleaned


def _coerce_value(annotation: Any, value: Any) -> Any:
    origin = get_origin(annotation)
    if isinstance(annotation, type) and is_dataclass(annotation):
        return _coerce_to_model_schema(annotation, value) if isinstance(value, Mapping) else value
    if origin in {list, Sequence}:
        args = get_args(annotation)
        item_type = args[0] if args else Any
        if value is None:
            return []
        if not isinstance(value, Sequence) or isinstance(value, (str, bytes, bytearray)):
            value = [value]
        return [_coerce_value(item_type, item) for item in value]
    if annotation is str and value is not None and not isinstance(value, str):
        return str(value)
    if annotation is float and isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


@lru_cache(maxsize=None)
def _cached_type_hints(model: type[Any]) -> dict[str, Any]:
    try:
        return get_type_hints(model)
    except Exception:
        return {item.name: item.type for item in fields(model)}


@lru_cache(maxsize=None)
def _cached_type_adapter(annotation: Any) -> TypeAdapter:
    return TypeAdapter(annotation)
