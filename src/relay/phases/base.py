"""Shared helpers for invoking phases and emitting structured logs."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TypeVar

from ..errors import PhaseFailure, ProtocolError
from ..models.llm_client import LLMClient, LLMRequest
from ..prompts import CODE_RESPONSE_INSTRUCTION, JSON_RESPONSE_INSTRUCTION, render_phase_brief
from ..utils.slug import slugify

__all__ = ["PhaseContext", "invoke_phase", "invoke_phase_text"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class PhaseContext:
    """Where phase logs go and which workspace the phases act on."""

    data_root: Path
    workspace: Path
    logs_dir: Optional[Path] = None

    @property
    def logs_root(self) -> Path:
        return self.logs_dir or self.data_root / "logs"

    @property
    def llm_inputs_root(self) -> Path:
        return self.data_root / "llm_inputs"


def invoke_phase(
    phase: str,
    request: Any,
    response_model: type[T],
    *,
    prompt: str,
    client: LLMClient,
    context: PhaseContext,
    max_attempts: Optional[int] = None,
) -> T:
    """Call the model for a structured phase answer, logging every attempt.

    Unparseable answers after the retry budget surface as :class:`PhaseFailure`;
    transport and credential errors propagate unchanged.
    """
    llm_request = LLMRequest(
        prompt=prompt,
        system_prompt=f"{render_phase_brief(phase)}\n\n{JSON_RESPONSE_INSTRUCTION}",
        response_model=response_model,
        metadata={"phase": phase},
        max_attempts=max_attempts,
    )
    attempts: list[dict[str, Any]] = []
    logger = _attempt_logger(context, phase, attempts)

    try:
        result, _ = client.invoke_structured(llm_request, logger=logger)
    except ProtocolError as error:
        _write_phase_log(context, phase, request, llm_request, attempts, error=error)
        raise PhaseFailure(phase, str(error)) from error

    _write_phase_log(context, phase, request, llm_request, attempts, result=result)
    return result


def invoke_phase_text(
    phase: str,
    request: Any,
    *,
    prompt: str,
    client: LLMClient,
    context: PhaseContext,
) -> str:
    """Free-form variant of :func:`invoke_phase` used for whole-file answers."""
    llm_request: LLMRequest[Any] = LLMRequest(
        prompt=prompt,
        system_prompt=f"{render_phase_brief(phase)}\n\n{CODE_RESPONSE_INSTRUCTION}",
        metadata={"phase": phase},
    )
    attempts: list[dict[str, Any]] = []
    logger = _attempt_logger(context, phase, attempts)
    try:
        text = client.invoke_text(llm_request, logger=logger)
    except ProtocolError as error:
        _write_phase_log(context, phase, request, llm_request, attempts, error=error)
        raise PhaseFailure(phase, str(error)) from error
    _write_phase_log(context, phase, request, llm_request, attempts, result={"characters": len(text)})
    return text


def _attempt_logger(context: PhaseContext, phase: str, attempts: list[dict[str, Any]]):
    def _log(
        payload: dict[str, Any],
        raw: str | None,
        parsed: Any,
        error: Exception | None,
        attempt: int,
    ) -> None:
        _log_llm_exchange(context, phase, payload, raw, parsed, error, attempt=attempt)
        attempts.append(
            {
                "attempt": attempt,
                "raw": raw,
                "parsed": _json_safe(parsed),
                "error": str(error) if error else None,
            }
        )
        if error is not None:
            LOGGER.info("Phase %s attempt %d rejected: %s", phase, attempt, error)

    return _log


def _write_phase_log(
    context: PhaseContext,
    phase: str,
    request: Any,
    llm_request: LLMRequest[Any],
    attempts: list[dict[str, Any]],
    *,
    result: Any | None = None,
    error: Exception | None = None,
) -> None:
    """Persist a structured phase execution log for later debugging."""
    logs_root = context.logs_root / "phases"
    try:
        logs_root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return

    entry: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "phase": phase,
        "request": _json_safe(request),
        "context": {
            "system_prompt": llm_request.system_prompt,
            "user_prompt": llm_request.prompt,
            "metadata": _json_safe(llm_request.metadata),
        },
        "attempts": attempts,
    }
    if result is not None:
        entry["result"] = _json_safe(result)
    if error is not None:
        entry["error"] = str(error)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    file_name = "__".join(["phase", slugify(phase, fallback="phase"), timestamp]) + ".json"
    try:
        with (logs_root / file_name).open("w", encoding="utf-8") as handle:
            json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
    except OSError:
        return


def _log_llm_exchange(
    context: PhaseContext,
    phase: str,
    payload: dict[str, Any] | None,
    raw: str | None,
    parsed: Any,
    error: Exception | None,
    *,
    attempt: int,
) -> None:
    """Persist the prompt and raw response text for one attempt."""
    inputs_root = context.llm_inputs_root
    try:
        inputs_root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return

    timestamp = datetime.now(timezone.utc)
    stem = "__".join(
        [
            slugify(phase, fallback="phase"),
            f"attempt-{attempt}",
            timestamp.strftime("%Y%m%dT%H%M%S%fZ"),
            uuid.uuid4().hex[:8],
        ]
    )
    header = [f"Timestamp: {timestamp.isoformat()}", f"Phase: {phase}", f"Attempt: {attempt}"]

    if isinstance(payload, dict):
        lines = list(header)
        model_name = payload.get("model")
        if isinstance(model_name, str) and model_name:
            lines.append(f"Model: {model_name}")
        for message in payload.get("input") or []:
            if not isinstance(message, dict):
                continue
            text = str(message.get("text") or "").strip()
            if text:
                role = str(message.get("role") or "").strip()
                lines.extend(["", f"{role.title() or 'User'} Prompt:", text])
        try:
            (inputs_root / f"input__{stem}.txt").write_text("\n".join(lines), encoding="utf-8")
        except OSError:
            return

    if raw is None:
        return
    lines = list(header)
    if error is not None:
        lines.append(f"Error: {error}")
    lines.extend(["", "Raw Response:", raw])
    if parsed is not None:
        try:
            parsed_text = json.dumps(_json_safe(parsed), indent=2, sort_keys=True, ensure_ascii=False)
        except (TypeError, ValueError):
            parsed_text = str(parsed)
        lines.extend(["", "Parsed Response:", parsed_text])
    try:
        (inputs_root / f"output__{stem}.txt").write_text("\n".join(lines), encoding="utf-8")
    except OSError:
        return


def _json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return value.as_posix()
    if is_dataclass(value) and not isinstance(value, type):
        return _json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        try:
            return _json_safe(value.model_dump())
        except TypeError:
            pass
    if isinstance(value, dict):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)
