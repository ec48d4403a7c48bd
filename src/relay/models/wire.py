"""Explicit per-provider response records.

Each record ignores unknown keys and defaults missing ones so provider additions
never break decoding; the adapters only read the fields declared here.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Lenient base record for provider payloads."""

    model_config = ConfigDict(extra="ignore")


# Google-style (generateContent / streamGenerateContent) -------------------------------


class GoogleFunctionCall(WireModel):
    name: str = ""
    args: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class GooglePart(WireModel):
    text: Optional[str] = None
    thought: bool = False
    functionCall: Optional[GoogleFunctionCall] = None


class GoogleContent(WireModel):
    role: str = "model"
    parts: List[GooglePart] = Field(default_factory=list)


class GoogleCitation(WireModel):
    uri: str = ""
    title: str = ""


class GoogleCitationMetadata(WireModel):
    citations: List[GoogleCitation] = Field(default_factory=list)


class GoogleCandidate(WireModel):
    content: Optional[GoogleContent] = None
    finishReason: Optional[str] = None
    citationMetadata: Optional[GoogleCitationMetadata] = None


class GoogleResponse(WireModel):
    candidates: List[GoogleCandidate] = Field(default_factory=list)


# OpenAI-style (chat/completions) ------------------------------------------------------


class OpenAIFunction(WireModel):
    name: Optional[str] = None
    arguments: Union[str, Dict[str, Any], None] = None


class OpenAIToolCall(WireModel):
    index: Optional[int] = None
    id: Optional[str] = None
    type: str = "function"
    function: Optional[OpenAIFunction] = None


class OpenAIMessage(WireModel):
    role: Optional[str] = None
    content: Optional[str] = None
    tool_calls: List[OpenAIToolCall] = Field(default_factory=list)


class OpenAIChoice(WireModel):
    index: int = 0
    message: Optional[OpenAIMessage] = None
    delta: Optional[OpenAIMessage] = None
    finish_reason: Optional[str] = None


class OpenAIResponse(WireModel):
    choices: List[OpenAIChoice] = Field(default_factory=list)


# Anthropic-style (messages) ------------------------------------------------------------


class AnthropicBlock(WireModel):
    type: str = ""
    text: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Dict[str, Any]] = None


class AnthropicDelta(WireModel):
    type: Optional[str] = None
    text: Optional[str] = None
    partial_json: Optional[str] = None
    stop_reason: Optional[str] = None


class AnthropicEvent(WireModel):
    """Either a whole message document or one streamed event."""

    type: str = ""
    index: Optional[int] = None
    content: List[AnthropicBlock] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    content_block: Optional[AnthropicBlock] = None
    delta: Optional[AnthropicDelta] = None
    message: Optional["AnthropicEvent"] = None


# Ollama-style (api/chat) ---------------------------------------------------------------


class OllamaFunction(WireModel):
    name: str = ""
    arguments: Union[Dict[str, Any], str, None] = None


class OllamaToolCall(WireModel):
    id: Optional[str] = None
    function: Optional[OllamaFunction] = None


class OllamaMessage(WireModel):
    role: str = "assistant"
    content: str = ""
    tool_calls: List[OllamaToolCall] = Field(default_factory=list)


class OllamaResponse(WireModel):
    message: Optional[OllamaMessage] = None
    done: bool = False
    done_reason: Optional[str] = None


AnthropicEvent.model_rebuild()
