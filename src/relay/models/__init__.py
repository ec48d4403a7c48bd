"""Convenience exports for provider clients, adapters, and the message model."""

from .adapters import ParsedResponse, ProviderAdapter, ProviderKind
from .chat import ProviderClient
from .credentials import CredentialSource, is_rate_limit_error
from .llm_client import LLMClient, LLMRequest, LLMResponseFormatError, LLMRetryError, ProviderLLMClient
from .messages import FinishReason, FunctionDeclaration, Message, Role, ToolResult
from .transport import ProviderSettings, adapter_for, resolve_endpoint

__all__ = [
    "CredentialSource",
    "FinishReason",
    "FunctionDeclaration",
    "LLMClient",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "Message",
    "ParsedResponse",
    "ProviderAdapter",
    "ProviderClient",
    "ProviderKind",
    "ProviderLLMClient",
    "ProviderSettings",
    "Role",
    "ToolResult",
    "adapter_for",
    "is_rate_limit_error",
    "resolve_endpoint",
]
