"""Wire configuration into provider clients, tools, the turn controller, and the pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .commands import FailureAnalyzer, FallbackResolver
from .config import EngineConfig
from .memory.store import HistoryStore
from .models.chat import ProviderClient
from .models.credentials import CredentialSource
from .models.llm_client import ProviderLLMClient
from .models.messages import Message
from .models.transport import HttpTransport
from .phases.base import PhaseContext
from .phases.failure_analysis import analysis_runner
from .pipeline import GenerationPipeline
from .prompts import render_system_prompt
from .router import PhaseRouter
from .tools.bridge import ToolExecutionBridge
from .tools.builtin import TodoBoard, default_registry
from .turns import TurnController

__all__ = ["Runtime", "build_runtime"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Everything one CLI invocation needs, built from a single :class:`EngineConfig`."""

    config: EngineConfig
    provider: ProviderClient
    bridge: ToolExecutionBridge
    board: TodoBoard
    router: PhaseRouter
    resolver: FallbackResolver

    def controller(self, *, memory_summary: str = "", history: Iterable[Message] = ()) -> TurnController:
        return TurnController(
            self.provider,
            self.bridge,
            system_prompt=render_system_prompt(self.config.workspace, memory_summary=memory_summary),
            max_turns=self.config.engine.max_turns,
            history=history,
            todos=self.board,
        )

    def pipeline(self) -> GenerationPipeline:
        return GenerationPipeline(
            self.router,
            self.bridge,
            settings=self.config.pipeline_settings(),
            resolver=self.resolver,
        )

    def open_store(self) -> HistoryStore:
        return HistoryStore(self.config.db_path)

    def close(self) -> None:
        self.bridge.close()


def build_runtime(config: EngineConfig, *, transport: Optional[HttpTransport] = None) -> Runtime:
    """Construct the runtime; ``transport`` replaces the HTTP layer (tests inject fakes here)."""
    settings = config.provider_settings()
    credentials = CredentialSource(
        settings.api_keys,
        model=settings.resolved_model,
        requires_key=settings.requires_key,
        max_retries=config.provider.max_retries,
        backoff_seconds=config.provider.backoff_seconds,
    )
    provider = ProviderClient(settings, credentials, transport=transport)
    workspace = config.workspace
    workspace.mkdir(parents=True, exist_ok=True)

    board = TodoBoard()
    bridge = ToolExecutionBridge(default_registry(workspace, board=board), timeout=config.engine.tool_timeout)
    context = PhaseContext(data_root=config.data_root, workspace=workspace, logs_dir=config.logs_root)
    llm = ProviderLLMClient(provider, max_attempts=config.pipeline.phase_retries)
    router = PhaseRouter(client=llm, context=context)
    resolver = FallbackResolver(
        bridge,
        workspace,
        analyzer=FailureAnalyzer(analysis_runner(llm, context), max_plans=config.pipeline.max_ai_fallback_plans),
    )
    LOGGER.debug("Runtime ready: provider=%s model=%s workspace=%s", settings.kind.value, provider.model, workspace)
    return Runtime(
        config=config,
        provider=provider,
        bridge=bridge,
        board=board,
        router=router,
        resolver=resolver,
    )
