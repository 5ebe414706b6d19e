"""Agent execution core of the developer knowledge base: ReAct loop, context window, task pipelines."""

from kb_agent.domain.models.agent_state import AgentRunResult, RunMode
from kb_agent.domain.orchestration.core.batch_context import BatchContext
from kb_agent.domain.orchestration.core.chat_agent import ChatAgent
from kb_agent.domain.orchestration.core.phase_router import PhaseBudget
from kb_agent.domain.orchestration.pipeline.task_pipeline import PipelineStep, TaskPipeline, create_pipeline
from kb_agent.domain.tool.tool_registry import InMemoryToolRegistry, ToolRegistry
from kb_agent.infrastructure.config.settings import AgentSettings, get_settings
from kb_agent.infrastructure.observability.logging import configure_logging, setup_logging

__version__ = "0.1.0"

__all__ = [
    "AgentRunResult",
    "AgentSettings",
    "BatchContext",
    "ChatAgent",
    "InMemoryToolRegistry",
    "PhaseBudget",
    "PipelineStep",
    "RunMode",
    "TaskPipeline",
    "ToolRegistry",
    "configure_logging",
    "create_pipeline",
    "get_settings",
    "setup_logging",
]
