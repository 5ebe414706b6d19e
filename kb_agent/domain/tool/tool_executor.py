from typing import Any, Dict, Optional, NamedTuple
import asyncio
import time

import structlog

from kb_agent.domain.models.errors import ToolExecutionError
from kb_agent.domain.tool.tool_registry import ToolRegistry
from kb_agent.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)


class ToolResult(NamedTuple):
    success: bool
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    duration_ms: float = 0.0

    @property
    def observation(self) -> Any:
        return self.data if self.success else self.error


# Execution with timeout & monitoring
class ToolExecutor:
    """Runs registry tools, turning every failure into an error observation"""

    def __init__(self, registry: ToolRegistry, timeout_seconds: Optional[float] = 60.0):
        self.registry = registry
        self.timeout_seconds = timeout_seconds

    async def execute_tool(
        self,
        name: str,
        parameters: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None
    ) -> ToolResult:
        started = time.monotonic()
        session_id = (context or {}).get("session_id", "")

        try:
            if self.timeout_seconds:
                data = await asyncio.wait_for(
                    self.registry.execute(name, parameters, context),
                    timeout=self.timeout_seconds
                )
            else:
                data = await self.registry.execute(name, parameters, context)

        except asyncio.TimeoutError:
            result = ToolResult(
                success=False,
                error={"error": f"{name}: tool execution timed out after {self.timeout_seconds}s", "tool": name},
                duration_ms=_elapsed_ms(started)
            )
        except ToolExecutionError as e:
            result = ToolResult(success=False, error=e.to_observation(), duration_ms=_elapsed_ms(started))
        except Exception as e:
            # Registries outside this package may raise anything
            logger.warning("Unexpected tool failure", tool_name=name, error=str(e))
            result = ToolResult(
                success=False,
                error={"error": f"{name}: {e}", "tool": name},
                duration_ms=_elapsed_ms(started)
            )
        else:
            result = ToolResult(success=True, data=data, duration_ms=_elapsed_ms(started))

        agent_logger.log_tool_execution(
            tool_name=name,
            session_id=session_id,
            input_data=parameters,
            status="ok" if result.success else "error",
            duration_ms=result.duration_ms,
            error=None if result.success else result.error.get("error")
        )
        return result


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
