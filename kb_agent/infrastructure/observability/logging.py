import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os

from kb_agent.infrastructure.config.settings import AgentSettings, get_settings


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "kb-agent"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
    )


def configure_logging(settings: Optional[AgentSettings] = None) -> None:
    """setup_logging driven by AgentSettings (KB_AGENT_LOG_LEVEL, KB_AGENT_LOG_FORMAT, ...)"""

    settings = settings or get_settings()
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        service_name=settings.service_name
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add run context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Session and pipeline ids are bound per run by the orchestrator
    context = structlog.contextvars.get_contextvars()
    for key in ("session_id", "run_mode", "pipeline_id"):
        if key in context and key not in event_dict:
            event_dict[key] = context[key]

    return event_dict


class AgentLogger:
    """Specialized logger for agent operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(
        self,
        event_type: str,
        session_id: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log agent-specific events"""

        self.logger.info(
            "agent_event",
            event_type=event_type,
            session_id=session_id,
            data=data or {},
            **kwargs
        )

    def log_tool_execution(
        self,
        tool_name: str,
        session_id: str,
        input_data: Dict[str, Any],
        status: str,
        duration_ms: Optional[float] = None,
        result_chars: Optional[int] = None,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            session_id=session_id,
            input_keys=sorted(input_data.keys()),
            status=status,
            duration_ms=duration_ms,
            result_chars=result_chars,
            error=error
        )

    def log_phase_transition(
        self,
        session_id: str,
        from_phase: str,
        to_phase: str,
        reason: Optional[str] = None,
        iteration: Optional[int] = None,
        submits: Optional[int] = None
    ):
        """Log PhaseRouter transitions"""

        self.logger.info(
            "phase_transition",
            session_id=session_id,
            from_phase=from_phase,
            to_phase=to_phase,
            reason=reason,
            iteration=iteration,
            submits=submits
        )

    def log_context_compaction(
        self,
        session_id: str,
        level: int,
        removed: int,
        usage_before: float,
        usage_after: float
    ):
        """Log context window compaction"""

        self.logger.info(
            "context_compaction",
            session_id=session_id,
            level=level,
            removed=removed,
            usage_before=round(usage_before, 3),
            usage_after=round(usage_after, 3)
        )

    def log_pipeline_step(
        self,
        pipeline_id: str,
        step: str,
        status: str,
        duration_ms: float,
        attempt: Optional[int] = None,
        error: Optional[str] = None
    ):
        """Log the terminal status of a pipeline step"""

        self.logger.info(
            "pipeline_step",
            pipeline_id=pipeline_id,
            step=step,
            status=status,
            duration_ms=duration_ms,
            attempt=attempt,
            error=error
        )


# Global logger instance
agent_logger = AgentLogger("kb_agent")
