from typing import Dict, Any, List, Optional, Sequence
from pydantic import BaseModel, Field
from datetime import datetime, timedelta, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentStatus(str, Enum):
    """Agent execution status"""
    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunMode(str, Enum):
    """Who drives the run: a person in a chat, or an automated task"""
    INTERACTIVE = "interactive"
    SYSTEM = "system"


class Role(str, Enum):
    """Message roles in the context window"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ExitReason(str, Enum):
    """Why the ReAct loop stopped"""
    ANSWER = "answer"
    MAX_ITERATIONS = "max_iterations"
    PHASE_EXIT = "phase_exit"
    PROVIDER_FAILURE = "provider_failure"
    INTERNAL_ERROR = "internal_error"


class ToolCallStatus(str, Enum):
    """Outcome of a single tool call"""
    OK = "ok"
    ERROR = "error"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class ToolCall(BaseModel):
    """A structured request to run one named tool"""
    id: str = Field(description="Call identifier, echoed back by the tool result")
    name: str = Field(description="Registered tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict)

    def declared_title(self, keys: Sequence[str] = ("title",)) -> Optional[str]:
        """First non-empty string among the given argument keys"""
        for key in keys:
            value = self.arguments.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None


def normalize_title(title: str) -> str:
    return " ".join(title.lower().split())


class Message(BaseModel):
    """One entry of the context window"""
    role: Role
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return self.role == Role.ASSISTANT and bool(self.tool_calls)


class ToolCallRecord(BaseModel):
    """Bookkeeping entry for every tool call made during a run"""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    status: ToolCallStatus = Field(default=ToolCallStatus.OK)
    iteration: int = 0
    duration_ms: float = 0.0


class AgentRunResult(BaseModel):
    """Structured outcome of ChatAgent.run"""
    reply: str
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    iterations: int = 0
    exit_reason: ExitReason = Field(default=ExitReason.ANSWER)
    forced_summary: bool = False
    phase: Optional[str] = None
    submitted_titles: List[str] = Field(default_factory=list)


class MemoryType(str, Enum):
    """Kinds of durable facts kept across sessions"""
    PREFERENCE = "preference"
    DECISION = "decision"
    CONTEXT = "context"


class MemorySource(str, Enum):
    """Persona that produced a memory entry"""
    USER = "user"
    SYSTEM = "system"


class MemoryEntry(BaseModel):
    """A durable fact replayed into future prompts"""
    timestamp: datetime = Field(default_factory=utcnow)
    type: MemoryType = Field(default=MemoryType.CONTEXT)
    content: str
    ttl_days: Optional[float] = Field(None, description="Lifetime in days; None keeps the entry forever")
    source: MemorySource = Field(default=MemorySource.USER)

    def expires_at(self) -> Optional[datetime]:
        if self.ttl_days is None:
            return None
        return self.timestamp + timedelta(days=self.ttl_days)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at()
        if expires_at is None:
            return False
        return (now or utcnow()) >= expires_at
