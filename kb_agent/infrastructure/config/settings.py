"""
Runtime settings for the agent core.

Every value can be overridden through an environment variable prefixed with
``KB_AGENT_`` (for example ``KB_AGENT_TOKEN_BUDGET=32000``). List values are
read as JSON arrays.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Configuration for ChatAgent, ContextWindow and Memory"""

    model_config = SettingsConfigDict(env_prefix="KB_AGENT_", extra="ignore")

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "kb-agent"

    # Context window
    token_budget: int = 24_000

    # Loop bounds
    interactive_max_iterations: int = 6
    system_max_iterations: int = 30
    max_tool_calls_per_iteration: int = 8

    # Provider resilience
    max_consecutive_provider_failures: int = 2
    empty_response_retries: int = 2
    provider_retry_backoff_seconds: float = 1.0

    # Tools
    tool_timeout_seconds: float = 60.0
    tool_log_result_chars: int = 500
    submit_tool_names: List[str] = ["submit_candidate", "submit_with_check"]
    # Identity of a submission for the duplicate guard
    submit_title_key: str = "title"
    # Labels shown for compacted submissions
    submit_label_keys: List[str] = ["title", "category"]
    search_tool_names: List[str] = ["search_project_code"]
    file_tool_names: List[str] = ["read_project_file"]

    # Memory
    # Unset disables memory unless a MemoryStore is passed in
    memory_path: Optional[str] = None
    memory_max_entries: int = 200

    # Generation defaults
    temperature: float = 0.3
    max_tokens: Optional[int] = None


@lru_cache(maxsize=1)
def get_settings() -> AgentSettings:
    """Process-wide settings, read once from the environment"""

    return AgentSettings()
