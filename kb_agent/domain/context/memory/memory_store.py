from pathlib import Path
from typing import Callable, List, Optional, Union
from datetime import datetime
import asyncio

import structlog
from pydantic import ValidationError

from kb_agent.domain.models.agent_state import MemoryEntry, MemorySource, MemoryType, utcnow
from kb_agent.infrastructure.config.settings import AgentSettings

logger = structlog.get_logger(__name__)


class MemoryStore:
    """Append-only JSON-lines log of durable facts with TTL support

    Memory only enhances prompts: every read or write failure is logged and
    treated as "no memory".
    """

    def __init__(
        self,
        path: Union[str, Path],
        max_entries: int = 200,
        clock: Callable[[], datetime] = utcnow
    ):
        self.path = Path(path)
        self.max_entries = max_entries
        self.clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> Optional["MemoryStore"]:
        """Store at settings.memory_path, or None when memory is not configured"""

        if not settings.memory_path:
            return None
        return cls(settings.memory_path, max_entries=settings.memory_max_entries)

    async def load(self, source: Optional[MemorySource] = None) -> List[MemoryEntry]:
        """Valid entries, oldest first; expired ones are dropped lazily"""

        async with self._lock:
            try:
                entries = await asyncio.to_thread(self._read_all)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Memory unavailable", path=str(self.path), error=str(e))
                return []

        now = self.clock()
        return [
            entry for entry in entries
            if not entry.is_expired(now) and (source is None or entry.source == source)
        ]

    async def append(
        self,
        content: str,
        type: MemoryType = MemoryType.CONTEXT,
        ttl_days: Optional[float] = None,
        source: MemorySource = MemorySource.USER
    ) -> bool:
        """Write one entry, then compact the log down to max_entries"""

        try:
            entry = MemoryEntry(
                timestamp=self.clock(), type=type, content=content, ttl_days=ttl_days, source=source
            )
        except ValidationError as e:
            logger.warning("Rejected memory entry", error=str(e))
            return False

        async with self._lock:
            try:
                await asyncio.to_thread(self._append_and_compact, entry)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Memory write failed", path=str(self.path), error=str(e))
                return False
        return True

    async def to_prompt_section(self, source: Optional[MemorySource] = None) -> str:
        entries = await self.load(source)
        if not entries:
            return ""
        lines = [f"- [{entry.type.value}] {entry.content}" for entry in entries]
        return "## Memory\n" + "\n".join(lines)

    async def clear(self) -> bool:
        async with self._lock:
            try:
                await asyncio.to_thread(self.path.unlink, missing_ok=True)
            except OSError as e:
                logger.warning("Memory clear failed", path=str(self.path), error=str(e))
                return False
        return True

    def _read_all(self) -> List[MemoryEntry]:
        if not self.path.exists():
            return []

        entries = []
        with self.path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(MemoryEntry.model_validate_json(line))
                except ValidationError:
                    logger.warning("Skipping corrupt memory line", path=str(self.path), line=line_no)
        return entries

    def _append_and_compact(self, entry: MemoryEntry):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

        entries = self._read_all()
        now = self.clock()
        live = [e for e in entries if not e.is_expired(now)]
        if len(live) == len(entries) and len(live) <= self.max_entries:
            return

        kept = live[-self.max_entries:] if self.max_entries > 0 else []
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            for e in kept:
                f.write(e.model_dump_json() + "\n")
        tmp_path.replace(self.path)
