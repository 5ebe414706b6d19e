from typing import Iterable, Set

from kb_agent.domain.models.agent_state import normalize_title


class BatchContext:
    """Submission titles shared by every run of one batch

    Passed by reference into ChatAgent.execute; the caller resets it between
    unrelated batches.
    """

    def __init__(self, titles: Iterable[str] = ()):
        self.submitted_titles: Set[str] = {normalize_title(title) for title in titles}

    def has(self, title: str) -> bool:
        return normalize_title(title) in self.submitted_titles

    def add(self, title: str):
        self.submitted_titles.add(normalize_title(title))

    def reset(self):
        self.submitted_titles.clear()

    def __len__(self) -> int:
        return len(self.submitted_titles)
