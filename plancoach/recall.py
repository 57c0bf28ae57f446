from typing import List, Protocol


class RecallService(Protocol):
    def recall(self, user_id: str, query: str, limit: int = 5) -> List[str]:
        """Ranked context snippets for the query, most relevant first."""
        ...


class NullRecall:
    """Default when no memory backend is wired in."""

    def recall(self, user_id: str, query: str, limit: int = 5) -> List[str]:
        return []


def format_recall(snippets: List[str]) -> str:
    if not snippets:
        return ""
    lines = "\n".join(f"- {s}" for s in snippets)
    return f"\n\nContexte utile (souvenirs):\n{lines}"
