from typing import Any


class InMemoryStore:
    """Volatile per-process state: one document per user id, lost on restart."""

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
