from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence

# Rows of (button text, url) link buttons.
Keyboard = Sequence[Sequence[tuple[str, str]]]


class Notifier(ABC):
    @abstractmethod
    async def send(self, target_id: str, text: str, keyboard: Optional[Keyboard] = None) -> None:
        """Deliver `text` (Telegram HTML) to `target_id`. Raises on failure; callers decide whether it matters."""


class ConsoleNotifier(Notifier):
    """Prints instead of sending (used for `check --dry-run`)."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, target_id: str, text: str, keyboard: Optional[Keyboard] = None) -> None:
        self.sent.append((str(target_id), text))
        print(f"--- to {target_id} ---\n{text}\n")
