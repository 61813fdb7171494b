from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    recipient_id: str
    range: str
    phone_number: str
    assigned_at: datetime


class NumberAssignments:
    """
    In-memory recipient -> number map. Two concurrent `assign()` calls never hand out the same number.
    """

    def __init__(self) -> None:
        self._by_recipient: dict[str, Assignment] = {}
        self._lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return len(self._by_recipient)

    def current(self, recipient_id: str) -> Optional[Assignment]:
        return self._by_recipient.get(str(recipient_id))

    def recipient_for(self, phone_number: str) -> Optional[str]:
        for recipient_id, a in self._by_recipient.items():
            if a.phone_number == phone_number:
                return recipient_id
        return None

    async def assign(self, recipient_id: str, range_name: str, candidates: Iterable[str]) -> Optional[Assignment]:
        """
        Give `recipient_id` the first candidate nobody else holds (skipping the recipient's current number,
        so repeated calls rotate). Returns None when every candidate is taken.
        """
        recipient_id = str(recipient_id)
        async with self._lock:
            mine = self._by_recipient.get(recipient_id)
            held = {a.phone_number for rid, a in self._by_recipient.items() if rid != recipient_id}
            for number in candidates:
                if number in held or (mine is not None and number == mine.phone_number):
                    continue
                assignment = Assignment(
                    recipient_id=recipient_id,
                    range=range_name,
                    phone_number=number,
                    assigned_at=datetime.now(timezone.utc),
                )
                self._by_recipient[recipient_id] = assignment
                logger.info("Assigned %s (%s) to recipient %s", number, range_name, recipient_id)
                return assignment
        return None

    def release(self, recipient_id: str) -> Optional[Assignment]:
        released = self._by_recipient.pop(str(recipient_id), None)
        if released is not None:
            logger.info("Released %s from recipient %s", released.phone_number, recipient_id)
        return released
