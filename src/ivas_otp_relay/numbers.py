from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from .models import NumberRecord
from .portal.serializer import PageSerializer
from .state import JsonBlob
from .util.clock import Clock


logger = logging.getLogger(__name__)

DirectoryFetch = Callable[[], Awaitable[list[NumberRecord]]]


def _is_snapshot(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("numbers"), list)


class NumbersCache:
    """
    TTL cache of the account's number directory, persisted as `{"timestamp": <epoch ms>, "numbers": [[phone, range]]}`.

    A refresh that yields zero records keeps the previous snapshot (and its timestamp), so a transient portal
    hiccup can't wipe a good cache.
    """

    def __init__(
        self,
        fetch: DirectoryFetch,
        blob: JsonBlob,
        *,
        serializer: PageSerializer,
        clock: Clock,
        ttl_s: float = 600,
    ) -> None:
        self._fetch = fetch
        self._blob = blob
        self.serializer = serializer
        self.clock = clock
        self.ttl_ms = int(ttl_s * 1000)
        self._records: list[NumberRecord] = []
        self._captured_at_ms: Optional[int] = None
        self._load()

    def _load(self) -> None:
        raw = self._blob.load(None, validate=_is_snapshot)
        if raw is None:
            return
        records: list[NumberRecord] = []
        for item in raw.get("numbers") or []:
            try:
                phone, range_name = item[0], item[1]
                records.append(NumberRecord(phone_number=str(phone), range=str(range_name)))
            except Exception:
                logger.debug("Skipping malformed cached number: %r", item)
        try:
            ts = int(raw.get("timestamp"))
        except (TypeError, ValueError):
            ts = None
        self._records = records
        self._captured_at_ms = ts if records else None
        if records:
            logger.info("Loaded %d cached numbers from %s", len(records), self._blob.path)

    @property
    def captured_at_ms(self) -> Optional[int]:
        return self._captured_at_ms

    @property
    def records(self) -> list[NumberRecord]:
        return list(self._records)

    def is_fresh(self) -> bool:
        if self._captured_at_ms is None:
            return False
        return self.clock.epoch_ms() - self._captured_at_ms < self.ttl_ms

    async def get(self, force_refresh: bool = False) -> list[NumberRecord]:
        if not force_refresh and self.is_fresh():
            return list(self._records)

        async with self.serializer.exclusive("numbers_directory"):
            # Another caller may have refreshed while we waited for the page.
            if not force_refresh and self.is_fresh():
                return list(self._records)

            logger.info("Refreshing numbers directory...")
            records = await self._fetch()

            if not records:
                logger.warning(
                    "Numbers directory came back empty; keeping previous cache (%d numbers)", len(self._records)
                )
                return list(self._records)

            self._records = list(records)
            self._captured_at_ms = self.clock.epoch_ms()
            self._blob.save(
                {
                    "timestamp": self._captured_at_ms,
                    "numbers": [[r.phone_number, r.range] for r in self._records],
                }
            )
            logger.info("Numbers cache refreshed: %d numbers", len(self._records))
            return list(self._records)

    async def by_range(self, force_refresh: bool = False) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for rec in await self.get(force_refresh=force_refresh):
            grouped.setdefault(rec.range, []).append(rec.phone_number)
        return grouped
