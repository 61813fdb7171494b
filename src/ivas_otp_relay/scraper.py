from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from .errors import SessionExpiredError
from .extraction import ServiceTable, country_emoji, extract_country, extract_otp, message_fingerprint
from .models import Message
from .portal.api import DateWindow, PortalApi
from .portal.serializer import PageSerializer
from .portal.session import SessionContext
from .state import NoveltyRegistry
from .util.clock import Clock


logger = logging.getLogger(__name__)
T = TypeVar("T")

NewRangesCallback = Callable[[list[str]], Awaitable[None]]
PreparePage = Callable[[DateWindow], Awaitable[None]]


class ScrapeOrchestrator:
    """
    One scrape: ranges -> numbers per range -> messages per number -> OTP Messages.

    Per-branch failures (including deadline overruns) contribute nothing instead of failing the run. The one
    exception is a rejected session: the context is invalidated and SessionExpiredError is raised once every
    branch has settled.
    """

    def __init__(
        self,
        api: PortalApi,
        *,
        context: SessionContext,
        serializer: PageSerializer,
        novelty: NoveltyRegistry,
        clock: Clock,
        services: Optional[ServiceTable] = None,
        prepare_page: Optional[PreparePage] = None,
        on_new_ranges: Optional[NewRangesCallback] = None,
        days_back: int = 7,
        branch_timeout_s: float = 45,
    ) -> None:
        self.api = api
        self.context = context
        self.serializer = serializer
        self.novelty = novelty
        self.clock = clock
        self.services = services or ServiceTable.default()
        self.prepare_page = prepare_page
        self.on_new_ranges = on_new_ranges
        self.days_back = days_back
        self.branch_timeout_s = branch_timeout_s

    async def fetch_all_messages(self) -> list[Message]:
        window = DateWindow.around_today(self.clock, days_back=self.days_back)

        try:
            ranges = await self.serializer.run_exclusive(lambda: self._discover_ranges(window), label="discover_ranges")
        except SessionExpiredError as e:
            self.context.invalidate(str(e))
            raise
        except Exception as e:
            logger.warning("Range discovery failed: %s", e)
            return []

        if not ranges:
            logger.info("No ranges with messages in %s..%s", window.start_iso, window.end_iso)
            return []

        await self._report_new_ranges(ranges)

        per_range = await self._fan_out(
            [self.api.numbers_for_range(r, window) for r in ranges],
            labels=[f"numbers for range {r!r}" for r in ranges],
        )
        pairs = [(r, n) for r, numbers in zip(ranges, per_range) for n in numbers]
        logger.info("Scraping %d numbers across %d ranges", len(pairs), len(ranges))

        per_number = await self._fan_out(
            [self.api.messages_for_number(n, r, window) for r, n in pairs],
            labels=[f"messages for {n}" for _, n in pairs],
        )

        messages: list[Message] = []
        seen: set[str] = set()
        for (range_name, number), texts in zip(pairs, per_number):
            for text in texts:
                msg = self._to_message(range_name, number, text)
                if msg is None or msg.fingerprint in seen:
                    continue
                seen.add(msg.fingerprint)
                messages.append(msg)

        logger.info("Scrape finished: %d OTP messages", len(messages))
        return messages

    async def _discover_ranges(self, window: DateWindow) -> list[str]:
        if self.prepare_page is not None:
            await self.prepare_page(window)
        return await self.api.discover_ranges(window)

    async def _report_new_ranges(self, ranges: Sequence[str]) -> None:
        new_ranges = self.novelty.diff(ranges)
        if not new_ranges or self.on_new_ranges is None:
            return
        try:
            await self.on_new_ranges(new_ranges)
        except Exception:
            logger.warning("New-range callback failed.", exc_info=True)

    async def _bounded(self, coro: Awaitable[list[T]], label: str) -> list[T]:
        try:
            return await asyncio.wait_for(coro, timeout=self.branch_timeout_s)
        except SessionExpiredError:
            raise
        except asyncio.TimeoutError:
            logger.warning("Fetching %s timed out after %.0fs", label, self.branch_timeout_s)
        except Exception as e:
            logger.warning("Fetching %s failed: %s", label, e)
        return []

    async def _fan_out(self, coros: Sequence[Awaitable[list[Any]]], *, labels: Sequence[str]) -> list[list[Any]]:
        results = await asyncio.gather(
            *(self._bounded(c, label) for c, label in zip(coros, labels)),
            return_exceptions=True,
        )

        expired: Optional[SessionExpiredError] = None
        out: list[list[Any]] = []
        for result in results:
            if isinstance(result, SessionExpiredError):
                expired = expired or result
                out.append([])
            elif isinstance(result, BaseException):
                logger.warning("Branch failed unexpectedly: %r", result)
                out.append([])
            else:
                out.append(result)

        if expired is not None:
            self.context.invalidate(str(expired))
            raise expired
        return out

    def _to_message(self, range_name: str, number: str, text: str) -> Optional[Message]:
        otp = extract_otp(text)
        if not otp:
            logger.debug("No OTP in message for %s: %.40s", number, text)
            return None
        country = extract_country(range_name)
        return Message(
            fingerprint=message_fingerprint(number, otp, text),
            phone_number=number,
            range=range_name,
            otp_code=otp,
            raw_text=text,
            service=self.services.classify(text),
            country=country,
            country_emoji=country_emoji(country, range_name),
            observed_at=self.clock.now(),
        )
