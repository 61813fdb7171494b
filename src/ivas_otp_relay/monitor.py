from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from .assignments import NumberAssignments
from .errors import SessionExpiredError
from .models import Message
from .notify import Keyboard, Notifier
from .notify.formatting import format_new_ranges, format_otp_message, format_recipient_notice
from .portal.session import SessionContext, SessionManager
from .scraper import ScrapeOrchestrator
from .state import DedupStore
from .util.clock import Clock


logger = logging.getLogger(__name__)


@dataclass
class MonitorStats:
    started_at: datetime
    last_check: Optional[datetime] = None
    total_sent: int = 0
    last_error: Optional[str] = None
    running: bool = False
    consecutive_failures: int = 0


@dataclass(frozen=True)
class CycleResult:
    found: int
    sent: int


class OtpMonitor:
    """
    Supervising loop: scrape, deliver new OTPs, sleep.

    Failures are counted; at `failure_threshold` consecutive failures the session is rebuilt, otherwise the loop
    waits `backoff_s` before the next attempt. Two fixed tiers, no exponential growth.
    """

    def __init__(
        self,
        scraper: ScrapeOrchestrator,
        *,
        context: SessionContext,
        session_manager: SessionManager,
        dedup: DedupStore,
        notifier: Notifier,
        group_id: str,
        clock: Clock,
        assignments: Optional[NumberAssignments] = None,
        keyboard: Optional[Keyboard] = None,
        check_interval_s: float = 10,
        backoff_s: float = 30,
        failure_threshold: int = 5,
    ) -> None:
        self.scraper = scraper
        self.context = context
        self.session_manager = session_manager
        self.dedup = dedup
        self.notifier = notifier
        self.group_id = str(group_id)
        self.clock = clock
        self.assignments = assignments
        self.keyboard = keyboard
        self.check_interval_s = check_interval_s
        self.backoff_s = backoff_s
        self.failure_threshold = failure_threshold
        self.stats = MonitorStats(started_at=clock.now())

    async def run_once(self) -> CycleResult:
        """One scrape-and-deliver pass. Raises on a failed cycle; the caller decides about retries."""
        if not self.context.snapshot().valid:
            raise SessionExpiredError("Session is not valid; waiting for re-authentication")

        messages = await self.scraper.fetch_all_messages()
        self.stats.last_check = self.clock.now()

        sent = 0
        for msg in messages:
            if await self.deliver(msg):
                sent += 1

        if sent:
            logger.info("Sent %d new OTPs", sent)
        else:
            logger.info("No new OTPs found (messages=%d)", len(messages))
        return CycleResult(found=len(messages), sent=sent)

    async def deliver(self, msg: Message) -> bool:
        # Mark first: a message is forwarded at most once even if the send below fails.
        if not self.dedup.try_mark_sent(msg.fingerprint, otp=msg.otp_code, raw_text=msg.raw_text):
            return False

        text = format_otp_message(msg)
        try:
            await self.notifier.send(self.group_id, text, self.keyboard)
        except Exception as e:
            logger.error("Failed to send OTP %s to the group: %s", msg.fingerprint, e)
            self.stats.last_error = f"Group delivery failed: {e}"
            return False

        self.stats.total_sent += 1
        logger.info("OTP sent: %s | %s | %s", msg.otp_code, msg.service, msg.country)
        await self._deliver_to_recipient(msg, text)
        return True

    async def _deliver_to_recipient(self, msg: Message, text: str) -> None:
        if self.assignments is None:
            return
        recipient = self.assignments.recipient_for(msg.phone_number)
        if recipient is None:
            return
        try:
            await self.notifier.send(recipient, text)
            await self.notifier.send(recipient, format_recipient_notice(msg))
        except Exception as e:
            logger.warning("Could not message recipient %s: %s", recipient, e)
            return
        self.assignments.release(recipient)

    async def alert_new_ranges(self, ranges: Sequence[str]) -> None:
        try:
            await self.notifier.send(self.group_id, format_new_ranges(ranges))
        except Exception as e:
            logger.warning("Failed to send new-range alert: %s", e)

    async def run_forever(self) -> None:
        self.stats.running = True
        logger.info(
            "OTP monitor started (interval=%ss backoff=%ss threshold=%d)",
            self.check_interval_s,
            self.backoff_s,
            self.failure_threshold,
        )
        while self.stats.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._on_failure(e)
                continue

            self.stats.consecutive_failures = 0
            await self.clock.sleep(self.check_interval_s)

        logger.info("OTP monitor stopped.")

    async def _on_failure(self, err: Exception) -> None:
        self.stats.last_error = str(err) or type(err).__name__
        self.stats.consecutive_failures += 1
        logger.error("Monitor cycle failed (%d in a row): %s", self.stats.consecutive_failures, self.stats.last_error)

        if self.stats.consecutive_failures < self.failure_threshold:
            await self.clock.sleep(self.backoff_s)
            return

        logger.warning("%d consecutive failures; re-authenticating.", self.stats.consecutive_failures)
        self.stats.consecutive_failures = 0
        try:
            await self.session_manager.authenticate()
        except Exception as auth_err:
            self.stats.last_error = str(auth_err) or type(auth_err).__name__

    def stop(self) -> None:
        self.stats.running = False
