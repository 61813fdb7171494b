from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, NetworkError, RetryAfter
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..util.clock import Clock, SystemClock
from . import Keyboard, Notifier


logger = logging.getLogger(__name__)

SEND_ATTEMPTS = 3

_backoff = wait_exponential(multiplier=1, min=1, max=8)


def _retry_delay(err: RetryAfter) -> float:
    delay: Any = err.retry_after
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


def _is_transient(err: BaseException) -> bool:
    # BadRequest subclasses NetworkError but a malformed request never succeeds on resend.
    if isinstance(err, BadRequest):
        return False
    return isinstance(err, (RetryAfter, NetworkError))


def _wait_for(retry_state: RetryCallState) -> float:
    err = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(err, RetryAfter):
        return _retry_delay(err) + 1
    return _backoff(retry_state)


def to_markup(keyboard: Optional[Keyboard]) -> Optional[InlineKeyboardMarkup]:
    if not keyboard:
        return None
    rows = [[InlineKeyboardButton(text, url=url) for text, url in row] for row in keyboard if row]
    return InlineKeyboardMarkup(rows) if rows else None


class TelegramNotifier(Notifier):
    """
    Telegram Bot API sink (HTML parse mode).

    Timeouts, connection errors and rate limits are retried (up to `SEND_ATTEMPTS` sends in total) with
    exponential backoff, or after the server-requested wait for `RetryAfter`. Bad requests are not retried.
    """

    def __init__(self, bot_token: str = "", *, bot: Optional[Any] = None, clock: Optional[Clock] = None) -> None:
        if not bot_token and bot is None:
            raise ValueError("A Telegram bot token is required")
        self._bot = bot if bot is not None else Bot(token=bot_token)
        self.clock = clock or SystemClock()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            sleep=self.clock.sleep,
            stop=stop_after_attempt(SEND_ATTEMPTS),
            wait=_wait_for,
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def send(self, target_id: str, text: str, keyboard: Optional[Keyboard] = None) -> None:
        kwargs = {
            "chat_id": target_id,
            "text": text,
            "parse_mode": "HTML",
            "reply_markup": to_markup(keyboard),
        }
        async for attempt in self._retrying():
            with attempt:
                await self._bot.send_message(**kwargs)
