from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Optional

from playwright.async_api import Error as PlaywrightError

from ..config import PortalConfig
from ..errors import SessionExpiredError, TransportError
from ..models import NumberRecord
from ..util.clock import Clock
from .parsing import parse_directory, parse_messages, parse_numbers, parse_ranges
from .selectors import PortalSelectors
from .session import SessionContext


logger = logging.getLogger(__name__)

_SMS_PATH = "/portal/sms/received/getsms"
_NUMBERS_PATH = "/portal/numbers"
# The portal answers these when the session or the anti-forgery token is stale.
_EXPIRED_STATUSES = {401, 403, 419}
_MAX_DIRECTORY_PAGES = 100


@dataclass(frozen=True)
class DateWindow:
    start: date
    end: date

    @classmethod
    def around_today(cls, clock: Clock, *, days_back: int = 7) -> "DateWindow":
        today = clock.now().date()
        return cls(start=today - timedelta(days=days_back), end=today + timedelta(days=1))

    @property
    def start_iso(self) -> str:
        return self.start.isoformat()

    @property
    def end_iso(self) -> str:
        return self.end.isoformat()


class PortalApi:
    """
    Stateless portal endpoints, issued from inside the browser context so they carry its cookies.

    Every call reads the session snapshot once. HTTP 401/403/419 raise SessionExpiredError; any other failure
    raises TransportError.
    """

    def __init__(self, cfg: PortalConfig, *, context: SessionContext, selectors: Optional[PortalSelectors] = None):
        self.cfg = cfg
        self.context = context
        self.selectors = selectors or PortalSelectors()

    def _headers(self, *, accept: str = "text/html, */*; q=0.01") -> dict[str, str]:
        return {
            "X-Requested-With": "XMLHttpRequest",
            "Referer": self.cfg.sms_page_url,
            "Origin": self.cfg.base_url,
            "Accept": accept,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        form: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        accept: str = "text/html, */*; q=0.01",
    ) -> str:
        session = self.context.snapshot()
        page = self.context.page
        if page is None or not session.valid:
            raise SessionExpiredError(f"{method} {path}: no valid session")

        url = f"{self.cfg.base_url}{path}"
        timeout_ms = self.cfg.request_timeout_s * 1000
        request = page.context.request
        try:
            if method == "POST":
                fields = {"_token": session.anti_forgery_token or ""}
                fields.update({k: "" if v is None else str(v) for k, v in (form or {}).items()})
                resp = await request.post(url, form=fields, headers=self._headers(accept=accept), timeout=timeout_ms)
            else:
                resp = await request.get(url, params=params, headers=self._headers(accept=accept), timeout=timeout_ms)
        except (PlaywrightError, asyncio.TimeoutError) as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        status = int(resp.status)
        if status in _EXPIRED_STATUSES:
            raise SessionExpiredError(f"{method} {path} rejected with HTTP {status}", status=status)
        if status >= 400:
            raise TransportError(f"{method} {path} failed with HTTP {status}", status=status)
        return await resp.text()

    async def discover_ranges(self, window: DateWindow) -> list[str]:
        """List the ranges that have messages in `window`. Caller holds the page (the token may rotate)."""
        html = await self._request("POST", _SMS_PATH, form={"from": window.start_iso, "to": window.end_iso})
        ranges = parse_ranges(html, self.selectors)
        logger.info("Ranges with messages: %d", len(ranges))
        return ranges

    async def numbers_for_range(self, range_name: str, window: DateWindow) -> list[str]:
        html = await self._request(
            "POST",
            f"{_SMS_PATH}/number",
            form={"start": "", "end": window.end_iso, "range": range_name},
        )
        numbers = parse_numbers(html, self.selectors)
        logger.debug("Range %s: %d numbers", range_name, len(numbers))
        return numbers

    async def messages_for_number(self, phone_number: str, range_name: str, window: DateWindow) -> list[str]:
        html = await self._request(
            "POST",
            f"{_SMS_PATH}/number/sms",
            form={"start": "", "end": window.end_iso, "Number": phone_number, "Range": range_name},
        )
        return parse_messages(html, self.selectors)

    async def numbers_directory(self, *, page_size: int = 500) -> list[NumberRecord]:
        """Every number allocated to the account, following the directory's pagination."""
        records: list[NumberRecord] = []
        seen: set[str] = set()
        start = 0
        for draw in range(1, _MAX_DIRECTORY_PAGES + 1):
            payload = await self._request(
                "GET",
                _NUMBERS_PATH,
                params={"draw": draw, "start": start, "length": page_size},
                accept="application/json, text/javascript, */*; q=0.01",
            )
            page = parse_directory(payload, self.selectors)
            for rec in page.records:
                if rec.phone_number not in seen:
                    seen.add(rec.phone_number)
                    records.append(rec)

            start += page_size
            if page.records_total is None or page.rows_seen < page_size or start >= page.records_total:
                break
        else:
            logger.warning("Numbers directory still paging after %d pages; stopping.", _MAX_DIRECTORY_PAGES)

        logger.info("Numbers directory: %d numbers", len(records))
        return records
