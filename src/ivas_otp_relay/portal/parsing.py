from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from bs4 import BeautifulSoup

from ..extraction import is_phone_number
from ..models import NumberRecord
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

_RANGE_ONCLICK_RE = re.compile(r"getDetials\('([^']+)'\)")
_QUOTED_ARG_RE = re.compile(r"'([^']+)'")
_TAG_RE = re.compile(r"<[^>]+>")
_UPPER_START_RE = re.compile(r"^[A-Z]")

_DEFAULT_SELECTORS = PortalSelectors()


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _strip_tags(value: object) -> str:
    return _TAG_RE.sub("", str(value or "")).strip()


def _append_unique(out: list[str], value: str) -> None:
    if value and value not in out:
        out.append(value)


def parse_ranges(html: str, selectors: PortalSelectors = _DEFAULT_SELECTORS) -> list[str]:
    """
    Range names from the "get SMS" fragment.

    Card layout: `<div class="card card-body mb-1 pointer" onclick="getDetials('VE Venezuela 001')">`.
    Table layout fallback: first cell of each row when it looks like a range label (starts upper-case,
    contains a space, is not a phone number).
    """
    soup = _soup(html)
    ranges: list[str] = []

    for card in soup.select(selectors.range_card):
        m = _RANGE_ONCLICK_RE.search(card.get("onclick") or "")
        if m:
            _append_unique(ranges, m.group(1).strip())

    if not ranges:
        for row in soup.select(selectors.table_rows):
            cell = row.find("td")
            text = cell.get_text(strip=True) if cell else ""
            if text and _UPPER_START_RE.match(text) and " " in text and not is_phone_number(text):
                _append_unique(ranges, text)

    return ranges


def parse_numbers(html: str, selectors: PortalSelectors = _DEFAULT_SELECTORS) -> list[str]:
    """Phone numbers listed for one range (card `onclick` argument, else first table cell)."""
    soup = _soup(html)
    numbers: list[str] = []

    for card in soup.select(selectors.number_card):
        col = card.select_one(".col")
        m = _QUOTED_ARG_RE.search((col.get("onclick") if col else "") or "")
        if m and is_phone_number(m.group(1)):
            _append_unique(numbers, m.group(1).strip())

    if not numbers:
        for row in soup.select(selectors.table_rows):
            cell = row.find("td")
            text = cell.get_text(strip=True) if cell else ""
            if is_phone_number(text):
                _append_unique(numbers, text)

    return numbers


def parse_messages(html: str, selectors: PortalSelectors = _DEFAULT_SELECTORS) -> list[str]:
    """Raw SMS texts for one number; the first selector that yields anything wins."""
    soup = _soup(html)
    for sel in selectors.message_text:
        messages: list[str] = []
        for el in soup.select(sel):
            text = el.get_text(" ", strip=True)
            if text and len(text) > 3:
                messages.append(text)
        if messages:
            return messages
    return []


@dataclass
class DirectoryPage:
    records: list[NumberRecord] = field(default_factory=list)
    records_total: Optional[int] = None
    rows_seen: int = 0


def _record_or_none(number: object, range_name: object) -> Optional[NumberRecord]:
    num = _strip_tags(number)
    rng = _strip_tags(range_name)
    if not num or not rng or not is_phone_number(num):
        return None
    return NumberRecord(phone_number=num, range=rng)


def _row_values(row: Any) -> tuple[object, object]:
    if isinstance(row, (list, tuple)):
        # DataTables array rows: [checkbox, number, range, ...]
        return (row[1] if len(row) > 1 else None, row[2] if len(row) > 2 else None)
    if isinstance(row, dict):
        num = row.get("number") or row.get("Number") or row.get("phone")
        rng = row.get("range") or row.get("Range") or row.get("range_name")
        return num, rng
    return None, None


def parse_directory(payload: str, selectors: PortalSelectors = _DEFAULT_SELECTORS) -> DirectoryPage:
    """
    One page of the "my numbers" directory: DataTables JSON (`{"data": [...], "recordsTotal": N}`) or, when
    the portal answers with HTML, the rendered table (cells: checkbox, number, range).
    """
    page = DirectoryPage()

    data: Any = None
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        data = None

    if isinstance(data, dict) and isinstance(data.get("data"), list):
        rows = data["data"]
        page.rows_seen = len(rows)
        for row in rows:
            rec = _record_or_none(*_row_values(row))
            if rec:
                page.records.append(rec)
        total = data.get("recordsFiltered", data.get("recordsTotal"))
        try:
            page.records_total = int(total) if total is not None else None
        except (TypeError, ValueError):
            page.records_total = None
        if page.records:
            return page

    soup = _soup(payload if isinstance(payload, str) else "")
    rows = soup.select(selectors.table_rows)
    page.rows_seen = max(page.rows_seen, len(rows))
    for row in rows:
        cells = [td.get_text(strip=True) for td in row.find_all("td")]
        if len(cells) >= 3:
            rec = _record_or_none(cells[1], cells[2])
            if rec:
                page.records.append(rec)
    return page


def extract_csrf_token(html: str, selectors: PortalSelectors = _DEFAULT_SELECTORS) -> Optional[str]:
    meta = _soup(html).select_one(selectors.csrf_meta)
    if meta is None:
        return None
    token = (meta.get("content") or "").strip()
    return token or None
