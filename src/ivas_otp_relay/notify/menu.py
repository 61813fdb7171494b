"""Telegram inline menu: number assignment, on-demand checks and status for chat users."""

from __future__ import annotations

import logging
import re
from html import escape
from typing import TYPE_CHECKING, Any, Iterable, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes

from ..extraction import country_emoji, extract_country
from ..models import Message
from .formatting import format_assigned, format_stats, format_status

if TYPE_CHECKING:
    from ..service import RelayService


logger = logging.getLogger(__name__)

COUNTRY_PREFIX = "country_"
MAX_COUNTRY_BUTTONS = 20
# Telegram rejects callback data over 64 bytes; printable ASCII keeps bytes == chars.
CALLBACK_DATA_LIMIT = 64
_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")

WELCOME = "🏠 <b>Welcome!</b>\n\nI watch the SMS portal for new OTPs and forward them instantly."
MAIN_MENU = "🏠 <b>Main Menu</b>\n\nChoose an option:"

SAMPLE_OTP_TEXT = "# Your WhatsApp code 947-444\nDont share this code with others\n4sgLq1p5sV6"


def country_callback(range_name: str) -> str:
    return _NON_PRINTABLE.sub("", COUNTRY_PREFIX + range_name)[:CALLBACK_DATA_LIMIT]


def main_menu_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton("📱 Get Number", callback_data="get_number")],
            [
                InlineKeyboardButton("📊 Status", callback_data="status"),
                InlineKeyboardButton("📈 Stats", callback_data="stats"),
            ],
            [InlineKeyboardButton("🔍 Check OTPs Now", callback_data="check")],
            [InlineKeyboardButton("🧪 Send Test OTP", callback_data="test")],
        ]
    )


def number_assigned_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton("🔄 Change Number", callback_data="change_number")],
            [InlineKeyboardButton("🌍 Change Country", callback_data="change_country")],
            [InlineKeyboardButton("🏠 Main Menu", callback_data="menu")],
        ]
    )


def country_keyboard(range_names: Iterable[str]) -> InlineKeyboardMarkup:
    """Two ranges per row (first `MAX_COUNTRY_BUTTONS` only), then Refresh and Main Menu."""
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []
    for range_name in list(range_names)[:MAX_COUNTRY_BUTTONS]:
        data = country_callback(range_name)
        if data == COUNTRY_PREFIX:
            continue
        emoji = country_emoji(extract_country(range_name), range_name)
        row.append(InlineKeyboardButton(f"{emoji} {range_name}", callback_data=data))
        if len(row) == 2:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append([InlineKeyboardButton("🔄 Refresh Numbers", callback_data="refresh_numbers")])
    rows.append([InlineKeyboardButton("🏠 Main Menu", callback_data="menu")])
    return InlineKeyboardMarkup(rows)


async def _edit(query: Any, text: str, markup: Optional[InlineKeyboardMarkup] = None) -> None:
    await query.edit_message_text(text, parse_mode="HTML", reply_markup=markup)


class RelayMenu:
    """
    `/start` plus one callback dispatcher over the relay's components.

    Users listed in `admin_ids` get every range's numbers as text files instead of the country picker.
    """

    def __init__(self, service: "RelayService", *, admin_ids: Iterable[int] = ()) -> None:
        self.service = service
        self.admin_ids = {int(i) for i in admin_ids}
        self._routes = {
            "menu": self._main_menu,
            "get_number": self._choose_country,
            "change_country": self._choose_country,
            "refresh_numbers": self._refresh_numbers,
            "change_number": self._change_number,
            "check": self._check,
            "status": self._status,
            "stats": self._stats,
            "test": self._send_test,
        }

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await update.effective_message.reply_text(WELCOME, parse_mode="HTML", reply_markup=main_menu_keyboard())

    async def on_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        await query.answer()
        data = query.data or ""

        handler = self._assign_country if data.startswith(COUNTRY_PREFIX) else self._routes.get(data)
        if handler is None:
            logger.debug("Ignoring unknown menu action %r", data)
            return
        try:
            await handler(query, context)
        except Exception as e:
            logger.warning("Menu action %s failed: %s", data, e)
            await _edit(query, f"❌ Error: {escape(str(e))}", main_menu_keyboard())

    async def _main_menu(self, query: Any, context: Any) -> None:
        await _edit(query, MAIN_MENU, main_menu_keyboard())

    async def _choose_country(self, query: Any, context: Any) -> None:
        if query.from_user.id in self.admin_ids:
            await self._send_range_files(query, context)
            return

        await _edit(query, "🌍 <b>Loading available countries...</b>")
        grouped = await self.service.numbers.by_range()
        if not grouped:
            await _edit(query, "⚠️ <b>No numbers available right now.</b>\n\nTry again later.", main_menu_keyboard())
            return
        await _edit(query, "🌍 <b>Select Country:</b>", country_keyboard(grouped))

    async def _send_range_files(self, query: Any, context: Any) -> None:
        await _edit(query, "👑 <b>Admin: Fetching all numbers by range...</b>")
        grouped = await self.service.numbers.by_range()
        if not grouped:
            await _edit(query, "⚠️ No numbers found.", main_menu_keyboard())
            return

        await _edit(query, f"✅ Sending {len(grouped)} range file(s)...")
        chat_id = query.message.chat_id
        for range_name, numbers in grouped.items():
            content = f"Range: {range_name}\nTotal: {len(numbers)}\n\n" + "\n".join(numbers)
            emoji = country_emoji(extract_country(range_name), range_name)
            await context.bot.send_document(
                chat_id=chat_id,
                document=content.encode("utf-8"),
                filename=re.sub(r"\s+", "_", range_name) + ".txt",
                caption=f"{emoji} <b>{escape(range_name)}</b> ({len(numbers)} numbers)",
                parse_mode="HTML",
            )
            await self.service.clock.sleep(0.3)
        await context.bot.send_message(
            chat_id=chat_id,
            text="✅ <b>All range files sent!</b>",
            parse_mode="HTML",
            reply_markup=main_menu_keyboard(),
        )

    async def _refresh_numbers(self, query: Any, context: Any) -> None:
        await _edit(query, "🔄 <b>Refreshing numbers cache...</b>")
        grouped = await self.service.numbers.by_range(force_refresh=True)
        await _edit(query, f"✅ <b>Refreshed! Found {len(grouped)} country ranges.</b>", main_menu_keyboard())

    async def _assign_country(self, query: Any, context: Any) -> None:
        grouped = await self.service.numbers.by_range()
        range_name = next((r for r in grouped if country_callback(r) == query.data), None)
        assignment = None
        if range_name is not None:
            assignment = await self.service.assignments.assign(str(query.from_user.id), range_name, grouped[range_name])
        if assignment is None:
            await _edit(
                query,
                "⚠️ <b>No available number for this range right now.</b>\n\nTry another country or refresh.",
                main_menu_keyboard(),
            )
            return
        await _edit(query, format_assigned(assignment.range, assignment.phone_number), number_assigned_keyboard())

    async def _change_number(self, query: Any, context: Any) -> None:
        user_id = str(query.from_user.id)
        current = self.service.assignments.current(user_id)
        if current is None:
            await _edit(query, "⚠️ No country selected. Please select a country first.", main_menu_keyboard())
            return

        grouped = await self.service.numbers.by_range()
        assignment = await self.service.assignments.assign(user_id, current.range, grouped.get(current.range, []))
        if assignment is None:
            await _edit(query, "⚠️ <b>No other number available for this range.</b>", number_assigned_keyboard())
            return
        await _edit(
            query,
            format_assigned(assignment.range, assignment.phone_number, changed=True),
            number_assigned_keyboard(),
        )

    async def _check(self, query: Any, context: Any) -> None:
        await _edit(query, "🔍 <b>Checking for new OTPs...</b>")
        result = await self.service.monitor.run_once()
        if result.sent:
            text = f"✅ <b>Found and forwarded {result.sent} new OTP(s)!</b>"
        else:
            interval = self.service.cfg.monitor.check_interval_s
            text = f"📭 <b>No new OTPs found.</b>\n\nChecking automatically every {interval:g} seconds."
        await _edit(query, text, main_menu_keyboard())

    async def _status(self, query: Any, context: Any) -> None:
        await _edit(query, format_status(self.service.status()), main_menu_keyboard())

    async def _stats(self, query: Any, context: Any) -> None:
        text = format_stats(
            self.service.status(),
            started_at=self.service.monitor.stats.started_at,
            check_interval_s=self.service.cfg.monitor.check_interval_s,
        )
        await _edit(query, text, main_menu_keyboard())

    async def _send_test(self, query: Any, context: Any) -> None:
        clock = self.service.clock
        sample = Message(
            fingerprint=f"test_{clock.epoch_ms()}",
            phone_number="5841620932",
            range="VE Venezuela",
            otp_code="947444",
            raw_text=SAMPLE_OTP_TEXT,
            service="WhatsApp",
            country="VE",
            country_emoji=country_emoji("VE"),
            observed_at=clock.now(),
        )
        if await self.service.monitor.deliver(sample):
            await _edit(query, "✅ <b>Test OTP sent to the group!</b>", main_menu_keyboard())
        else:
            await _edit(query, "⚠️ <b>Test OTP could not be sent.</b>", main_menu_keyboard())


def build_menu_app(service: "RelayService") -> Application:
    """Polling bot application; the caller owns initialize/start and shutdown."""
    menu = RelayMenu(service, admin_ids=service.cfg.telegram.admin_ids)
    application = Application.builder().token(service.cfg.telegram.bot_token).build()
    application.add_handler(CommandHandler("start", menu.start))
    application.add_handler(CallbackQueryHandler(menu.on_callback))
    return application
