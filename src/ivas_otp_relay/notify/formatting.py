from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Iterable, Optional

from ..extraction import country_emoji, extract_country
from ..models import Message
from . import Keyboard


RULE = "━━━━━━━━━━━━━━━━━━━━"


def mask_phone(phone: str) -> str:
    """`5841620932` -> `5841***0932`. Short numbers are shown as-is."""
    phone = phone or ""
    if len(phone) <= 6:
        return phone
    return f"{phone[:4]}***{phone[-4:]}"


def format_otp_message(msg: Message) -> str:
    when = msg.observed_at.strftime("%Y-%m-%d %H:%M:%S UTC")
    service = escape(msg.service)
    return (
        f"✅ <b>New {service} OTP Received</b>\n\n"
        f"{RULE}\n"
        f"⏰ <b>Time:</b> {when}\n"
        f"🌍 <b>Country:</b> {escape(msg.country_label)}\n"
        f"🛠 <b>Service:</b> {service}\n"
        f"📱 <b>Number:</b> {mask_phone(msg.phone_number)}\n"
        f"🔑 <b>OTP:</b> <code>{escape(msg.otp_code)}</code>\n"
        f"{RULE}\n"
        f"💬 <b>Message:</b>\n"
        f"<blockquote>{escape(msg.raw_text)}</blockquote>"
    )


def format_recipient_notice(msg: Message) -> str:
    return f"🔑 Your OTP: <code>{escape(msg.otp_code)}</code>\n✅ Number session cleared."


def format_new_ranges(ranges: Iterable[str]) -> str:
    lines = []
    for r in ranges:
        lines.append(f"{country_emoji(extract_country(r), r)} <b>{escape(r)}</b>")
    return "🆕 <b>New Range(s) Detected!</b>\n\n" + "\n".join(lines)


def format_startup(*, session_ready: bool, check_interval_s: float, started_at: Optional[datetime] = None) -> str:
    status = (
        "✅ Session ready, monitoring active"
        if session_ready
        else "⚠️ Session invalid, update cookies through the control API"
    )
    text = f"🚀 <b>OTP relay started</b>\n\n{status}\n🔁 Checking every {check_interval_s:g} seconds"
    if started_at is not None:
        text += f"\n⏰ <code>{started_at.strftime('%Y-%m-%d %H:%M:%S UTC')}</code>"
    return text


def panel_link(bot_token: str, configured: str = "") -> str:
    if configured:
        return configured
    bot_id = (bot_token or "").split(":", 1)[0]
    return f"https://t.me/{bot_id}" if bot_id else ""


def otp_keyboard(*, panel_url: str, channel_url: str) -> Keyboard:
    row = []
    if panel_url:
        row.append(("🚀 Panel", panel_url))
    if channel_url:
        row.append(("📢 Channel", channel_url))
    return [row] if row else []


def format_assigned(range_name: str, phone_number: str, *, changed: bool = False) -> str:
    emoji = country_emoji(extract_country(range_name), range_name)
    title = "🔄 <b>New Number Assigned!</b>" if changed else "🔄 <b>Number Assigned Successfully!</b>"
    text = (
        f"{title}\n\n"
        f"{RULE}\n"
        f"{emoji} <b>Range:</b> {escape(range_name)}\n"
        f"📱 <b>Number:</b> <code>{escape(phone_number)}</code>\n"
        f"🟢 <b>Status:</b> Ready to receive OTP\n"
        f"{RULE}"
    )
    if not changed:
        text += "\n\nUse this number to register. The OTP will be sent to you automatically!"
    return text


def format_status(status: dict) -> str:
    """Operator status card built from `RelayService.status()`."""
    return (
        "📊 <b>Relay Status</b>\n\n"
        f"⏱ <b>Uptime:</b> {status['uptime']}\n"
        f"📨 <b>OTPs Sent:</b> {status['totalOtpsSent']}\n"
        f"🕐 <b>Last Check:</b> {status['lastCheck'] or 'Never'}\n"
        f"🔐 <b>Session:</b> {'🟢 Valid' if status['sessionValid'] else '🔴 Invalid'}\n"
        f"🟢 <b>Monitor:</b> {'Running' if status['isRunning'] else 'Stopped'}\n"
        f"👥 <b>Active Sessions:</b> {status['activeSessions']}\n"
        f"❌ <b>Last Error:</b> {escape(status['lastError'] or 'None')}"
    )


def format_stats(status: dict, *, started_at: datetime, check_interval_s: float) -> str:
    return (
        "📈 <b>Detailed Statistics</b>\n\n"
        f"⏱ <b>Started:</b> {started_at.strftime('%Y-%m-%d %H:%M:%S UTC')}\n"
        f"⏱ <b>Uptime:</b> {status['uptime']}\n"
        f"📨 <b>Total OTPs Sent:</b> {status['totalOtpsSent']}\n"
        f"🕐 <b>Last Check:</b> {status['lastCheck'] or 'Never'}\n"
        f"🔁 <b>Check Interval:</b> Every {check_interval_s:g} seconds\n"
        f"👥 <b>Active Sessions:</b> {status['activeSessions']}\n"
        f"🟢 <b>Monitor Running:</b> {'Yes' if status['isRunning'] else 'No'}"
    )
