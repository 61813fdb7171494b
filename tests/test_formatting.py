from __future__ import annotations

from fakes import T0

from ivas_otp_relay.models import Message
from ivas_otp_relay.notify.formatting import (
    format_new_ranges,
    format_otp_message,
    format_recipient_notice,
    format_startup,
    mask_phone,
    otp_keyboard,
    panel_link,
)


def _msg(**overrides) -> Message:
    data = dict(
        fingerprint="fp",
        phone_number="5841620932",
        range="VE Venezuela 001",
        otp_code="947444",
        raw_text="Your <WhatsApp> code 947-444 & more",
        service="WhatsApp",
        country="VE",
        country_emoji="🇻🇪",
        observed_at=T0,
    )
    data.update(overrides)
    return Message(**data)


def test_mask_phone() -> None:
    assert mask_phone("5841620932") == "5841***0932"
    assert mask_phone("1234567") == "1234***4567"
    assert mask_phone("123456") == "123456"
    assert mask_phone("") == ""


def test_otp_message_is_escaped_html() -> None:
    text = format_otp_message(_msg())
    assert "New WhatsApp OTP Received" in text
    assert "2024-05-10 12:00:00 UTC" in text
    assert "🇻🇪 VE" in text
    assert "5841***0932" in text
    assert "5841620932" not in text
    assert "<code>947444</code>" in text
    assert "<blockquote>Your &lt;WhatsApp&gt; code 947-444 &amp; more</blockquote>" in text


def test_recipient_notice_and_range_alert() -> None:
    assert "<code>947444</code>" in format_recipient_notice(_msg())
    alert = format_new_ranges(["VE Venezuela 001", "A&B 2"])
    assert alert.startswith("🆕 <b>New Range(s) Detected!</b>")
    assert "<b>A&amp;B 2</b>" in alert


def test_startup_text() -> None:
    ready = format_startup(session_ready=True, check_interval_s=10, started_at=T0)
    assert "monitoring active" in ready
    assert "every 10 seconds" in ready
    assert "2024-05-10 12:00:00 UTC" in ready
    assert "update cookies" in format_startup(session_ready=False, check_interval_s=2.5)


def test_panel_link_and_keyboard() -> None:
    assert panel_link("123456:ABC") == "https://t.me/123456"
    assert panel_link("123456:ABC", "https://t.me/my_panel_bot") == "https://t.me/my_panel_bot"
    assert panel_link("") == ""

    assert otp_keyboard(panel_url="https://t.me/1", channel_url="https://t.me/c") == [
        [("🚀 Panel", "https://t.me/1"), ("📢 Channel", "https://t.me/c")]
    ]
    assert otp_keyboard(panel_url="", channel_url="") == []
