from __future__ import annotations

from ivas_otp_relay.extraction import (
    GLOBE_EMOJI,
    ServiceTable,
    country_emoji,
    extract_country,
    extract_otp,
    is_phone_number,
    message_fingerprint,
)


def test_extract_otp_plain_code() -> None:
    assert extract_otp("Your code is 947444, do not share") == "947444"


def test_extract_otp_none_when_no_code() -> None:
    assert extract_otp("Thanks for contacting us") is None
    assert extract_otp("") is None


def test_extract_otp_first_qualifying_run_wins() -> None:
    # "12" is too short to qualify; the first 4-8 digit run is picked.
    assert extract_otp("Step 12: use 4821 or 99887766") == "4821"
    # 9+ digit runs are not codes, the later run is.
    assert extract_otp("Ref 1234567890 code 5521") == "5521"


def test_extract_otp_hyphenated_code_is_joined() -> None:
    assert extract_otp("Your WhatsApp code 947-444") == "947444"
    assert extract_otp("Code: 12-3456") == "123456"


def test_service_table_first_match_wins() -> None:
    table = ServiceTable.default()
    assert table.classify("Your WhatsApp code 947-444") == "WhatsApp"
    assert table.classify("<#> 123456 is your Facebook code") == "Facebook"
    assert table.classify("Your PayPal code is 4455") == "PayPal"
    assert table.classify("zzz 4455") == "Unknown"


def test_service_table_custom_order() -> None:
    table = ServiceTable.from_patterns([("Bank", r"bank"), ("Any", r".")])
    assert table.classify("My Bank: 1234") == "Bank"
    assert table.classify("hello") == "Any"


def test_country_and_flag() -> None:
    assert extract_country("VE Venezuela 001") == "VE"
    assert extract_country("   ") == "Unknown"
    assert country_emoji("VE", "VE Venezuela 001") == "🇻🇪"
    assert country_emoji("Nigeria", "Nigeria 44") == "🇳🇬"
    assert country_emoji("Niger", "Niger 1") == "🇳🇪"
    assert country_emoji("Atlantis", "Atlantis 7") == GLOBE_EMOJI


def test_fingerprint_uses_first_30_chars() -> None:
    text = "Your WhatsApp code 947-444. Don't share this code with anyone."
    fp = message_fingerprint("5841620932", "947444", text)
    assert fp == "5841620932_947444_" + text[:30]
    assert fp == message_fingerprint("5841620932", "947444", text[:30] + " different tail")


def test_phone_number_validation() -> None:
    assert is_phone_number("5841620932")
    assert is_phone_number("1234567")
    assert not is_phone_number("123456")
    assert not is_phone_number("1234567890123456")
    assert not is_phone_number("58416abc32")
