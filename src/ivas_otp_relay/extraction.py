from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence


UNKNOWN_SERVICE = "Unknown"
UNKNOWN_COUNTRY = "Unknown"
GLOBE_EMOJI = "\U0001F30D"

_PHONE_RE = re.compile(r"^\d{7,15}$")

# Alternatives are tried at each position from left to right, so the first qualifying code in the text wins.
# - "947-444": two 2-4 digit groups joined by a single hyphen, not touching other digits/hyphens.
# - "947444": a bare 4-8 digit run bounded by non-digits.
_OTP_RE = re.compile(r"(?<![\d-])(\d{2,4})-(\d{2,4})(?![\d-])|(?<!\d)(\d{4,8})(?!\d)")


def is_phone_number(value: str) -> bool:
    return bool(_PHONE_RE.match((value or "").strip()))


def extract_otp(text: str) -> Optional[str]:
    """
    Return the first OTP-looking code in `text`, or None.

    Examples:
    - "Your code is 947444, do not share" -> "947444"
    - "Your WhatsApp code 947-444"        -> "947444"
    - "Thanks for contacting us"          -> None
    """
    m = _OTP_RE.search(text or "")
    if not m:
        return None
    if m.group(3):
        return m.group(3)
    return m.group(1) + m.group(2)


def message_fingerprint(phone_number: str, otp_code: str, raw_text: str) -> str:
    # Used for dedup across scrapes. Keep stable and human-readable.
    return f"{phone_number}_{otp_code}_{(raw_text or '')[:30]}"


# Ordered: earlier entries win when several patterns match.
DEFAULT_SERVICE_PATTERNS: tuple[tuple[str, str], ...] = (
    ("WhatsApp", r"whatsapp|wa\.me|verify|wassap|whtsapp"),
    ("Facebook", r"facebook|fb\.me|fb-|meta"),
    ("Telegram", r"telegram|t\.me|tg|telegrambot"),
    ("Google", r"google|gmail|goog|g\.co|accounts\.google"),
    ("Twitter", r"twitter|x\.com|twtr"),
    ("Instagram", r"instagram|insta|ig"),
    ("Apple", r"apple|icloud|appleid"),
    ("Amazon", r"amazon|amzn"),
    ("Microsoft", r"microsoft|msft|outlook|hotmail"),
    ("PayPal", r"paypal"),
    ("Netflix", r"netflix"),
    ("Uber", r"uber"),
    ("TikTok", r"tiktok"),
    ("LinkedIn", r"linkedin"),
    ("Spotify", r"spotify"),
    ("Lalamove", r"lalamove"),
)


@dataclass(frozen=True)
class ServiceTable:
    """Ordered (label, matcher) pairs evaluated first-match-wins."""

    entries: tuple[tuple[str, re.Pattern[str]], ...]

    @classmethod
    def from_patterns(cls, patterns: Iterable[tuple[str, str]]) -> "ServiceTable":
        return cls(entries=tuple((label, re.compile(pattern, re.I)) for label, pattern in patterns))

    @classmethod
    def default(cls) -> "ServiceTable":
        return cls.from_patterns(DEFAULT_SERVICE_PATTERNS)

    def classify(self, text: str) -> str:
        for label, matcher in self.entries:
            if matcher.search(text or ""):
                return label
        return UNKNOWN_SERVICE


def extract_country(range_name: str) -> str:
    """First whitespace-delimited token of the range name; a heuristic, not a geocode."""
    parts = (range_name or "").strip().split()
    return parts[0] if parts else UNKNOWN_COUNTRY


# Order matters for names that contain each other ("Nigeria" before "Niger").
COUNTRY_FLAGS: Sequence[tuple[str, str]] = (
    ("Nigeria", "🇳🇬"), ("Benin", "🇧🇯"), ("Ghana", "🇬🇭"), ("Kenya", "🇰🇪"),
    ("USA", "🇺🇸"), ("UK", "🇬🇧"), ("France", "🇫🇷"), ("Germany", "🇩🇪"),
    ("India", "🇮🇳"), ("China", "🇨🇳"), ("Brazil", "🇧🇷"), ("Canada", "🇨🇦"),
    ("Ivory", "🇨🇮"), ("Cote", "🇨🇮"), ("Algeria", "🇩🇿"), ("Madagascar", "🇲🇬"),
    ("Senegal", "🇸🇳"), ("Cameroon", "🇨🇲"), ("Tanzania", "🇹🇿"), ("Uganda", "🇺🇬"),
    ("Ethiopia", "🇪🇹"), ("Egypt", "🇪🇬"), ("Morocco", "🇲🇦"), ("Russia", "🇷🇺"),
    ("Ukraine", "🇺🇦"), ("Poland", "🇵🇱"), ("Indonesia", "🇮🇩"), ("Philippines", "🇵🇭"),
    ("Vietnam", "🇻🇳"), ("Thailand", "🇹🇭"), ("Malaysia", "🇲🇾"), ("Pakistan", "🇵🇰"),
    ("Bangladesh", "🇧🇩"), ("Mexico", "🇲🇽"), ("Colombia", "🇨🇴"), ("Argentina", "🇦🇷"),
    ("Chile", "🇨🇱"), ("Peru", "🇵🇪"), ("Venezuela", "🇻🇪"), ("South Africa", "🇿🇦"),
    ("Sudan", "🇸🇩"), ("Mozambique", "🇲🇿"), ("Angola", "🇦🇴"), ("Zimbabwe", "🇿🇼"),
    ("Zambia", "🇿🇲"), ("Rwanda", "🇷🇼"), ("Malawi", "🇲🇼"), ("Togo", "🇹🇬"),
    ("Mali", "🇲🇱"), ("Niger", "🇳🇪"), ("Burkina", "🇧🇫"), ("Guinea", "🇬🇳"),
    ("Gabon", "🇬🇦"), ("Congo", "🇨🇬"), ("Chad", "🇹🇩"), ("Somalia", "🇸🇴"),
    ("Libya", "🇱🇾"), ("Tunisia", "🇹🇳"), ("Saudi", "🇸🇦"), ("UAE", "🇦🇪"),
    ("Iraq", "🇮🇶"), ("Iran", "🇮🇷"), ("Turkey", "🇹🇷"), ("Israel", "🇮🇱"),
    ("Jordan", "🇯🇴"), ("Lebanon", "🇱🇧"), ("Syria", "🇸🇾"), ("Yemen", "🇾🇪"),
    ("Afghanistan", "🇦🇫"), ("Nepal", "🇳🇵"), ("Myanmar", "🇲🇲"), ("Cambodia", "🇰🇭"),
    ("Sri Lanka", "🇱🇰"), ("Taiwan", "🇹🇼"), ("South Korea", "🇰🇷"), ("Japan", "🇯🇵"),
    ("Australia", "🇦🇺"), ("New Zealand", "🇳🇿"), ("Spain", "🇪🇸"), ("Italy", "🇮🇹"),
    ("Portugal", "🇵🇹"), ("Netherlands", "🇳🇱"), ("Belgium", "🇧🇪"), ("Sweden", "🇸🇪"),
    ("Norway", "🇳🇴"), ("Denmark", "🇩🇰"), ("Finland", "🇫🇮"), ("Switzerland", "🇨🇭"),
    ("Austria", "🇦🇹"), ("Romania", "🇷🇴"), ("Hungary", "🇭🇺"), ("Czech", "🇨🇿"),
    ("Slovakia", "🇸🇰"), ("Bulgaria", "🇧🇬"), ("Serbia", "🇷🇸"), ("Croatia", "🇭🇷"),
    ("Greece", "🇬🇷"), ("Bolivia", "🇧🇴"), ("Ecuador", "🇪🇨"), ("Paraguay", "🇵🇾"),
    ("Uruguay", "🇺🇾"), ("Cuba", "🇨🇺"), ("Haiti", "🇭🇹"), ("Dominican", "🇩🇴"),
    ("Guatemala", "🇬🇹"), ("Honduras", "🇭🇳"), ("Nicaragua", "🇳🇮"), ("Costa", "🇨🇷"),
    ("Panama", "🇵🇦"), ("Jamaica", "🇯🇲"),
)

_FLAG_MATCHERS = tuple(
    (re.compile(rf"\b{re.escape(name)}\b", re.I), emoji) for name, emoji in COUNTRY_FLAGS
)
_ISO2_RE = re.compile(r"^[A-Z]{2}$")


def _regional_indicator_flag(code: str) -> str:
    return "".join(chr(0x1F1E6 + ord(ch) - ord("A")) for ch in code)


def _lookup_flag(text: str) -> Optional[str]:
    for matcher, emoji in _FLAG_MATCHERS:
        if matcher.search(text):
            return emoji
    return None


def country_emoji(country: str, range_name: str = "") -> str:
    """
    Best-effort flag for a range: named country on the token, ISO-3166 alpha-2 token, then the full range name.
    """
    token = (country or "").strip()
    if token:
        found = _lookup_flag(token)
        if found:
            return found
        if _ISO2_RE.match(token):
            return _regional_indicator_flag(token)
    if range_name:
        found = _lookup_flag(range_name)
        if found:
            return found
    return GLOBE_EMOJI
