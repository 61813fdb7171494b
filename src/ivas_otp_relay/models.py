from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_PHONE_RE = re.compile(r"^\d{7,15}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Cookie(BaseModel):
    """
    A browser cookie as exported by Playwright (or pasted by an operator from a browser extension).

    Unknown keys are preserved so a raw export round-trips through the cookie file unchanged.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    name: str
    value: str
    domain: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[float] = None
    httpOnly: Optional[bool] = None
    secure: Optional[bool] = None
    sameSite: Optional[str] = None


class Session(BaseModel):
    """
    Authenticated portal session: cookies plus the anti-forgery token.

    Instances are immutable; the session manager publishes a new one instead of mutating the current one.
    """

    model_config = ConfigDict(frozen=True)

    cookies: tuple[Cookie, ...] = ()
    anti_forgery_token: Optional[str] = None
    valid: bool = False
    last_refreshed: Optional[datetime] = None

    @model_validator(mode="after")
    def _valid_requires_credentials(self) -> "Session":
        if self.valid and (not self.anti_forgery_token or not self.cookies):
            raise ValueError("a valid session needs a non-empty anti-forgery token and cookies")
        return self

    @classmethod
    def empty(cls) -> "Session":
        return cls()

    def with_token(self, token: str) -> "Session":
        return self.model_copy(update={"anti_forgery_token": token, "last_refreshed": _utcnow()})

    def invalidated(self) -> "Session":
        return self.model_copy(update={"valid": False})

    def cookie_header(self) -> str:
        return "; ".join(f"{c.name}={c.value}" for c in self.cookies)


class NumberRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    phone_number: str
    range: str

    @field_validator("phone_number")
    @classmethod
    def _validate_phone(cls, v: str) -> str:
        s = (v or "").strip()
        if not _PHONE_RE.match(s):
            raise ValueError(f"phone number must be 7-15 digits, got {v!r}")
        return s

    @property
    def country(self) -> str:
        parts = self.range.strip().split()
        return parts[0] if parts else "Unknown"


class Message(BaseModel):
    """An OTP-bearing SMS observed on the portal."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    phone_number: str
    range: str
    otp_code: str
    raw_text: str
    service: str = "Unknown"
    country: str = "Unknown"
    country_emoji: str = ""
    observed_at: datetime = Field(default_factory=_utcnow)

    @property
    def country_label(self) -> str:
        return f"{self.country_emoji} {self.country}".strip()
