from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from fakes import BASE_URL, FakeClock, FakeLauncher, FakePage, valid_session

from ivas_otp_relay.config import PortalConfig
from ivas_otp_relay.errors import AuthError, SessionExpiredError
from ivas_otp_relay.models import Cookie
from ivas_otp_relay.portal.challenge import PollingChallengeResolver
from ivas_otp_relay.portal.serializer import PageSerializer
from ivas_otp_relay.portal.session import (
    AuthState,
    SessionContext,
    SessionManager,
    to_playwright_cookies,
)
from ivas_otp_relay.state import CookieJar, JsonBlob


def _manager(
    tmp_path: Path, page: FakePage, *, email: str = "", password: str = ""
) -> tuple[SessionManager, SessionContext, FakeClock, FakeLauncher]:
    clock = FakeClock()
    context = SessionContext()
    launcher = FakeLauncher(page)
    mgr = SessionManager(
        PortalConfig(base_url=BASE_URL, email=email, password=password),
        context=context,
        cookie_jar=CookieJar(JsonBlob(tmp_path / "cookies.json")),
        resolver=PollingChallengeResolver(clock=clock),
        serializer=PageSerializer(),
        clock=clock,
        launcher=launcher,
        debug_dir=tmp_path / "debug",
    )
    return mgr, context, clock, launcher


def test_restored_session_skips_login(tmp_path: Path) -> None:
    (tmp_path / "cookies.json").write_text(
        json.dumps([{"name": "ivas_sms_session", "value": "old", "sameSite": "no_restriction"}]),
        encoding="utf-8",
    )
    page = FakePage(logged_in=True, token="tok-9")
    mgr, context, _, launcher = _manager(tmp_path, page)

    session = asyncio.run(mgr.authenticate())

    assert session.valid
    assert session.anti_forgery_token == "tok-9"
    assert context.snapshot() == session
    assert context.page is page
    assert context.auth_state == AuthState.TOKEN_EXTRACTED
    assert page.visited[-1] == f"{BASE_URL}/portal/sms/received"
    assert page.filled == {}, "no login form interaction expected"
    assert page.context.added_cookies == [{"name": "ivas_sms_session", "value": "old", "url": BASE_URL, "sameSite": "None"}]
    assert launcher.launches == 1

    saved = json.loads((tmp_path / "cookies.json").read_text(encoding="utf-8"))
    assert saved[0]["value"] == "fresh"


def test_automatic_login_with_credentials(tmp_path: Path) -> None:
    page = FakePage(logged_in=False, accept_login=("me@example.com", "s3cret"))
    mgr, context, _, _ = _manager(tmp_path, page, email="me@example.com", password="s3cret")

    session = asyncio.run(mgr.authenticate())

    assert session.valid
    assert f"{BASE_URL}/login" in page.visited
    assert list(page.filled.values()) == ["me@example.com", "s3cret"]
    assert page.clicked, "submit expected"
    assert context.auth_state == AuthState.TOKEN_EXTRACTED


def test_rejected_credentials_fall_back_to_manual_window_then_fail(tmp_path: Path) -> None:
    page = FakePage(logged_in=False, accept_login=("me@example.com", "right"))
    mgr, context, clock, _ = _manager(tmp_path, page, email="me@example.com", password="wrong")

    with pytest.raises(AuthError):
        asyncio.run(mgr.authenticate())

    assert not context.valid
    assert context.auth_state == AuthState.AUTH_FAILED
    assert context.last_error
    assert clock.monotonic() >= 90, "manual-login window should have been waited out"
    assert (tmp_path / "debug" / "login_rejected.png").exists()


def test_manual_login_detected(tmp_path: Path) -> None:
    page = FakePage(logged_in=False)
    mgr, context, clock, _ = _manager(tmp_path, page)

    def operator_logs_in(_seconds: float) -> None:
        if clock.monotonic() > 20:
            page.logged_in = True

    clock.on_sleep = operator_logs_in
    session = asyncio.run(mgr.authenticate())

    assert session.valid
    assert clock.monotonic() < 90
    assert page.filled == {}


def test_missing_token_is_a_hard_failure(tmp_path: Path) -> None:
    page = FakePage(logged_in=True, token=None)
    mgr, context, _, _ = _manager(tmp_path, page)

    with pytest.raises(AuthError, match="anti-forgery token"):
        asyncio.run(mgr.authenticate())
    assert not context.valid
    assert context.auth_state == AuthState.AUTH_FAILED


def test_reauthenticate_replaces_valid_session(tmp_path: Path) -> None:
    page = FakePage(logged_in=True, token="tok-1")
    mgr, context, _, launcher = _manager(tmp_path, page)

    async def scenario() -> None:
        first = await mgr.authenticate()
        page.token = "tok-2"
        second = await mgr.authenticate()
        assert first.anti_forgery_token == "tok-1"
        assert second.anti_forgery_token == "tok-2"
        assert context.snapshot() is second

    asyncio.run(scenario())
    assert launcher.launches == 2
    assert launcher.closes >= 2


def test_replace_cookies_clears_session(tmp_path: Path) -> None:
    page = FakePage(logged_in=True)
    mgr, context, _, _ = _manager(tmp_path, page)
    context.publish(valid_session(), page=page)

    count = mgr.replace_cookies([{"name": "a", "value": "1"}, Cookie(name="b", value="2")])

    assert count == 2
    assert not context.valid
    assert context.snapshot().anti_forgery_token is None
    saved = json.loads((tmp_path / "cookies.json").read_text(encoding="utf-8"))
    assert [c["name"] for c in saved] == ["a", "b"]


def test_refresh_token_publishes_rotated_token(tmp_path: Path) -> None:
    page = FakePage(logged_in=True, token="tok-1")
    mgr, context, _, _ = _manager(tmp_path, page)

    async def scenario() -> None:
        await mgr.authenticate()
        page.token = "tok-rotated"
        page.url = f"{BASE_URL}/portal/numbers"
        await mgr.prepare_sms_page("2024-05-03", "2024-05-11")

    asyncio.run(scenario())
    assert context.snapshot().anti_forgery_token == "tok-rotated"
    assert context.valid
    assert page.url == f"{BASE_URL}/portal/sms/received"
    assert set(page.inputs.values()) == {"2024-05-03", "2024-05-11"}


def test_page_operations_require_a_page(tmp_path: Path) -> None:
    mgr, _, _, _ = _manager(tmp_path, FakePage())
    with pytest.raises(SessionExpiredError):
        asyncio.run(mgr.ensure_on_data_page())


def test_to_playwright_cookies_normalizes() -> None:
    cookies = [
        Cookie(name="a", value="1", domain=".portal.example.test", path="/", sameSite="lax", expires=-1),
        Cookie(name="b", value="2", sameSite="unspecified", secure=True, expires=1893456000),
    ]
    out = to_playwright_cookies(cookies, BASE_URL)
    assert out[0] == {"name": "a", "value": "1", "domain": ".portal.example.test", "path": "/", "sameSite": "Lax"}
    assert out[1] == {"name": "b", "value": "2", "url": BASE_URL, "expires": 1893456000.0, "secure": True}
