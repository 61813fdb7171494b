from __future__ import annotations

import asyncio
import json
from datetime import date

import pytest
from fakes import BASE_URL, FakeClock, FakePage, FakeResponse, valid_session
from playwright.async_api import Error as PlaywrightError

from ivas_otp_relay.config import PortalConfig
from ivas_otp_relay.errors import SessionExpiredError, TransportError
from ivas_otp_relay.portal.api import DateWindow, PortalApi
from ivas_otp_relay.portal.session import SessionContext


WINDOW = DateWindow(start=date(2024, 5, 3), end=date(2024, 5, 11))


def _api(handler) -> tuple[PortalApi, FakePage]:
    page = FakePage()
    page.context.request.handler = handler
    context = SessionContext()
    context.publish(valid_session("tok-1"), page=page)
    return PortalApi(PortalConfig(base_url=BASE_URL), context=context), page


def test_date_window_around_today() -> None:
    window = DateWindow.around_today(FakeClock(), days_back=7)
    assert (window.start_iso, window.end_iso) == ("2024-05-03", "2024-05-11")


def test_discover_ranges_posts_token_and_headers() -> None:
    html = """<div class="card card-body mb-1 pointer" onclick="getDetials('VE Venezuela 001')"></div>"""
    api, page = _api(lambda method, url, kwargs: FakeResponse(200, html))

    assert asyncio.run(api.discover_ranges(WINDOW)) == ["VE Venezuela 001"]

    method, url, kwargs = page.context.request.calls[0]
    assert method == "POST"
    assert url == f"{BASE_URL}/portal/sms/received/getsms"
    assert kwargs["form"] == {"_token": "tok-1", "from": "2024-05-03", "to": "2024-05-11"}
    assert kwargs["headers"]["X-Requested-With"] == "XMLHttpRequest"
    assert kwargs["headers"]["Referer"] == f"{BASE_URL}/portal/sms/received"
    assert kwargs["headers"]["Origin"] == BASE_URL


def test_number_and_message_requests_use_portal_field_names() -> None:
    api, page = _api(lambda method, url, kwargs: FakeResponse(200, ""))

    async def scenario() -> None:
        await api.numbers_for_range("VE Venezuela 001", WINDOW)
        await api.messages_for_number("5841620932", "VE Venezuela 001", WINDOW)

    asyncio.run(scenario())
    (_, url1, kw1), (_, url2, kw2) = page.context.request.calls
    assert url1.endswith("/getsms/number")
    assert kw1["form"] == {"_token": "tok-1", "start": "", "end": "2024-05-11", "range": "VE Venezuela 001"}
    assert url2.endswith("/getsms/number/sms")
    assert kw2["form"] == {
        "_token": "tok-1",
        "start": "",
        "end": "2024-05-11",
        "Number": "5841620932",
        "Range": "VE Venezuela 001",
    }


@pytest.mark.parametrize("status", [401, 403, 419])
def test_rejected_session_raises_session_expired(status: int) -> None:
    api, _ = _api(lambda method, url, kwargs: FakeResponse(status, "CSRF token mismatch"))
    with pytest.raises(SessionExpiredError) as exc:
        asyncio.run(api.numbers_for_range("VE Venezuela 001", WINDOW))
    assert exc.value.status == status


def test_server_error_is_transport_error() -> None:
    api, _ = _api(lambda method, url, kwargs: FakeResponse(502, "bad gateway"))
    with pytest.raises(TransportError) as exc:
        asyncio.run(api.messages_for_number("5841620932", "VE Venezuela 001", WINDOW))
    assert not isinstance(exc.value, SessionExpiredError)
    assert exc.value.status == 502


def test_playwright_failure_is_transport_error() -> None:
    def boom(method, url, kwargs):
        raise PlaywrightError("net::ERR_CONNECTION_RESET")

    api, _ = _api(boom)
    with pytest.raises(TransportError):
        asyncio.run(api.discover_ranges(WINDOW))


def test_invalid_session_refuses_to_send() -> None:
    api, page = _api(lambda method, url, kwargs: FakeResponse(200, ""))
    api.context.invalidate("test")
    with pytest.raises(SessionExpiredError):
        asyncio.run(api.discover_ranges(WINDOW))
    assert page.context.request.calls == []


def test_numbers_directory_follows_pagination() -> None:
    rows = [["", str(5841620930 + i), "VE Venezuela 001"] for i in range(3)]

    def handler(method, url, kwargs):
        params = kwargs["params"]
        start, length = params["start"], params["length"]
        return FakeResponse(
            200,
            json.dumps({"recordsTotal": 3, "recordsFiltered": 3, "data": rows[start : start + length]}),
        )

    api, page = _api(handler)
    records = asyncio.run(api.numbers_directory(page_size=2))

    assert [r.phone_number for r in records] == ["5841620930", "5841620931", "5841620932"]
    assert [c[2]["params"]["draw"] for c in page.context.request.calls] == [1, 2]
    assert page.context.request.calls[0][1] == f"{BASE_URL}/portal/numbers"
