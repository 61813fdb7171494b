from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from fakes import BASE_URL, FakeClock, FakeLauncher, FakeNotifier, FakePage

from ivas_otp_relay.config import AppConfig, ControlConfig, PortalConfig, StateConfig, TelegramConfig
from ivas_otp_relay.control import create_app
from ivas_otp_relay.service import RelayService


ADMIN = "hunter22"


def _service(tmp_path: Path, *, admin_password: str = ADMIN, page: Optional[FakePage] = None) -> RelayService:
    cfg = AppConfig(
        portal=PortalConfig(base_url=BASE_URL),
        telegram=TelegramConfig(group_id="-100123"),
        state=StateConfig(data_dir=str(tmp_path)),
        control=ControlConfig(admin_password=admin_password),
    )
    return RelayService.build(
        cfg,
        notifier=FakeNotifier(),
        clock=FakeClock(),
        launcher=FakeLauncher(page or FakePage(logged_in=True, token="tok-1")),
    )


@pytest.fixture()
def service(tmp_path: Path) -> RelayService:
    return _service(tmp_path)


def test_status_reports_counters(service: RelayService) -> None:
    with TestClient(create_app(service)) as client:
        for path in ("/", "/status"):
            r = client.get(path)
            assert r.status_code == 200
            body = r.json()
            assert body["status"] == "running"
            assert body["uptime"] == "0h 0m"
            assert body["totalOtpsSent"] == 0
            assert body["sessionValid"] is False
            assert body["authState"] == "unauthenticated"
            assert body["activeSessions"] == 0


def test_check_fails_while_session_invalid(service: RelayService) -> None:
    with TestClient(create_app(service)) as client:
        r = client.get("/check")
    assert r.status_code == 500


@pytest.mark.parametrize("password", ["", "wrong"])
def test_update_cookies_requires_admin_password(service: RelayService, password: str) -> None:
    with TestClient(create_app(service)) as client:
        r = client.post("/update-cookies", json={"password": password, "cookies": []})
    assert r.status_code == 403


def test_admin_endpoints_locked_without_configured_password(tmp_path: Path) -> None:
    service = _service(tmp_path, admin_password="")
    with TestClient(create_app(service)) as client:
        r = client.post("/update-cookies", json={"password": "", "cookies": []})
    assert r.status_code == 403


def test_update_cookies_rejects_non_list(service: RelayService) -> None:
    with TestClient(create_app(service)) as client:
        r = client.post("/update-cookies", json={"password": ADMIN, "cookies": {"name": "a"}})
        assert r.status_code == 400
        r = client.post("/update-cookies", json={"password": ADMIN, "cookies": [{"value": "no-name"}]})
        assert r.status_code == 400


def _wait_for_session(client: TestClient, timeout_s: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout_s
    while True:
        status = client.get("/status").json()
        if status["sessionValid"] or time.monotonic() > deadline:
            return status
        time.sleep(0.01)


def test_update_cookies_persists_and_reauthenticates_in_background(service: RelayService, tmp_path: Path) -> None:
    cookies = [
        {"name": "ivas_sms_session", "value": "pasted", "domain": "portal.example.test", "path": "/"},
        {"name": "XSRF-TOKEN", "value": "x"},
    ]
    with TestClient(create_app(service)) as client:
        r = client.post("/update-cookies", json={"password": ADMIN, "cookies": cookies})
        assert r.status_code == 200
        assert r.json() == {
            "success": True,
            "message": "Updated 2 cookies; re-authenticating",
            "reloginScheduled": True,
        }

        status = _wait_for_session(client)
        assert status["sessionValid"] is True
        assert status["authState"] == "token_extracted"

    # Re-authentication overwrites the jar with the browser's live cookies.
    saved = json.loads((tmp_path / "cookies.json").read_text(encoding="utf-8"))
    assert saved[0]["value"] == "fresh"


def test_update_cookies_does_not_wait_for_reauthentication(service: RelayService) -> None:
    async def scenario() -> tuple[int, bool]:
        count = service.update_cookies([{"name": "ivas_sms_session", "value": "pasted"}])
        valid_on_return = service.context.valid

        async def until_valid() -> None:
            while not service.context.valid:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(until_valid(), timeout=5)
        await service.close()
        return count, valid_on_return

    count, valid_on_return = asyncio.run(scenario())
    assert count == 1
    assert valid_on_return is False
    assert service.context.valid is True


def test_relogin_endpoint(service: RelayService) -> None:
    with TestClient(create_app(service)) as client:
        r = client.get("/relogin")
    assert r.json() == {"success": True, "sessionValid": True}


def test_assign_from_cached_directory(tmp_path: Path) -> None:
    (tmp_path / "numbers_cache.json").write_text(
        json.dumps(
            {
                "timestamp": FakeClock().epoch_ms(),
                "numbers": [["5841620930", "VE Venezuela 001"], ["5841620931", "VE Venezuela 001"]],
            }
        ),
        encoding="utf-8",
    )
    service = _service(tmp_path)

    with TestClient(create_app(service)) as client:
        r = client.post("/assign", json={"password": ADMIN, "recipient_id": "777", "range": "VE Venezuela 001"})
        assert r.status_code == 200
        assert r.json() == {"number": "5841620930", "range": "VE Venezuela 001"}

        r = client.post("/assign", json={"password": ADMIN, "recipient_id": "888", "range": "VE Venezuela 001"})
        assert r.json()["number"] == "5841620931"

        r = client.post("/assign", json={"password": ADMIN, "recipient_id": "999", "range": "VE Venezuela 001"})
        assert r.status_code == 404

        r = client.post("/assign", json={"password": ADMIN, "recipient_id": "999", "range": "Nowhere 1"})
        assert r.status_code == 404

        assert client.get("/status").json()["activeSessions"] == 2
