from __future__ import annotations

import asyncio
import json
from pathlib import Path

from fakes import BASE_URL, T0, FakeClock, FakeLauncher, FakeNotifier, FakePage

from ivas_otp_relay.config import AppConfig, PortalConfig, StateConfig, TelegramConfig
from ivas_otp_relay.extraction import message_fingerprint
from ivas_otp_relay.models import Message
from ivas_otp_relay.service import RelayService
from ivas_otp_relay.state import DedupStore, JsonBlob


def _message(text: str = "Your WhatsApp code 947-444") -> Message:
    return Message(
        fingerprint=message_fingerprint("5841620932", "947444", text),
        phone_number="5841620932",
        range="VE Venezuela 001",
        otp_code="947444",
        raw_text=text,
        service="WhatsApp",
        country="VE",
        observed_at=T0,
    )


def _build(tmp_path: Path, *, dry_run: bool) -> RelayService:
    cfg = AppConfig(
        portal=PortalConfig(base_url=BASE_URL),
        telegram=TelegramConfig(group_id="-100123"),
        state=StateConfig(data_dir=str(tmp_path)),
    )
    return RelayService.build(
        cfg,
        notifier=FakeNotifier(),
        clock=FakeClock(),
        launcher=FakeLauncher(FakePage(logged_in=True, token="tok-1")),
        dry_run=dry_run,
    )


def test_dry_run_leaves_history_and_known_ranges_untouched(tmp_path: Path) -> None:
    service = _build(tmp_path, dry_run=True)

    async def scenario() -> None:
        assert await service.monitor.deliver(_message()) is True
        service.monitor.scraper.novelty.diff(["VE Venezuela 001", "NG Nigeria 7"])
        await service.close()

    asyncio.run(scenario())

    assert not (tmp_path / "otp_history.json").exists()
    assert not (tmp_path / "known_ranges.json").exists()
    assert DedupStore(JsonBlob(tmp_path / "otp_history.json")).try_mark_sent(_message().fingerprint) is True


def test_dry_run_still_skips_already_sent_otps(tmp_path: Path) -> None:
    real = DedupStore(JsonBlob(tmp_path / "otp_history.json"))
    assert real.try_mark_sent(_message().fingerprint) is True
    before = (tmp_path / "otp_history.json").read_text(encoding="utf-8")

    service = _build(tmp_path, dry_run=True)

    async def scenario() -> tuple[bool, bool]:
        old = await service.monitor.deliver(_message())
        new = await service.monitor.deliver(_message("Your WhatsApp code 123-456"))
        await service.close()
        return old, new

    assert asyncio.run(scenario()) == (False, True)
    assert (tmp_path / "otp_history.json").read_text(encoding="utf-8") == before


def test_regular_build_persists_history(tmp_path: Path) -> None:
    service = _build(tmp_path, dry_run=False)

    assert asyncio.run(service.monitor.deliver(_message())) is True
    history = json.loads((tmp_path / "otp_history.json").read_text(encoding="utf-8"))
    assert _message().fingerprint in json.dumps(history)
