from __future__ import annotations

import logging
import zipfile
from pathlib import Path

import pytest

from ivas_otp_relay.cli import main
from ivas_otp_relay.logging_config import RedactingFilter


@pytest.fixture()
def state_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("STATE_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "data" / "relay.log"))
    for key in ("TELEGRAM_BOT_TOKEN", "TELEGRAM_GROUP_ID", "IVAS_BASE_URL"):
        monkeypatch.delenv(key, raising=False)
    return tmp_path


def _base_args(tmp_path: Path) -> list[str]:
    return ["--env-file", str(tmp_path / "missing.env"), "--config", str(tmp_path / "missing.yaml")]


def test_debug_bundle_command(state_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    debug_dir = state_env / "data" / "debug"
    debug_dir.mkdir(parents=True)
    (debug_dir / "token_missing.txt").write_text("body", encoding="utf-8")

    rc = main(_base_args(state_env) + ["debug-bundle", "--out-dir", str(state_env / "bundles")])

    assert rc == 0
    assert "Debug bundle written" in capsys.readouterr().out
    (bundle,) = list((state_env / "bundles").glob("debug_bundle_*.zip"))
    with zipfile.ZipFile(bundle) as z:
        names = set(z.namelist())
    assert "debug/token_missing.txt" in names
    assert "state_summary.json" in names


def test_check_requires_telegram_settings(state_env: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        main(_base_args(state_env) + ["check"])
    assert "TELEGRAM_BOT_TOKEN" in str(exc.value)


def test_redacting_filter_masks_secrets() -> None:
    f = RedactingFilter(["123456:ABCDEF", "", "ab"])
    record = logging.LogRecord(
        "httpx", logging.INFO, __file__, 1, "POST %s", ("https://api.telegram.org/bot123456:ABCDEF/sendMessage",), None
    )
    assert f.filter(record) is True
    assert record.getMessage() == "POST https://api.telegram.org/bot***/sendMessage"

    plain = logging.LogRecord("x", logging.INFO, __file__, 1, "about %d", (3,), None)
    f.filter(plain)
    assert plain.getMessage() == "about 3"
