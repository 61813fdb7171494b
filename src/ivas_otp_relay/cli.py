from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .logging_config import configure_logging
from .notify import ConsoleNotifier, Notifier
from .service import RelayService
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("ivas_otp_relay")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ivas-otp-relay")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Optional YAML config overriding env (default: config.yaml)")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Authenticate, serve the control API and relay OTPs until stopped")

    check = sub.add_parser("check", help="Authenticate and run a single scrape-and-deliver cycle")
    check.add_argument("--dry-run", action="store_true", help="Print messages instead of sending them to Telegram")

    login = sub.add_parser("login", help="Authenticate once and persist the session cookies")
    login.add_argument("--headful", action="store_true", help="Show the browser (for a manual login)")

    numbers = sub.add_parser("numbers", help="Refresh the numbers directory and print counts per range")
    numbers.add_argument("--json", action="store_true", help="Print the full range -> numbers map as JSON")

    bundle = sub.add_parser("debug-bundle", help="Zip debug artifacts and the log for sharing")
    bundle.add_argument("--out-dir", default="", help="Where to write the zip (default: the state directory)")

    return p


def _telegram_notifier(cfg: AppConfig) -> Notifier:
    if not cfg.telegram.bot_token or not cfg.telegram.group_id:
        raise SystemExit("Missing TELEGRAM_BOT_TOKEN or TELEGRAM_GROUP_ID (set them in .env).")
    from .notify.telegram import TelegramNotifier

    return TelegramNotifier(cfg.telegram.bot_token)


def _write_bundle(cfg: AppConfig, label: str) -> None:
    # Auto-bundle debug artifacts + log for easy sharing.
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.state.debug_dir,
            log_file=cfg.logging.file_path or "data/relay.log",
            out_dir=cfg.state.data_dir,
            state_dir=cfg.state.data_dir,
            label=label,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except Exception:
        logger.debug("Failed to create debug bundle.", exc_info=True)


async def _check(service: RelayService) -> int:
    try:
        if not await service.relogin():
            logger.error("Could not authenticate: %s", service.context.last_error)
            return 1
        result = await service.monitor.run_once()
        print(f"found={result.found} sent={result.sent}")
        return 0
    finally:
        await service.close()


async def _login(service: RelayService) -> int:
    try:
        ok = await service.relogin()
        print("✅ Session ready; cookies saved." if ok else f"❌ Login failed: {service.context.last_error}")
        return 0 if ok else 1
    finally:
        await service.close()


async def _numbers(service: RelayService, *, as_json: bool) -> int:
    try:
        if not await service.relogin():
            logger.error("Could not authenticate: %s", service.context.last_error)
            return 1
        by_range = await service.numbers.by_range(force_refresh=True)
    finally:
        await service.close()

    if as_json:
        print(json.dumps(by_range, indent=2, ensure_ascii=False))
    else:
        for range_name in sorted(by_range):
            print(f"{len(by_range[range_name]):5d}  {range_name}")
        print(f"{sum(len(v) for v in by_range.values()):5d}  total")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(
        level=cfg.logging.level,
        file_path=cfg.logging.file_path,
        secrets=(cfg.telegram.bot_token, cfg.portal.password, cfg.control.admin_password),
    )

    if args.cmd == "debug-bundle":
        out = create_debug_bundle(
            debug_dir=cfg.state.debug_dir,
            log_file=cfg.logging.file_path,
            out_dir=args.out_dir or cfg.state.data_dir,
            state_dir=cfg.state.data_dir,
        )
        print(f"✅ Debug bundle written: {out}")
        return 0

    if args.cmd == "run":
        service = RelayService.build(cfg, notifier=_telegram_notifier(cfg))
        logger.info("Starting OTP relay (base_url=%s headless=%s)", cfg.portal.base_url, cfg.portal.headless)
        try:
            asyncio.run(service.run())
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down.")
        return 0

    if args.cmd == "check":
        notifier = ConsoleNotifier() if args.dry_run else _telegram_notifier(cfg)
        service = RelayService.build(cfg, notifier=notifier, dry_run=args.dry_run)
        try:
            rc = asyncio.run(_check(service))
        except Exception:
            _write_bundle(cfg, "check")
            raise
        if rc != 0:
            _write_bundle(cfg, "check")
        return rc

    if args.cmd == "login":
        if args.headful:
            cfg.portal.headless = False
        service = RelayService.build(cfg, notifier=ConsoleNotifier())
        rc = asyncio.run(_login(service))
        if rc != 0:
            _write_bundle(cfg, "login")
        return rc

    if args.cmd == "numbers":
        service = RelayService.build(cfg, notifier=ConsoleNotifier())
        return asyncio.run(_numbers(service, as_json=args.json))

    raise AssertionError("Unhandled command")
