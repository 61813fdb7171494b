#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from ivas_otp_relay.extraction import ServiceTable, extract_otp
    from ivas_otp_relay.portal.parsing import (
        extract_csrf_token,
        parse_directory,
        parse_messages,
        parse_numbers,
        parse_ranges,
    )

    p = argparse.ArgumentParser(
        prog="parse_portal_snapshot",
        description=(
            "Parse saved portal responses (HTML fragments from data/debug/ or a browser's dev tools) into JSON.\n"
            "Intended for debugging selector regressions offline (no browser, no secrets)."
        ),
    )
    sub = p.add_subparsers(dest="cmd", required=True)
    for name, help_text in (
        ("ranges", "Range names from a getsms response"),
        ("numbers", "Phone numbers from a getsms/number response"),
        ("messages", "Messages (+ extracted OTP/service) from a getsms/number/sms response"),
        ("directory", "Numbers directory page (DataTables JSON or HTML table)"),
        ("token", "Anti-forgery token from a full page"),
    ):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("--file", required=True, help="Path to the saved response body")
        sp.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    args = p.parse_args(argv)
    body = _read_text(args.file)

    out: object
    if args.cmd == "ranges":
        out = parse_ranges(body)
    elif args.cmd == "numbers":
        out = parse_numbers(body)
    elif args.cmd == "messages":
        services = ServiceTable.default()
        out = [{"text": t, "otp": extract_otp(t), "service": services.classify(t)} for t in parse_messages(body)]
    elif args.cmd == "directory":
        page = parse_directory(body)
        out = {
            "records_total": page.records_total,
            "rows_seen": page.rows_seen,
            "records": [r.model_dump() for r in page.records],
        }
    else:
        out = {"token": extract_csrf_token(body)}

    text = json.dumps(out, indent=2, ensure_ascii=False)
    if args.out:
        Path(args.out).write_text(text + "\n", encoding="utf-8")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
