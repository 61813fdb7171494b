from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional


_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Libraries that log every request; the Bot API URL contains the bot token.
_NOISY_LOGGERS = ("playwright", "httpx", "httpcore", "telegram", "uvicorn.access", "asyncio")


class RedactingFilter(logging.Filter):
    """Replaces configured secrets (bot token, passwords) in rendered log messages with `***`."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        # Very short values would mask ordinary words.
        self.secrets = sorted({s for s in secrets if s and len(s) >= 4}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        msg = record.getMessage()
        redacted = msg
        for s in self.secrets:
            redacted = redacted.replace(s, "***")
        if redacted != msg:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(
    level: str = "INFO",
    file_path: Optional[str] = None,
    *,
    secrets: Iterable[str] = (),
) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    redactor = RedactingFilter(secrets)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    for h in handlers:
        h.addFilter(redactor)

    logging.basicConfig(
        level=numeric_level,
        format=_FORMAT,
        handlers=handlers,
        force=True,  # the CLI configures twice: once early, once after config is loaded
    )

    noisy_level = os.getenv("NOISY_LOG_LEVEL", "WARNING")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)
