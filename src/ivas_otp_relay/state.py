from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from .models import Cookie


logger = logging.getLogger(__name__)


class JsonBlob:
    """
    One JSON document on disk.

    Writes are atomic (temp file + replace) and keep a last-known-good copy at `<path>.bak`. A file that fails
    to parse is moved aside as `<name>.corrupt-<stamp>` and the backup is restored when possible.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._backup_path = self.path.with_name(self.path.name + ".bak")

    @property
    def backup_path(self) -> Path:
        return self._backup_path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, default: Any = None, *, validate: Optional[Callable[[Any], bool]] = None) -> Any:
        if not self.path.exists():
            return default

        data = self._read(self.path, validate)
        if data is not None:
            return data

        logger.warning("State file is unreadable; ignoring and attempting restore from backup: %s", self.path)
        self._quarantine()

        if self._backup_path.exists():
            data = self._read(self._backup_path, validate)
            if data is not None:
                try:
                    shutil.copy2(self._backup_path, self.path)
                except Exception:
                    logger.debug("Failed to copy backup over %s", self.path, exc_info=True)
                logger.warning("Restored state file from backup: %s", self._backup_path)
                return data

        return default

    def save(self, data: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)
        self._backup()

    def _read(self, path: Path, validate: Optional[Callable[[Any], bool]]) -> Any:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except Exception:
            return None
        if validate is not None and not validate(data):
            return None
        return data

    def _backup(self) -> None:
        try:
            shutil.copy2(self.path, self._backup_path)
        except Exception:
            logger.debug("Failed to write backup for %s", self.path, exc_info=True)

    def _quarantine(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        try:
            self.path.replace(self.path.with_name(self.path.name + f".corrupt-{stamp}"))
        except Exception:
            logger.debug("Failed to quarantine path=%s", self.path, exc_info=True)


def _is_list(data: Any) -> bool:
    return isinstance(data, list)


def _is_dict(data: Any) -> bool:
    return isinstance(data, dict)


class CookieJar:
    """Persisted browser cookies, so a restart can reuse a still-valid session."""

    def __init__(self, blob: JsonBlob) -> None:
        self._blob = blob

    def load(self) -> list[Cookie]:
        raw = self._blob.load([], validate=_is_list)
        cookies: list[Cookie] = []
        for item in raw:
            try:
                cookies.append(Cookie.model_validate(item))
            except Exception:
                logger.debug("Skipping malformed persisted cookie: %r", item)
        if cookies:
            logger.info("Loaded %d cookies from %s", len(cookies), self._blob.path)
        return cookies

    def save(self, cookies: Iterable[Cookie]) -> None:
        items = [c.model_dump(exclude_none=True) for c in cookies]
        self._blob.save(items)
        logger.info("Saved %d cookies to %s", len(items), self._blob.path)


class NoveltyRegistry:
    """
    Persisted set of range names already seen. Grows monotonically.
    """

    def __init__(self, blob: JsonBlob) -> None:
        self._blob = blob
        raw = blob.load([], validate=_is_list)
        self._known: list[str] = []
        seen: set[str] = set()
        for r in raw:
            s = str(r)
            if s not in seen:
                self._known.append(s)
                seen.add(s)
        self._known_set = seen

    @property
    def known(self) -> list[str]:
        return list(self._known)

    def diff(self, current_ranges: Iterable[str]) -> list[str]:
        """
        Return ranges in `current_ranges` not seen before and persist the union.

        On an empty registry (first run) the current set becomes the baseline and nothing is reported.
        """
        current: list[str] = []
        for r in current_ranges:
            if r and r not in current:
                current.append(r)

        cold_start = not self._known
        new_ranges = [r for r in current if r not in self._known_set]
        if not new_ranges:
            return []

        self._known.extend(new_ranges)
        self._known_set.update(new_ranges)
        self._blob.save(self._known)

        if cold_start:
            logger.info("Known-ranges baseline recorded (%d ranges)", len(new_ranges))
            return []

        logger.info("New ranges detected: %s", ", ".join(new_ranges))
        return new_ranges


class DedupStore:
    """
    Persisted fingerprint -> delivery record map backing the at-most-once delivery guarantee.

    Entries are never evicted.
    """

    def __init__(self, blob: JsonBlob) -> None:
        self._blob = blob
        self._history: dict[str, dict] = dict(blob.load({}, validate=_is_dict))

    def __len__(self) -> int:
        return len(self._history)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._history

    def try_mark_sent(self, fingerprint: str, *, otp: str = "", raw_text: str = "") -> bool:
        """
        Check-and-insert. Returns True only for the first call with a given fingerprint.

        There is no await between the check and the insert, so concurrent tasks on one event loop cannot both
        win.
        """
        if fingerprint in self._history:
            return False
        self._history[fingerprint] = {
            "otp": otp,
            "raw_text": raw_text,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        self._blob.save(self._history)
        return True

    def record(self, fingerprint: str) -> Optional[dict]:
        rec = self._history.get(fingerprint)
        return dict(rec) if rec else None
