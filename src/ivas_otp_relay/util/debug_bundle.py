from __future__ import annotations

import json
import time
import zipfile
from pathlib import Path
from typing import Any, Optional, Union


# Never bundled: they hold session secrets.
_SECRET_NAMES = {"cookies.json", "cookies.json.bak", ".env", "config.yaml"}


def _state_summary(state_dir: Path) -> dict[str, Any]:
    """Counts only; message texts and cookies stay out of the bundle."""
    summary: dict[str, Any] = {}
    for name in ("otp_history.json", "known_ranges.json", "numbers_cache.json"):
        p = state_dir / name
        if not p.exists():
            summary[name] = None
            continue
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except Exception as e:
            summary[name] = {"error": f"unreadable: {e.__class__.__name__}"}
            continue
        if name == "numbers_cache.json" and isinstance(data, dict):
            summary[name] = {"timestamp": data.get("timestamp"), "count": len(data.get("numbers") or [])}
        elif isinstance(data, (list, dict)):
            summary[name] = {"count": len(data)}
        else:
            summary[name] = {"type": type(data).__name__}
    summary["cookies_present"] = (state_dir / "cookies.json").exists()
    return summary


def create_debug_bundle(
    *,
    debug_dir: Union[str, Path],
    log_file: Union[str, Path],
    out_dir: Union[str, Path] = "data",
    state_dir: Optional[Union[str, Path]] = None,
    label: str = "",
) -> Path:
    """
    Zip the failure artifacts (screenshots, page HTML/text), the log and a state summary for sharing.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    tag = (label or "").strip().lower().replace(" ", "_")
    out_path = out_root / f"debug_bundle{'_' + tag if tag else ''}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if file_path.name in _SECRET_NAMES:
            return
        try:
            if file_path.exists() and file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # The file may vanish between listing and writing.
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        _add_file(z, log, arcname=log.name)

        if dbg.exists() and dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if p.is_file():
                    _add_file(z, p, arcname=str(Path("debug") / p.relative_to(dbg)))

        if state_dir is not None:
            z.writestr("state_summary.json", json.dumps(_state_summary(Path(state_dir)), indent=2))

    return out_path
