from __future__ import annotations

import json
import time
import zipfile
from pathlib import Path
from typing import Any, Mapping, Optional


_SECRET_NAMES = frozenset({".env", "config.yaml", "config.yml"})


def is_secret_file(p: Path) -> bool:
    """
    Cookie jars (and their .bak/.corrupt-* copies), dotenv files and YAML configs.
    """
    name = p.name
    return name in _SECRET_NAMES or name.startswith("cookies.") or name.endswith(".env")


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    label: str = "",
    summary: Optional[Mapping[str, Any]] = None,
) -> Path:
    """
    Zip the diagnostic captures and the log file so a failed run can be shared.

    `summary` (usually the run outcome) is stored as summary.json at the top of the archive.
    Secret files are skipped even if they sit inside `debug_dir`.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    tag = (label or "").strip().lower()
    out_path = out_root / (f"debug_bundle_{tag}_{stamp}.zip" if tag else f"debug_bundle_{stamp}.zip")

    captures = Path(debug_dir)
    log = Path(log_file) if log_file else None

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if summary is not None:
            z.writestr("summary.json", json.dumps(dict(summary), indent=2, default=str))

        if log is not None and log.is_file():
            z.write(log, arcname=log.name)

        if captures.is_dir():
            for p in sorted(captures.rglob("*")):
                if not p.is_file() or is_secret_file(p):
                    continue
                try:
                    z.write(p, arcname=str(Path("debug") / p.relative_to(captures)))
                except OSError:
                    # a capture may disappear while we bundle
                    continue

    return out_path
