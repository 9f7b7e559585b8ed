from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


class CookieJar:
    """
    Browser cookies persisted as JSON between runs.

    Read once at startup, written once after a session is established. A corrupt file is
    quarantined and the last-known-good `<file>.bak` restored when possible.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".bak")

    def load(self) -> list[dict]:
        if not self.path.exists():
            return []

        cookies = self._read_valid(self.path)
        if cookies is not None:
            return cookies

        logger.warning("Cookie file is invalid; ignoring and attempting restore from backup: %s", self.path)
        self._quarantine(self.path)

        bak = self.backup_path
        if bak.exists():
            cookies = self._read_valid(bak)
            if cookies is not None:
                try:
                    shutil.copy2(bak, self.path)
                except OSError:
                    logger.debug("Failed to copy cookie backup into place.", exc_info=True)
                logger.warning("Restored cookies from backup: %s", bak)
                return cookies

        return []

    def save(self, cookies: list[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(cookies, indent=2), encoding="utf-8")
        tmp.replace(self.path)
        try:
            shutil.copy2(self.path, self.backup_path)
        except OSError:
            logger.debug("Failed to write cookie backup.", exc_info=True)
        logger.info("Saved %d cookies for future sessions", len(cookies))

    def discard(self) -> None:
        for p in (self.path, self.backup_path):
            try:
                p.unlink()
            except FileNotFoundError:
                continue

    def _read_valid(self, path: Path) -> Optional[list[dict]]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, list) or not all(isinstance(c, dict) and "name" in c for c in data):
            return None
        return data

    def _quarantine(self, path: Path) -> None:
        try:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            path.replace(path.with_name(f"{path.name}.corrupt-{stamp}"))
        except OSError:
            logger.debug("Failed to quarantine file=%s", path, exc_info=True)
