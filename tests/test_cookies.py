from __future__ import annotations

import json
from pathlib import Path

from marksheet_sync.portal.cookies import CookieJar


def test_missing_cookie_file_loads_empty(tmp_path: Path) -> None:
    assert CookieJar(str(tmp_path / "cookies.json")).load() == []


def test_save_then_load(tmp_path: Path) -> None:
    jar = CookieJar(str(tmp_path / "data" / "cookies.json"))
    jar.save([{"name": "ASP.NET_SessionId", "value": "abc"}])

    assert jar.load() == [{"name": "ASP.NET_SessionId", "value": "abc"}]
    assert jar.backup_path.exists()


def test_corrupt_cookie_file_is_quarantined_and_restored_from_backup(tmp_path: Path) -> None:
    jar = CookieJar(str(tmp_path / "cookies.json"))
    jar.save([{"name": "ASP.NET_SessionId", "value": "good"}])

    jar.path.write_text("{not json", encoding="utf-8")

    assert jar.load() == [{"name": "ASP.NET_SessionId", "value": "good"}]
    assert list(tmp_path.glob("cookies.json.corrupt-*"))
    assert json.loads(jar.path.read_text(encoding="utf-8"))[0]["value"] == "good"


def test_wrong_shape_without_backup_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "cookies.json"
    path.write_text(json.dumps({"cookies": []}), encoding="utf-8")

    assert CookieJar(str(path)).load() == []


def test_discard_removes_file_and_backup(tmp_path: Path) -> None:
    jar = CookieJar(str(tmp_path / "cookies.json"))
    jar.save([{"name": "a", "value": "b"}])
    jar.discard()

    assert not jar.path.exists()
    assert not jar.backup_path.exists()
    jar.discard()
