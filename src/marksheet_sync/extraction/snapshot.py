from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Union

from pydantic import BaseModel, Field

from ..portal.driver import BrowserDriver
from ..portal.selectors import PortalSelectors


logger = logging.getLogger(__name__)


class RowSnapshot(BaseModel):
    cells: list[str] = Field(default_factory=list)
    in_header: bool = False


class SiblingSnapshot(BaseModel):
    tag: str
    text: str = ""


class TableSnapshot(BaseModel):
    index: int
    element_id: str = ""
    class_name: str = ""
    rows: list[RowSnapshot] = Field(default_factory=list)
    # Preceding sibling elements, nearest first.
    preceding: list[SiblingSnapshot] = Field(default_factory=list)


class DocumentSnapshot(BaseModel):
    """
    Serialized view of the rendered records page: plain data, no element handles.
    """

    url: str = ""
    title: str = ""
    student_fields: dict[str, list[str]] = Field(default_factory=dict)
    tables: list[TableSnapshot] = Field(default_factory=list)


DOCUMENT_SNAPSHOT_JS = """
({ studentFields, scanDepth }) => {
  const clean = (s) => (s || '').replace(/\\s+/g, ' ').trim();

  const fieldValues = {};
  for (const entry of studentFields) {
    const found = [];
    for (const sel of entry.selectors) {
      try {
        const el = document.querySelector(sel);
        found.push(el ? clean(el.textContent) : '');
      } catch (_) {
        found.push('');
      }
    }
    for (const label of entry.labels) {
      let value = '';
      const cands = document.querySelectorAll('td, th, span, label, strong, b, dt');
      for (const el of Array.from(cands)) {
        const own = clean(el.textContent);
        if (!own || own.length > 80 || !own.toLowerCase().includes(label.toLowerCase())) continue;
        const next = el.nextElementSibling || el.querySelector('span') || el.querySelector('div');
        if (next && clean(next.textContent)) { value = clean(next.textContent); break; }
      }
      found.push(value);
    }
    fieldValues[entry.field] = found;
  }

  const tables = [];
  Array.from(document.querySelectorAll('table')).forEach((table, index) => {
    const rows = Array.from(table.rows).map(row => ({
      cells: Array.from(row.cells).map(c => clean(c.textContent)),
      in_header: !!(row.parentElement && row.parentElement.tagName === 'THEAD'),
    }));
    const preceding = [];
    let el = table.previousElementSibling;
    while (el && preceding.length < scanDepth) {
      preceding.push({ tag: el.tagName.toLowerCase(), text: clean(el.textContent).slice(0, 500) });
      el = el.previousElementSibling;
    }
    tables.push({
      index,
      element_id: table.id || '',
      class_name: typeof table.className === 'string' ? table.className : '',
      rows,
      preceding,
    });
  });

  return {
    url: window.location.href,
    title: document.title,
    student_fields: fieldValues,
    tables,
  };
}
"""


def capture_document_snapshot(
    driver: BrowserDriver,
    selectors: PortalSelectors,
    *,
    scan_depth: int = 5,
) -> DocumentSnapshot:
    fields = [
        {"field": f.field, "selectors": list(f.selectors), "labels": list(f.labels)}
        for f in selectors.student_fields
    ]
    data = driver.evaluate(DOCUMENT_SNAPSHOT_JS, {"studentFields": fields, "scanDepth": scan_depth})
    snap = DocumentSnapshot.model_validate(data or {})
    logger.info("Captured document snapshot (url=%s tables=%d)", snap.url, len(snap.tables))
    return snap


def save_snapshot(snapshot: DocumentSnapshot, path: Union[str, Path]) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
    return p


def load_snapshot(path: Union[str, Path]) -> DocumentSnapshot:
    p = Path(path)
    return DocumentSnapshot.model_validate(json.loads(p.read_text(encoding="utf-8")))
