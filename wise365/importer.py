"""Funnel catalog import from JSON or XLSX.

The XLSX workbook carries two sheets with a header row each:

- ``Funnels``: name, description, priority, level, dependencies, forms_needed,
  lead_agent, supporting_agents, entry_criteria (JSON text)
- ``Milestones``: funnel, name, description, conversation_id, data_path,
  priority, weight, kpis, completion_keywords, requires_conversation,
  requires_form, requires_data, project_name

List-valued cells are comma separated.
"""
from __future__ import annotations

import io
import json
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.orm import Session

from wise365.catalog import CatalogError, FunnelDef, parse_catalog
from wise365.services import replace_catalog

log = logging.getLogger(__name__)


@dataclass
class ImportResult:
    funnels: int
    milestones: int
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {"funnels": self.funnels, "milestones": self.milestones, "source": self.source}


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _header(row: tuple) -> list[str]:
    return [_s(c).casefold().replace(" ", "_") for c in row]


def _rows(ws) -> list[dict[str, Any]]:
    """Sheet rows as dicts keyed by the normalised header row."""
    it = ws.iter_rows(values_only=True)
    try:
        header = _header(next(it))
    except StopIteration:
        return []
    out: list[dict[str, Any]] = []
    for row in it:
        if not row or not any(c not in (None, "") for c in row):
            continue
        out.append({h: row[i] for i, h in enumerate(header) if h and i < len(row)})
    return out


def _entry_criteria(value: object) -> dict[str, Any]:
    text = _s(value)
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CatalogError(f"entry_criteria is not valid JSON: {text[:80]!r}") from exc
    if not isinstance(parsed, dict):
        raise CatalogError("entry_criteria must be a JSON object")
    return parsed


def records_from_workbook(wb) -> list[dict[str, Any]]:
    """Turn the Funnels/Milestones sheets into raw catalog records."""
    funnel_ws = milestone_ws = None
    for sheet_name in wb.sheetnames:
        lower = sheet_name.casefold()
        if lower.startswith("funnel"):
            funnel_ws = wb[sheet_name]
        elif lower.startswith("milestone"):
            milestone_ws = wb[sheet_name]
    if funnel_ws is None:
        raise CatalogError("Workbook has no 'Funnels' sheet")

    records: list[dict[str, Any]] = []
    by_name: dict[str, dict[str, Any]] = {}
    for row in _rows(funnel_ws):
        name = _s(row.get("name"))
        if not name:
            continue
        record = {
            "name": name,
            "description": _s(row.get("description")),
            "priority": row.get("priority"),
            "level": row.get("level"),
            "dependencies": _s(row.get("dependencies")),
            "forms_needed": _s(row.get("forms_needed")),
            "responsible_agents": {
                "lead": _s(row.get("lead_agent")),
                "supporting": _s(row.get("supporting_agents")),
            },
            "entry_criteria": _entry_criteria(row.get("entry_criteria")),
            "milestones": [],
        }
        records.append(record)
        by_name[name] = record

    if milestone_ws is not None:
        for row in _rows(milestone_ws):
            funnel = _s(row.get("funnel"))
            if not funnel:
                continue
            if funnel not in by_name:
                raise CatalogError(f"Milestone row references unknown funnel {funnel!r}")
            by_name[funnel]["milestones"].append({
                k: (_s(v) if isinstance(v, str) else v)
                for k, v in row.items() if k != "funnel"
            })
    return records


def import_xlsx(source: str | Path | bytes, session: Session) -> ImportResult:
    """Replace the catalog with the funnels in an XLSX workbook (caller must commit)."""
    label = "xlsx upload" if isinstance(source, bytes) else str(source)
    try:
        wb = openpyxl.load_workbook(
            io.BytesIO(source) if isinstance(source, bytes) else Path(source),
            read_only=True, data_only=True,
        )
    except (zipfile.BadZipFile, InvalidFileException) as exc:
        raise CatalogError(f"Not a readable XLSX workbook: {exc}") from exc
    try:
        records = records_from_workbook(wb)
    finally:
        wb.close()
    return _store(session, parse_catalog(records), label)


def import_json(source: str | Path | bytes | list, session: Session) -> ImportResult:
    """Replace the catalog with JSON funnel records (caller must commit).

    *source* may be a parsed list, raw bytes, or a file path.
    """
    if isinstance(source, list):
        records, label = source, "json"
    else:
        label = "json upload" if isinstance(source, bytes) else str(source)
        try:
            if isinstance(source, bytes):
                text = source.decode("utf-8")
            else:
                text = Path(source).read_text(encoding="utf-8")
            records = json.loads(text)
        except UnicodeDecodeError as exc:
            raise CatalogError(f"Catalog is not UTF-8 text: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise CatalogError(f"Invalid JSON catalog: {exc}") from exc
    if isinstance(records, dict):
        records = records.get("funnels")
    return _store(session, parse_catalog(records), label)


def _store(session: Session, funnels: list[FunnelDef], label: str) -> ImportResult:
    replace_catalog(session, funnels)
    milestones = sum(len(f.milestones) for f in funnels)
    log.info("Imported %d funnels (%d milestones) from %s", len(funnels), milestones, label)
    return ImportResult(funnels=len(funnels), milestones=milestones, source=label)
