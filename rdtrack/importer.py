from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from rdtrack import notifier, services
from rdtrack.lifecycle import Actor, ValidationError
from rdtrack.schemas import ImportResult, RequestCreate
from rdtrack.utils import parse_datetime, split_csv

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int | None) -> object:
    """Safely get a column value from a row tuple."""
    if idx is None:
        return None
    return row[idx] if idx < len(row) else None


def _i(value: object) -> int | None:
    """Safely coerce cell value to int, None if missing."""
    if value is None or value == "":
        return None
    try:
        return int(float(str(value).replace(",", "")))
    except (ValueError, TypeError):
        return None


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

# Request field -> accepted header spellings (casefolded)
_HEADERS = {
    "title": ("title",),
    "customer_name": ("customer", "customer_name", "customer name"),
    "product_area": ("product_area", "product area", "area"),
    "product_model": ("product_model", "product model", "model"),
    "category": ("category",),
    "expected_revenue": ("expected_revenue", "expected revenue", "revenue"),
    "importance_flag": ("importance", "importance_flag"),
    "customer_deadline": ("deadline", "customer_deadline", "customer deadline"),
    "raw_customer_text": ("raw_text", "raw customer text", "customer text", "raw_customer_text"),
    "sales_summary": ("summary", "sales_summary", "sales summary"),
    "keywords": ("keywords",),
}

_REQUIRED = ("title", "customer_name", "product_area", "raw_customer_text", "sales_summary")


def _header_map(header: tuple) -> dict[str, int]:
    names = {_s(h).casefold(): idx for idx, h in enumerate(header) if h is not None}
    out: dict[str, int] = {}
    for field, spellings in _HEADERS.items():
        for spelling in spellings:
            if spelling in names:
                out[field] = names[spelling]
                break
    return out


def _parse_row(row: tuple, cols: dict[str, int]) -> dict | None:
    entry = {
        "title": _s(_col(row, cols.get("title"))),
        "customer_name": _s(_col(row, cols.get("customer_name"))),
        "product_area": _s(_col(row, cols.get("product_area"))).upper(),
        "product_model": _s(_col(row, cols.get("product_model"))) or None,
        "raw_customer_text": _s(_col(row, cols.get("raw_customer_text"))),
        "sales_summary": _s(_col(row, cols.get("sales_summary"))),
        "keywords": split_csv(_s(_col(row, cols.get("keywords")))),
        "expected_revenue": _i(_col(row, cols.get("expected_revenue"))),
    }
    if any(not entry[f] for f in _REQUIRED):
        return None
    category = _s(_col(row, cols.get("category"))).upper()
    if category:
        entry["category"] = category
    importance = _s(_col(row, cols.get("importance_flag"))).upper()
    if importance:
        entry["importance_flag"] = importance
    deadline = parse_datetime(_col(row, cols.get("customer_deadline")))
    if deadline is not None:
        entry["customer_deadline"] = deadline
    return entry


def import_xlsx(file_path: str | Path, session: Session, actor: Actor) -> ImportResult:
    """Create one request per data row of the first sheet.

    Rows missing a required column or failing validation are skipped.
    Each row goes through :func:`services.create_request`, so every imported
    request starts with an open IDEATION interval and sends a
    ``REQUEST_CREATED`` notification.
    """
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    try:
        rows = list(wb.worksheets[0].iter_rows(values_only=True)) if wb.worksheets else []
    finally:
        wb.close()

    if not rows:
        return ImportResult(total_rows=0, imported=0, skipped=0)
    cols = _header_map(rows[0])
    missing = [f for f in _REQUIRED if f not in cols]
    if missing:
        raise ValidationError(f"Missing required columns: {', '.join(missing)}")

    data_rows = [r for r in rows[1:] if r and any(c is not None and c != "" for c in r)]
    imported = skipped = 0
    for idx, row in enumerate(data_rows, start=2):
        entry = _parse_row(row, cols)
        if entry is None:
            skipped += 1
            continue
        try:
            body = RequestCreate(**entry)
        except SchemaError as exc:
            log.warning("Skipping row %d: %s", idx, exc.errors()[0].get("msg", exc))
            skipped += 1
            continue
        req = services.create_request(session, body, actor)
        notifier.notify_event(notifier.EventType.REQUEST_CREATED, services.created_event_payload(req))
        imported += 1

    log.info("Imported %d requests from %s (%d skipped)", imported, file_path.name, skipped)
    return ImportResult(total_rows=len(data_rows), imported=imported, skipped=skipped)
