"""CSV input loading."""
from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .models import CoreType, InputRow, LicenseEdition, parse_enum
from .validation import ValidationError, Violation

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("servername", "licenseedition", "coretype", "corecount")


def _normalize_header(name: Optional[str]) -> str:
    return (name or "").strip().lower()


def _cell(record: Dict[str, Optional[str]], column: str) -> str:
    return (record.get(column) or "").strip()


def parse_row(line_number: int, record: Dict[str, Optional[str]]) -> Tuple[InputRow, List[Violation]]:
    """Build an InputRow from a header-normalized record, collecting bad cells."""

    prefix = f"line {line_number}: "
    violations: List[Violation] = []

    edition: Optional[LicenseEdition] = None
    raw_edition = _cell(record, "licenseedition")
    if raw_edition:
        try:
            edition = parse_enum(LicenseEdition, raw_edition)  # type: ignore[assignment]
        except ValueError as exc:
            violations.append(Violation(f"{prefix}licenseedition", raw_edition, str(exc)))

    core_type: Optional[CoreType] = None
    raw_core_type = _cell(record, "coretype")
    if raw_core_type:
        try:
            core_type = parse_enum(CoreType, raw_core_type)  # type: ignore[assignment]
        except ValueError as exc:
            violations.append(Violation(f"{prefix}coretype", raw_core_type, str(exc)))

    core_count: Optional[int] = None
    raw_core_count = _cell(record, "corecount")
    if raw_core_count:
        try:
            core_count = int(raw_core_count)
        except ValueError:
            violations.append(Violation(f"{prefix}corecount", raw_core_count, "must be an integer"))

    row = InputRow(
        line_number=line_number,
        server_name=_cell(record, "servername"),
        edition=edition,
        core_type=core_type,
        core_count=core_count,
    )
    return row, violations


def load_rows(path: str | Path) -> List[InputRow]:
    """Read every row of the server CSV.

    Raises ValidationError listing all unparseable cells, or the missing
    columns when the header is incomplete.
    """

    csv_path = Path(path).expanduser()
    if not csv_path.exists():
        raise FileNotFoundError(f"Input file not found: {csv_path}")

    rows: List[InputRow] = []
    violations: List[Violation] = []
    with csv_path.open("r", newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle)
        headers = {_normalize_header(name) for name in reader.fieldnames or []}
        missing = [column for column in REQUIRED_COLUMNS if column not in headers]
        if missing:
            raise ValidationError([Violation("columns", sorted(headers), f"missing required column '{column}'") for column in missing])

        for record in reader:
            normalized = {_normalize_header(key): value for key, value in record.items() if key is not None}
            if not any((value or "").strip() for value in normalized.values()):
                continue
            row, row_violations = parse_row(reader.line_num, normalized)
            rows.append(row)
            violations.extend(row_violations)

    if violations:
        raise ValidationError(violations)
    logger.info("Loaded %d row(s) from %s", len(rows), csv_path)
    return rows
