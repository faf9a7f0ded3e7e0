"""Target list loading and validation.

Two formats are accepted, chosen by file extension:

- ``.csv`` with a header row ``Subscription,ResourceGroup,VmName``
- ``.json`` holding an array of objects with the same keys

Records with an empty subscription are skipped with a warning. Any other
invalid record makes the whole file invalid.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Iterable

import structlog
from pydantic import ValidationError

from bootrescue.errors import TargetFileError
from bootrescue.models import SUBSCRIPTION_KEYS, TargetRecord

logger = structlog.get_logger(__name__)

REQUIRED_COLUMNS = ("Subscription", "ResourceGroup", "VmName")


def parse_records(rows: Iterable[dict[str, Any]], source: str = "<input>") -> list[TargetRecord]:
    """Validate raw rows into target records.

    Args:
        rows: Mappings keyed by ``Subscription``, ``ResourceGroup``, ``VmName``
        source: Name used in error messages

    Returns:
        Valid records in input order, without empty-subscription rows.

    Raises:
        TargetFileError: If a row with a subscription is missing other fields.
    """
    records: list[TargetRecord] = []
    skipped = 0

    for index, row in enumerate(rows, start=1):
        if not isinstance(row, dict):
            raise TargetFileError(f"{source}: record {index} is not an object")

        value = next((row[key] for key in SUBSCRIPTION_KEYS if key in row), None)
        subscription = str(value or "").strip()
        if not subscription:
            skipped += 1
            logger.warning("target_skipped_empty_subscription", source=source, record=index)
            continue

        try:
            records.append(TargetRecord.model_validate(row))
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise TargetFileError(
                f"{source}: record {index} is invalid ({fields or e})"
            ) from e

    logger.info("targets_loaded", source=source, targets=len(records), skipped=skipped)
    return records


def load_targets(path: Path) -> list[TargetRecord]:
    """Load and validate a target list file.

    Args:
        path: CSV or JSON file

    Returns:
        Valid target records in file order.

    Raises:
        TargetFileError: If the file is missing, unreadable, or malformed.
    """
    if not path.exists():
        raise TargetFileError(f"Target file not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix == ".csv":
            return parse_records(_read_csv(path), source=str(path))
        if suffix == ".json":
            return parse_records(_read_json(path), source=str(path))
    except OSError as e:
        raise TargetFileError(f"Cannot read {path}: {e}") from e

    raise TargetFileError(f"Unsupported target file type {suffix!r}; use .csv or .json")


def _read_csv(path: Path) -> list[dict[str, Any]]:
    # utf-8-sig tolerates the BOM spreadsheet exports tend to add
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        header = [name.strip() for name in reader.fieldnames or []]
        missing = [col for col in REQUIRED_COLUMNS if col not in header]
        if missing:
            raise TargetFileError(f"{path}: missing column(s) {', '.join(missing)}")
        reader.fieldnames = header
        return list(reader)


def _read_json(path: Path) -> list[dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise TargetFileError(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, list):
        raise TargetFileError(f"{path}: expected a JSON array of target objects")
    return data


__all__ = ["REQUIRED_COLUMNS", "load_targets", "parse_records"]
