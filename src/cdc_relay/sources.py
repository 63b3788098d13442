"""
File-backed entry source for replays and local testing.

Each non-blank line is one JSON entry:

    {"entry_type": "ROWDATA",
     "header": {"schema_name": "shop", "table_name": "orders", "execute_time": 1700000000000},
     "store_value": {"event_type": "INSERT", "row_datas": [...]}}

``store_value`` may be given either as an embedded object or as the JSON
string the upstream reader would carry.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .errors import EntryDecodeError
from .models import Entry


def parse_entry(line: str) -> Entry:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise EntryDecodeError(f"not a JSON entry: {exc}") from exc
    if not isinstance(data, dict):
        raise EntryDecodeError("entry must be a JSON object")

    store_value = data.get("store_value")
    if isinstance(store_value, (dict, list)):
        data["store_value"] = json.dumps(store_value, ensure_ascii=False)
    try:
        return Entry.model_validate(data)
    except ValidationError as exc:
        raise EntryDecodeError(f"invalid entry: {exc}") from exc


def iter_entries(path: str | Path) -> Iterator[Entry]:
    """Yield entries from an NDJSON file, skipping blank lines."""
    with Path(path).open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield parse_entry(line)
            except EntryDecodeError as exc:
                raise EntryDecodeError(f"{path}:{lineno}: {exc}") from exc
