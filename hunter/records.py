"""Event records — one parsed log document plus where it came from.

Records are built once per run and then shared read-only by every rule
task.  Nothing in the detection path mutates a Record; the batch is a
plain tuple handed to each task by reference.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Where Windows event exports keep the creation time, in lookup order.
_TIMESTAMP_PATHS = (
    ("Event", "System", "TimeCreated_attributes", "SystemTime"),
    ("Event", "System", "TimeCreated", "SystemTime"),
    ("@timestamp",),
    ("timestamp",),
    ("TimeCreated",),
)

# Windows exports carry 7-digit fractions; datetime takes at most 6.
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")

# A bare field name not found at the document root is looked up here.
_FIELD_SCOPES = (("Event", "System"), ("Event", "EventData"))

MISSING = object()


@dataclass(frozen=True, eq=False)
class Record:
    source_path: str
    event: dict
    data_string: str = ""
    timestamp: datetime | None = None

    @classmethod
    def from_event(cls, source_path: str, event: dict) -> "Record":
        return cls(
            source_path=str(source_path),
            event=event,
            data_string=flatten(event),
            timestamp=parse_timestamp(event),
        )

    def get(self, path: str, default=None):
        value = resolve_field(self.event, path)
        return default if value is MISSING else value


def resolve_field(doc: Any, path: str) -> Any:
    """Look up a dotted field path, falling back to System / EventData scopes.

    Returns MISSING (not None) when the field does not exist, so a JSON
    null can still be told apart from an absent key.
    """
    parts = path.split(".")
    value = _walk(doc, parts)
    if value is not MISSING or len(parts) > 1:
        return value
    for scope in _FIELD_SCOPES:
        value = _walk(doc, [*scope, path])
        if value is not MISSING:
            return value
    return MISSING


def _walk(doc: Any, parts: list[str]) -> Any:
    for part in parts:
        if not isinstance(doc, dict) or part not in doc:
            return MISSING
        doc = doc[part]
    return doc


def flatten(doc: Any) -> str:
    """All leaf values of a document joined by spaces, depth first."""
    out: list[str] = []
    _collect(doc, out)
    return " ".join(out)


def _collect(doc: Any, out: list[str]) -> None:
    if isinstance(doc, dict):
        for value in doc.values():
            _collect(value, out)
    elif isinstance(doc, list):
        for value in doc:
            _collect(value, out)
    elif doc is not None:
        out.append(str(doc))


def parse_timestamp(event: dict) -> datetime | None:
    for path in _TIMESTAMP_PATHS:
        raw = _walk(event, list(path))
        if raw is MISSING or raw is None:
            continue
        ts = to_datetime(raw)
        if ts is not None:
            return ts
    return None


def to_datetime(raw: Any) -> datetime | None:
    """ISO 8601 string or epoch seconds → aware UTC datetime (None if unparseable)."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(raw, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _LONG_FRACTION.sub(r"\1", text)
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_records(paths) -> tuple[Record, ...]:
    """Read JSON / JSON Lines event exports into an immutable batch.

    Directories are walked for *.json and *.jsonl.  A .json file may hold a
    single document or an array of them; a .jsonl file holds one per line.
    """
    records: list[Record] = []
    for path in _expand(paths):
        records.extend(_read_file(path))
    return tuple(records)


def _expand(paths):
    for p in paths:
        p = Path(p)
        if p.is_dir():
            yield from sorted(
                f for f in p.rglob("*") if f.suffix in (".json", ".jsonl")
            )
        elif p.exists():
            yield p
        else:
            raise FileNotFoundError(f"Event file not found: {p}")


def _read_file(path: Path) -> list[Record]:
    """Parse one export file.  Entries that are not valid UTF-8 JSON are
    reported and skipped: per line for .jsonl, whole file for .json."""
    docs = []
    with open(path, "rb") as f:
        if path.suffix == ".jsonl":
            for lineno, raw in enumerate(f, 1):
                if not raw.strip():
                    continue
                try:
                    docs.append(json.loads(raw.decode("utf-8-sig")))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    _report(path, e, lineno)
        else:
            try:
                blob = json.loads(f.read().decode("utf-8-sig"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                _report(path, e)
            else:
                docs = blob if isinstance(blob, list) else [blob]
    return [Record.from_event(str(path), doc) for doc in docs if isinstance(doc, dict)]


def _report(path: Path, error: Exception, lineno: int | None = None) -> None:
    where = f"{path}, line {lineno}" if lineno is not None else str(path)
    print(f"[WARN] Failed to parse record (FilePath : {where})")
    print(f"[WARN] {error}")
