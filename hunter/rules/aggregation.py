"""Aggregation clauses — ``selection | count(Field) by Other >= 5`` + timeframe.

While a rule runs, every matching record is filed under its group key in
``rule.countdata`` (see Rule.select).  After the run, evaluate() cuts each
key's series into timeframe-sized buckets and reports the buckets whose
record count satisfies the comparison.

Bucketing: a key's first matched record anchors its windows.  Every record
lands in the window ``anchor + floor((ts - anchor) / timeframe) * timeframe``.
Records are taken in match order, not sorted, so the anchor is the first
record *seen* for that key.  Records without a timestamp are not bucketed.

Group keys are tuples of field values (None for a missing field), so values
containing "_" never merge two groups.  They are joined with "_" only for
display in AggResult.key.

Only buckets holding at least one record exist, so ``== 0`` can never fire.
"""

import math
import operator
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from hunter.records import MISSING, resolve_field
from hunter.rules import RuleValidationError

# Group-key stand-in for a field the record does not have.
ABSENT = "_"

_OPS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
}

_CLAUSE = re.compile(
    r"^count\(\s*(?P<field>[\w.\-]*)\s*\)"
    r"(?:\s+by\s+(?P<by>[\w.\-]+))?"
    r"\s*(?P<op>>=|<=|==|=|>|<)\s*(?P<num>\d+)\s*$",
    re.IGNORECASE,
)

_DURATION = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


@dataclass(frozen=True)
class AggregationSpec:
    count_field: str
    by_field: str | None
    operator: str
    threshold: int
    timeframe: str | None = None

    @property
    def timeframe_seconds(self) -> int | None:
        return parse_timeframe(self.timeframe) if self.timeframe else None

    @property
    def condition_op_num(self) -> str:
        return f"{self.operator} {self.threshold}"

    def compare(self, count: int) -> bool:
        return _OPS[self.operator](count, self.threshold)

    def group_key(self, record) -> tuple:
        """Values of the count and by fields; None where the record lacks one."""
        return tuple(
            _key_part(record, name)
            for name in (self.count_field, self.by_field)
            if name
        )


@dataclass(frozen=True)
class AggResult:
    key: str
    start_timedate: datetime
    condition_op_num: str
    filepath: str
    count: int


def _key_part(record, name: str) -> str | None:
    value = resolve_field(record.event, name)
    if value is MISSING or value is None:
        return None
    return str(value)


def display_key(key: tuple) -> str:
    """('bob', None) -> 'bob__'.  Only for output; grouping uses the tuple."""
    return "_".join(ABSENT if part is None else part for part in key) or ABSENT


def parse_timeframe(text: str) -> int:
    """'5m' → 300.  Units: s, m, h, d."""
    m = _DURATION.match(str(text))
    if not m:
        raise RuleValidationError(f"invalid timeframe '{text}'")
    seconds = int(m.group(1)) * _UNIT_SECONDS[m.group(2)]
    if seconds <= 0:
        raise RuleValidationError(f"timeframe must be positive, got '{text}'")
    return seconds


def parse_aggregation(text: str, timeframe=None) -> AggregationSpec:
    """Parse the part of a condition after '|' into an AggregationSpec."""
    m = _CLAUSE.match(text.strip())
    if not m:
        raise RuleValidationError(f"unparseable aggregation condition '{text}'")
    op = m.group("op")
    if op == "=":
        op = "=="
    if timeframe is not None:
        timeframe = str(timeframe).strip()
        parse_timeframe(timeframe)
    return AggregationSpec(
        count_field=m.group("field"),
        by_field=m.group("by"),
        operator=op,
        threshold=int(m.group("num")),
        timeframe=timeframe or None,
    )


def _buckets(entries, window: int | None):
    """(window_start, [records]) per bucket, in first-seen order."""
    buckets: dict[datetime, list] = {}
    anchor = None
    for ts, record in entries:
        if ts is None:
            continue
        if anchor is None:
            anchor = ts
        if window is None:
            start = anchor
        else:
            offset = math.floor((ts - anchor).total_seconds() / window)
            start = anchor + timedelta(seconds=offset * window)
        buckets.setdefault(start, []).append(record)
    return buckets.items()


def evaluate(rule) -> list[AggResult]:
    """All (key, window) buckets of *rule* that satisfy its count condition."""
    spec = rule.aggregation
    if spec is None:
        return []
    window = spec.timeframe_seconds
    results = []
    for key, entries in rule.countdata.items():
        for start, records in _buckets(entries, window):
            if not spec.compare(len(records)):
                continue
            results.append(AggResult(
                key=display_key(key),
                start_timedate=start,
                condition_op_num=spec.condition_op_num,
                filepath=records[0].source_path,
                count=len(records),
            ))
    return results
