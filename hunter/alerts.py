"""Alerts — the normalized output unit, how they are built, and where they go.

Two ways to build one:
  format_match(rule, record)          a single record matched a plain rule
  format_aggregation(rule, result)    a (key, window) bucket met a count rule

Aggregated alerts summarize a window, not an event, so host and event id
are "-" and the message is synthesized from the count clause.

Every rule task emits into the same sink, so a sink is the one place that
sees concurrent writes.  AlertStore takes a lock around each insert.
"""

import re
import threading
from dataclasses import asdict, dataclass
from typing import Protocol

from hunter.records import MISSING, resolve_field

_PLACEHOLDER = re.compile(r"%([\w.]+)%")

# Fields that may carry the remote address of a logon / connection.
_IP_FIELDS = ("IpAddress", "SourceAddress", "SourceIp", "SrcIP")


@dataclass(frozen=True)
class Alert:
    source_path: str
    rule_id: str
    timestamp: str
    level: str
    host: str
    event_id: str
    title: str
    message: str
    src_asn: str = "-"
    src_country: str = "-"
    src_city: str = "-"

    def __post_init__(self):
        if not self.rule_id or not self.level:
            raise ValueError("alert needs a rule id and a level")

    def to_dict(self) -> dict:
        return asdict(self)


class AlertSink(Protocol):
    def emit(self, alert: Alert) -> None: ...


class AlertStore:
    """In-memory sink.  Safe to emit into from many rule tasks at once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._alerts: list[Alert] = []

    def emit(self, alert: Alert) -> None:
        with self._lock:
            self._alerts.append(alert)

    def alerts(self) -> list[Alert]:
        """Snapshot, ordered by time, then file, then rule."""
        with self._lock:
            snapshot = list(self._alerts)
        return sorted(snapshot, key=lambda a: (a.timestamp, a.source_path, a.rule_id))

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _scalar(record, path: str) -> str:
    value = record.get(path)
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    return "-"


def render_output(template: str, record) -> str:
    """Replace %Field% placeholders with record values; unknown ones stay."""
    def _sub(m):
        value = resolve_field(record.event, m.group(1))
        if value is MISSING or isinstance(value, (dict, list)):
            return m.group(0)
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template or "")


def format_match(rule, record, geo=None) -> Alert:
    ts = record.timestamp.isoformat() if record.timestamp else "-"
    asn = country = city = "-"
    if geo is not None:
        asn, country, city = _lookup_geo(geo, record)
    return Alert(
        source_path=record.source_path,
        rule_id=rule.id,
        timestamp=ts,
        level=rule.level.label,
        host=_scalar(record, "Event.System.Computer"),
        event_id=_scalar(record, "Event.System.EventID"),
        title=rule.title,
        message=render_output(rule.output, record),
        src_asn=asn,
        src_country=country,
        src_city=city,
    )


def _lookup_geo(geo, record):
    for name in _IP_FIELDS:
        ip = record.get(name)
        if isinstance(ip, str) and ip and ip != "-":
            info = geo.lookup(ip)
            if info is not None:
                return info.asn, info.country, info.city
    return "-", "-", "-"


def create_count_output(rule, agg_result) -> str:
    """'count(Image) by User >= 5 in 5m.' — no 'by' part without a by-field."""
    spec = rule.aggregation
    out = f"count({spec.count_field}) "
    if spec.by_field:
        out += f"by {spec.by_field} "
    out += f"{agg_result.condition_op_num} in {spec.timeframe or ''}."
    return out


def format_aggregation(rule, agg_result) -> Alert:
    return Alert(
        source_path=agg_result.filepath,
        rule_id=rule.id,
        timestamp=agg_result.start_timedate.isoformat(),
        level=rule.level.label,
        host="-",
        event_id="-",
        title=rule.title,
        message=create_count_output(rule, agg_result),
    )
