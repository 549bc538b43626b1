"""Rendering alerts for people: console lines and CSV."""

import csv
import sys

CSV_COLUMNS = (
    "timestamp", "host", "source_path", "event_id", "level",
    "rule_id", "title", "message", "src_asn", "src_country", "src_city",
)

_LEVEL_WIDTH = len("Informational")


def print_alerts(alerts, file=None) -> None:
    out = file or sys.stdout
    for a in alerts:
        print(f"{a.timestamp}  {a.level:<{_LEVEL_WIDTH}s} {a.host:<16s} "
              f"eid={a.event_id:<6s} {a.title}  |  {a.message}", file=out)


def write_csv(alerts, path) -> int:
    """Write alerts to *path*; returns how many rows were written."""
    count = 0
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for alert in alerts:
            writer.writerow(alert.to_dict())
            count += 1
    return count
