"""Hunt through exported event logs with the loaded detection rules.

Loads rules, prints the load tally, loads every record into memory, runs
all rules concurrently, then prints alerts and a per-level summary of the
rules that fired.  Alerts can additionally go to CSV, Kafka and a
Prometheus textfile.

Usage:
    python -m hunter.main logs/
    python -m hunter.main logs/security.jsonl --rules my-rules --min-level high
    python -m hunter.main logs/ --output alerts.csv --geo-ip /opt/geoip --quiet
"""

import argparse
import os
import sys
from pathlib import Path

from hunter.alerts import AlertStore
from hunter.engine import Detection, print_rule_load_info
from hunter.enrich.geoip import GeoIPSearch, ResourceUnavailable
from hunter.enrich.powershell import PowerShellDecoder, load_whitelist
from hunter.output import print_alerts, write_csv
from hunter.records import load_records
from hunter.rules import Level
from hunter.rules.loader import load_rules, read_exclude_ids
from hunter.sinks import FanoutSink, KafkaSink, MetricsSink

_DEFAULT_RULES = Path(__file__).resolve().parent / "rules" / "sigma"


def _level(value: str) -> Level:
    level = Level.from_label(value)
    if level is Level.UNDEFINED and value.strip().lower() != "undefined":
        raise argparse.ArgumentTypeError(f"unknown level '{value}'")
    return level


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rule-based event log hunter")
    parser.add_argument("paths", nargs="+", help="JSON / JSONL event files or directories")
    parser.add_argument(
        "--rules", default=os.environ.get("HUNTER_RULES_DIR", str(_DEFAULT_RULES)),
        help="Rule directory (default: bundled sample rules)",
    )
    parser.add_argument(
        "--min-level", type=_level,
        default=_level(os.environ.get("HUNTER_MIN_LEVEL", "informational")),
        help="Ignore rules below this level",
    )
    parser.add_argument("--exclude-ids", help="File of rule ids to skip, one per line")
    parser.add_argument(
        "--workers", type=int, default=int(os.environ.get("HUNTER_WORKERS", "0")) or None,
        help="Rule tasks run in parallel (default: CPU count)",
    )
    parser.add_argument("--output", help="Write alerts to this CSV file")
    parser.add_argument("--geo-ip", help="Directory with GeoLite2 ASN/Country/City .mmdb files")
    parser.add_argument("--powershell-whitelist", help="CSV of whitelisted command regexes")
    parser.add_argument(
        "--bootstrap-servers", default=os.environ.get("HUNTER_KAFKA_BOOTSTRAP"),
        help="Also publish alerts to Kafka",
    )
    parser.add_argument("--alerts-topic", default="alerts")
    parser.add_argument("--metrics-file", help="Write Prometheus metrics to this textfile")
    parser.add_argument(
        "--quiet", action="store_true", default=False,
        help="Don't print individual alerts",
    )
    return parser


def _open_geoip(path):
    try:
        return GeoIPSearch.open(path)
    except ResourceUnavailable as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        print("[ERROR] GeoIP enrichment disabled for this run.", file=sys.stderr)
        return None


def _open_decoder(path):
    try:
        return PowerShellDecoder(load_whitelist(path))
    except ResourceUnavailable as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        print("[ERROR] PowerShell command checks disabled for this run.", file=sys.stderr)
        return None


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    exclude_ids = read_exclude_ids(args.exclude_ids) if args.exclude_ids else ()
    rules, summary = load_rules(args.rules, args.min_level, exclude_ids)
    print_rule_load_info(summary)
    if not rules:
        print("[ERROR] No rules loaded, nothing to do.", file=sys.stderr)
        return 1

    records = load_records(args.paths)
    print(f"Loaded {len(records)} records  rules={len(rules)}")

    geo = _open_geoip(args.geo_ip) if args.geo_ip else None
    decoder = _open_decoder(args.powershell_whitelist) if args.powershell_whitelist else None
    store = AlertStore()
    kafka = (KafkaSink.connect(args.bootstrap_servers, args.alerts_topic)
             if args.bootstrap_servers else None)
    metrics = MetricsSink() if args.metrics_file else None
    sink = FanoutSink(store, kafka, metrics)

    try:
        detection = Detection(rules, sink, geo, args.workers).run(records)
        detection.add_aggcondition_alerts()
        if decoder is not None:
            for alert in decoder.scan(records):
                sink.emit(alert)

        alerts = store.alerts()
        if not args.quiet:
            print_alerts(alerts)
        if args.output:
            write_csv(alerts, args.output)
            print(f"Wrote {len(alerts)} alerts to {args.output}")

        print()
        print(f"Total alerts: {len(alerts)}")
        detection.print_unique_results()

        if metrics is not None:
            metrics.observe_run(detection.rules, len(records))
            metrics.write(args.metrics_file)
    finally:
        if kafka is not None:
            kafka.close()
            print(f"Published {kafka.produced} alerts to '{kafka.topic}'")
        if geo is not None:
            geo.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
