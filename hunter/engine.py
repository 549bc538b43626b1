"""Detection engine — runs every rule over every record, one task per rule.

Pure business logic: no file or rule parsing here.  main.py loads rules
and records, hands them in, and renders whatever lands in the sink.

Concurrency model:
  - the record batch is one tuple, shared by reference by every task
    and never written to
  - each rule is handed to exactly one task, which owns its match state
    and hands the rule back when done; nothing else touches it
  - the sink is the only object written from several tasks; it locks
  - run() joins on every task before returning, and rebuilds the rule
    list in the order tasks were submitted, not the order they finished
"""

import os
import time
from concurrent.futures import ThreadPoolExecutor

from hunter.alerts import AlertSink, AlertStore, format_aggregation, format_match
from hunter.rules import Level, Rule


class RuleExecutionError(RuntimeError):
    """A rule task blew up.  The run cannot produce a complete result."""


class Detection:

    def __init__(self, rules: list[Rule], sink: AlertSink | None = None, geo=None,
                 max_workers: int | None = None):
        self.rules = list(rules)
        self.sink = sink if sink is not None else AlertStore()
        self.geo = geo
        self.max_workers = max_workers or os.cpu_count() or 1

    def run(self, records) -> "Detection":
        """Evaluate all rules against *records*; returns self with updated rules.

        Plain rules emit an alert per matching record as they go.
        Aggregating rules only accumulate; call add_aggcondition_alerts()
        afterwards to turn their buckets into alerts.
        """
        batch = tuple(records)
        rules, self.rules = self.rules, []

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                pool.submit(self._execute_rule, rule, batch) for rule in rules
            ]
            done = []
            for rule, future in zip(rules, futures):
                try:
                    done.append(future.result())
                except Exception as e:
                    raise RuleExecutionError(
                        f"rule '{rule.id}' failed: {e}"
                    ) from e

        self.rules = done
        return self

    def _execute_rule(self, rule: Rule, records: tuple) -> Rule:
        start = time.perf_counter()
        agg_condition = rule.has_agg_condition()
        for record in records:
            if not rule.select(record):
                continue
            if not agg_condition:
                self.sink.emit(format_match(rule, record, self.geo))
                rule.alert_count += 1
        rule.duration += time.perf_counter() - start
        return rule

    def add_aggcondition_alerts(self) -> int:
        """Emit one alert per satisfied aggregation bucket.  Returns how many."""
        emitted = 0
        for rule in self.rules:
            if not rule.has_agg_condition():
                continue
            for result in rule.judge_satisfy_aggcondition():
                self.sink.emit(format_aggregation(rule, result))
                rule.alert_count += 1
                emitted += 1
        return emitted

    def print_unique_results(self) -> dict[Level, int]:
        counts = summarize(self.rules)
        for level in sorted(counts, reverse=True):
            print(f"{level.label} alerts: {counts[level]}")
        print(f"Unique alerts detected: {sum(counts.values())}")
        return counts


def summarize(rules) -> dict[Level, int]:
    """Rules that alerted at least once, counted per level (once per rule)."""
    counts = {level: 0 for level in Level}
    for rule in rules:
        if rule.alert_count > 0:
            counts[rule.level] += 1
    return counts


def print_rule_load_info(summary) -> None:
    for level in sorted(summary.loaded, reverse=True):
        print(f"{level.label} rules: {summary.loaded[level]}")
    print(f"Ignored rules: {summary.ignored}")
    print(f"Rule parsing errors: {summary.errors}")
    print(f"Total detection rules: {summary.total}")
    print()
