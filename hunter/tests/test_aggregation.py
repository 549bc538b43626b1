"""Tests for aggregation clauses — parsing, grouping, window bucketing, thresholds."""

from datetime import datetime, timedelta, timezone

import pytest

from hunter.records import Record
from hunter.rules import RuleValidationError
from hunter.rules.aggregation import (
    ABSENT,
    AggregationSpec,
    display_key,
    evaluate,
    parse_aggregation,
    parse_timeframe,
)
from hunter.rules.loader import build_rule

_T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def _record(minutes=0.0, user="alice", ip="10.0.0.5", event_id=4625, path="security.json"):
    ts = _T0 + timedelta(minutes=minutes)
    data = {}
    if user is not None:
        data["TargetUserName"] = user
    if ip is not None:
        data["IpAddress"] = ip
    return Record.from_event(path, {
        "Event": {
            "System": {
                "EventID": event_id,
                "TimeCreated_attributes": {"SystemTime": ts.isoformat()},
            },
            "EventData": data,
        }
    })


def _rule(condition="selection | count(TargetUserName) by IpAddress >= 3", timeframe="10m"):
    detection = {"selection": {"EventID": 4625}, "condition": condition}
    if timeframe is not None:
        detection["timeframe"] = timeframe
    return build_rule({"title": "t", "id": "agg", "level": "high", "detection": detection},
                      "agg.yml")


def _feed(rule, records):
    for r in records:
        rule.select(r)
    return evaluate(rule)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseAggregation:
    def test_full_clause(self):
        spec = parse_aggregation("count(Image) by User >= 5", "5m")
        assert spec == AggregationSpec("Image", "User", ">=", 5, "5m")
        assert spec.timeframe_seconds == 300
        assert spec.condition_op_num == ">= 5"

    def test_without_by(self):
        spec = parse_aggregation("count(Image) > 2")
        assert spec.by_field is None
        assert spec.timeframe is None
        assert spec.timeframe_seconds is None

    def test_empty_count(self):
        spec = parse_aggregation("count() by Computer > 50", "1m")
        assert spec.count_field == ""
        assert spec.by_field == "Computer"

    def test_single_equals_means_equality(self):
        assert parse_aggregation("count() = 4").operator == "=="

    @pytest.mark.parametrize("text", [
        "count(Image) by",
        "count(Image) >= x",
        "sum(Image) > 3",
        "count(Image) => 3",
        "",
    ])
    def test_rejected(self, text):
        with pytest.raises(RuleValidationError):
            parse_aggregation(text)

    def test_bad_timeframe_rejected(self):
        with pytest.raises(RuleValidationError):
            parse_aggregation("count() > 1", "five minutes")


class TestParseTimeframe:
    @pytest.mark.parametrize("text,seconds", [
        ("30s", 30), ("5m", 300), ("2h", 7200), ("1d", 86400), (" 10m ", 600),
    ])
    def test_units(self, text, seconds):
        assert parse_timeframe(text) == seconds

    @pytest.mark.parametrize("text", ["0m", "5", "5w", "m5", "-1m"])
    def test_rejected(self, text):
        with pytest.raises(RuleValidationError):
            parse_timeframe(text)


# ---------------------------------------------------------------------------
# Grouping keys
# ---------------------------------------------------------------------------

class TestGroupKey:
    def test_count_and_by_values_joined(self):
        spec = parse_aggregation("count(TargetUserName) by IpAddress > 1")
        assert spec.group_key(_record(user="bob", ip="1.2.3.4")) == ("bob", "1.2.3.4")

    def test_absent_field_is_none(self):
        spec = parse_aggregation("count(TargetUserName) by IpAddress > 1")
        assert spec.group_key(_record(user="bob", ip=None)) == ("bob", None)

    def test_no_fields_single_group(self):
        spec = parse_aggregation("count() > 1")
        assert spec.group_key(_record()) == ()
        assert display_key(()) == ABSENT

    def test_only_by_field(self):
        spec = parse_aggregation("count() by IpAddress > 1")
        assert spec.group_key(_record(ip="9.9.9.9")) == ("9.9.9.9",)

    def test_display_joins_with_sentinel(self):
        assert display_key(("bob", "1.2.3.4")) == "bob_1.2.3.4"
        assert display_key(("bob", None)) == f"bob_{ABSENT}"

    def test_underscores_in_values_do_not_merge_groups(self):
        spec = parse_aggregation("count(TargetUserName) by IpAddress > 1")
        a = spec.group_key(_record(user="svc_a", ip="b"))
        b = spec.group_key(_record(user="svc", ip="a_b"))
        assert a != b

    def test_literal_underscore_is_not_absent(self):
        spec = parse_aggregation("count(TargetUserName) by IpAddress > 1")
        assert spec.group_key(_record(user="bob", ip="_")) != spec.group_key(
            _record(user="bob", ip=None))

    def test_colliding_display_keys_bucket_separately(self):
        rule = _rule("selection | count(TargetUserName) by IpAddress >= 2")
        results = _feed(rule, [_record(0, user="svc_a", ip="b"),
                               _record(1, user="svc", ip="a_b")])
        assert results == []


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

class TestThresholdBoundary:
    def test_two_records_below_gte_three(self):
        assert _feed(_rule(), [_record(0), _record(1)]) == []

    def test_three_records_fire_once(self):
        results = _feed(_rule(), [_record(0), _record(1), _record(2)])
        assert len(results) == 1
        assert results[0].count == 3
        assert results[0].key == "alice_10.0.0.5"
        assert results[0].condition_op_num == ">= 3"

    def test_strict_greater_than(self):
        rule = _rule("selection | count(TargetUserName) > 3")
        assert _feed(rule, [_record(i) for i in range(3)]) == []
        rule = _rule("selection | count(TargetUserName) > 3")
        assert len(_feed(rule, [_record(i) for i in range(4)])) == 1

    def test_less_than(self):
        rule = _rule("selection | count(TargetUserName) < 3")
        assert len(_feed(rule, [_record(0), _record(1)])) == 1

    def test_equality(self):
        rule = _rule("selection | count(TargetUserName) == 2")
        assert len(_feed(rule, [_record(0), _record(1)])) == 1
        rule = _rule("selection | count(TargetUserName) == 2")
        assert _feed(rule, [_record(0), _record(1), _record(2)]) == []

    def test_equals_zero_never_fires(self):
        """Only buckets with at least one record exist."""
        rule = _rule("selection | count(TargetUserName) == 0")
        assert _feed(rule, [_record(0)]) == []
        rule = _rule("selection | count(TargetUserName) == 0")
        assert _feed(rule, []) == []

    def test_non_matching_records_are_not_counted(self):
        records = [_record(0), _record(1), _record(2, event_id=4624)]
        assert _feed(_rule(), records) == []


# ---------------------------------------------------------------------------
# Buckets
# ---------------------------------------------------------------------------

class TestBuckets:
    def test_keys_are_independent(self):
        records = [_record(i, user="alice") for i in range(2)]
        records += [_record(i, user="bob") for i in range(2)]
        assert _feed(_rule(), records) == []

    def test_windows_anchor_on_first_record(self):
        # 10:00, 10:01, 10:02 | 10:12, 10:13  → windows start 10:00 and 10:10
        records = [_record(m) for m in (0, 1, 2, 12, 13)]
        results = _feed(_rule("selection | count(TargetUserName) >= 2"), records)
        assert [r.start_timedate for r in results] == [
            _T0, _T0 + timedelta(minutes=10),
        ]
        assert [r.count for r in results] == [3, 2]

    def test_window_boundary_is_exclusive(self):
        records = [_record(0), _record(5), _record(10)]
        results = _feed(_rule(), records)
        assert results == []

    def test_anchor_is_first_seen_not_earliest(self):
        # first seen at 10:05; 10:00 and 10:01 fall into the window before it
        records = [_record(5), _record(0), _record(1)]
        results = _feed(_rule("selection | count(TargetUserName) >= 2"), records)
        assert len(results) == 1
        assert results[0].start_timedate == _T0 - timedelta(minutes=5)
        assert results[0].count == 2

    def test_each_key_has_its_own_anchor(self):
        records = [_record(0, user="alice"), _record(7, user="bob"),
                   _record(9, user="alice"), _record(12, user="bob"),
                   _record(15, user="bob")]
        results = _feed(_rule("selection | count(TargetUserName) >= 2"), records)
        by_key = {r.key: r for r in results}
        assert by_key["alice"].start_timedate == _T0
        assert by_key["bob"].start_timedate == _T0 + timedelta(minutes=7)
        assert by_key["bob"].count == 3

    def test_no_timeframe_is_one_bucket_per_key(self):
        records = [_record(m) for m in (0, 60, 600)]
        results = _feed(_rule(timeframe=None), records)
        assert len(results) == 1
        assert results[0].count == 3

    def test_records_without_timestamp_are_skipped(self):
        rule = _rule()
        undated = Record.from_event("x.json", {
            "Event": {"System": {"EventID": 4625},
                      "EventData": {"TargetUserName": "alice", "IpAddress": "10.0.0.5"}}
        })
        assert _feed(rule, [_record(0), _record(1), undated]) == []

    def test_filepath_is_first_record_of_bucket(self):
        records = [_record(0, path="a.json"), _record(1, path="b.json"),
                   _record(2, path="c.json")]
        assert _feed(_rule(), records)[0].filepath == "a.json"

    def test_plain_rule_evaluates_to_nothing(self):
        rule = build_rule({"title": "t", "detection": {"selection": {"EventID": 4625}}},
                          "plain.yml")
        assert _feed(rule, [_record(0)]) == []
        assert rule.countdata == {}
