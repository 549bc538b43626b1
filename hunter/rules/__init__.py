# Detection rules are YAML documents in the Sigma style, compiled once at
# load time into a Rule: a selection tree for single-record matching plus
# an optional aggregation clause for windowed counts.
#
# A Rule also carries the state its scheduler task accumulates while it
# runs (matched records grouped by key, elapsed time, alert count).  That
# state is only ever touched by the one task that owns the rule, so it
# needs no locking.

from collections import OrderedDict
from enum import IntEnum


class RuleValidationError(ValueError):
    """A rule file that cannot be compiled.  The rule is skipped, not fatal."""


class Level(IntEnum):
    """Severity, ordered so that comparisons mean "at least as severe"."""

    UNDEFINED = 0
    INFORMATIONAL = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, value) -> "Level":
        """Case-insensitive lookup; anything unrecognized is Undefined."""
        if not isinstance(value, str):
            return cls.UNDEFINED
        key = value.strip().upper()
        if key == "INFO":
            key = "INFORMATIONAL"
        return cls.__members__.get(key, cls.UNDEFINED)


class Rule:
    """A compiled detection rule plus its per-run match state."""

    def __init__(self, *, id: str, path: str, level: Level, title: str,
                 output: str, selection, aggregation=None, yaml: dict | None = None):
        self.id = id
        self.path = path
        self.level = level
        self.title = title
        self.output = output
        self.selection = selection
        self.aggregation = aggregation
        self.yaml = yaml or {}

        self.duration = 0.0
        self.alert_count = 0
        # group key tuple -> [(timestamp, record), ...] in match order
        self.countdata: OrderedDict[tuple, list] = OrderedDict()

    def has_agg_condition(self) -> bool:
        return self.aggregation is not None

    def select(self, record) -> bool:
        """Match one record; aggregating rules also file it under its group key."""
        if not matches(self.selection, record):
            return False
        if self.aggregation is not None:
            key = self.aggregation.group_key(record)
            self.countdata.setdefault(key, []).append((record.timestamp, record))
        return True

    def judge_satisfy_aggcondition(self) -> list:
        return evaluate(self)

    def check_exist_countdata(self) -> bool:
        return bool(self.countdata)

    def __repr__(self) -> str:
        return f"Rule(id={self.id!r}, level={self.level.label})"


from hunter.rules.selection import matches
from hunter.rules.aggregation import evaluate
