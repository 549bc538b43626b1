"""Load Sigma-style YAML rules from a directory tree.

A broken rule file never stops the load: it is reported, counted as a
parsing error, and left out.  Rules filtered out on purpose (below the
minimum level, excluded by id, deprecated) are counted as ignored.
"""

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from hunter.rules import Level, Rule, RuleValidationError
from hunter.rules.aggregation import parse_aggregation
from hunter.rules.selection import compile_detection

_REQUIRED_FIELDS = ("title", "detection")
_IGNORED_STATUS = ("deprecated", "unsupported")


@dataclass
class LoadSummary:
    loaded: dict = field(default_factory=lambda: {level: 0 for level in Level})
    errors: int = 0
    ignored: int = 0

    @property
    def total(self) -> int:
        return sum(self.loaded.values()) + self.errors + self.ignored


def load_rules(directory: str | Path, min_level: Level = Level.UNDEFINED,
               exclude_ids=()) -> tuple[list[Rule], LoadSummary]:
    """Glob *.yml / *.yaml under *directory*, return (rules, summary)."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Rule directory not found: {directory}")

    exclude_ids = set(exclude_ids)
    summary = LoadSummary()
    rules = []
    paths = sorted(
        p for p in directory.rglob("*") if p.suffix in (".yml", ".yaml")
    )
    for path in paths:
        try:
            definition = _parse_and_validate(path)
        except (RuleValidationError, yaml.YAMLError) as e:
            _report(path, [str(e)])
            summary.errors += 1
            continue

        if _is_ignored(definition, min_level, exclude_ids):
            summary.ignored += 1
            continue

        try:
            rule = build_rule(definition, path)
        except RuleValidationError as e:
            _report(path, [str(e)])
            summary.errors += 1
            continue

        rules.append(rule)
        summary.loaded[rule.level] += 1
    return rules, summary


def load_rule(path: str | Path) -> Rule:
    """Load a single rule file — useful for tests.  Raises on any problem."""
    path = Path(path)
    return build_rule(_parse_and_validate(path), path)


def build_rule(definition: dict, path) -> Rule:
    detection = definition["detection"]
    tree, agg_text = compile_detection(detection)

    aggregation = None
    if agg_text:
        timeframe = detection.get("timeframe", definition.get("timeframe"))
        aggregation = parse_aggregation(agg_text, timeframe)

    return Rule(
        id=str(definition.get("id") or path),
        path=str(path),
        level=Level.from_label(definition.get("level")),
        title=str(definition["title"]),
        output=str(definition.get("output") or definition.get("details") or ""),
        selection=tree,
        aggregation=aggregation,
        yaml=definition,
    )


def read_exclude_ids(path: str | Path) -> set[str]:
    """One rule id per line; blank lines and # comments are skipped."""
    ids = set()
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.split("#", 1)[0].strip()
            if line:
                ids.add(line)
    return ids


def _parse_and_validate(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            definition = yaml.safe_load(f)
    except UnicodeDecodeError as e:
        raise RuleValidationError(f"{path.name}: not valid UTF-8 ({e})") from e
    except OSError as e:
        raise RuleValidationError(f"{path.name}: cannot read file ({e})") from e

    if not isinstance(definition, dict):
        raise RuleValidationError(f"{path.name}: rule must be a YAML mapping")
    for name in _REQUIRED_FIELDS:
        if name not in definition:
            raise RuleValidationError(f"{path.name}: missing required field '{name}'")
    return definition


def _is_ignored(definition: dict, min_level: Level, exclude_ids: set) -> bool:
    if str(definition.get("status", "")).lower() in _IGNORED_STATUS:
        return True
    if str(definition.get("id", "")) in exclude_ids:
        return True
    return Level.from_label(definition.get("level")) < min_level


def _report(path: Path, messages: list[str]) -> None:
    print(f"[WARN] Failed to parse rule file. (FilePath : {path})")
    for msg in messages:
        print(f"[WARN] {msg}")
    print()
