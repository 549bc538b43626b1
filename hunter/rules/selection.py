"""Selection trees — the single-record half of a detection rule.

A rule's ``detection`` block is compiled once, at load time, into a small
tree of nodes:

    AndNode / OrNode / NotNode      boolean structure from ``condition``
    FieldPredicate                  one ``Field|modifier: value(s)`` entry
    KeywordPredicate                bare keyword list, searched in the
                                    record's flattened text

Evaluation is a pure function of (tree, record).  Nothing is cached on the
nodes at match time, so one tree can be evaluated from many threads over
the same record batch.

Everything that can go wrong with a rule (bad condition syntax, unknown
selection names, bad regexes, unknown modifiers) is raised here as a
RuleValidationError while compiling.  At match time a field value of an
unexpected shape just fails the predicate.
"""

import fnmatch
import re

from hunter.records import MISSING, resolve_field
from hunter.rules import RuleValidationError

_MODIFIERS = ("contains", "startswith", "endswith", "re")


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class AndNode:
    __slots__ = ("children",)

    def __init__(self, children):
        self.children = tuple(children)

    def evaluate(self, record) -> bool:
        return all(child.evaluate(record) for child in self.children)


class OrNode:
    __slots__ = ("children",)

    def __init__(self, children):
        self.children = tuple(children)

    def evaluate(self, record) -> bool:
        return any(child.evaluate(record) for child in self.children)


class NotNode:
    __slots__ = ("child",)

    def __init__(self, child):
        self.child = child

    def evaluate(self, record) -> bool:
        return not self.child.evaluate(record)


class Constant:
    __slots__ = ("value",)

    def __init__(self, value: bool):
        self.value = value

    def evaluate(self, record) -> bool:
        return self.value


class FieldPredicate:
    """``Field|modifier|all: [values]`` against one field of the record."""

    __slots__ = ("field", "modifier", "match_all", "_tests", "_expect_null")

    def __init__(self, field: str, modifier: str, values: list, match_all: bool = False):
        self.field = field
        self.modifier = modifier
        self.match_all = match_all
        self._expect_null = any(v is None for v in values)
        self._tests = tuple(
            _compile_value(modifier, v) for v in values if v is not None
        )

    def evaluate(self, record) -> bool:
        actual = resolve_field(record.event, self.field)
        if actual is MISSING or actual is None:
            return self._expect_null
        if not self._tests:
            return False
        try:
            results = (self._test_value(test, actual) for test in self._tests)
            return all(results) if self.match_all else any(results)
        except (TypeError, ValueError, AttributeError):
            return False

    @staticmethod
    def _test_value(test, actual) -> bool:
        if isinstance(actual, list):
            return any(test(_as_text(v)) for v in actual if _is_scalar(v))
        if not _is_scalar(actual):
            return False
        return test(_as_text(actual))


class KeywordPredicate:
    """Bare keyword list: any keyword found in the flattened record text."""

    __slots__ = ("_keywords",)

    def __init__(self, keywords):
        self._keywords = tuple(str(k).lower() for k in keywords)

    def evaluate(self, record) -> bool:
        text = record.data_string.lower()
        return any(k in text for k in self._keywords)


def matches(tree, record) -> bool:
    """Does *record* satisfy the selection *tree*?"""
    return bool(tree.evaluate(record))


# ---------------------------------------------------------------------------
# Value tests
# ---------------------------------------------------------------------------

def _is_scalar(value) -> bool:
    return isinstance(value, (str, int, float, bool))


def _as_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _compile_value(modifier: str, value):
    if isinstance(value, (dict, list)):
        raise RuleValidationError(f"unsupported value {value!r}")
    text = _as_text(value)

    if modifier == "re":
        try:
            pattern = re.compile(text)
        except re.error as e:
            raise RuleValidationError(f"invalid regex {text!r}: {e}") from e
        return lambda actual: pattern.search(actual) is not None

    needle = text.lower()
    if modifier == "contains":
        return lambda actual: needle in actual.lower()
    if modifier == "startswith":
        return lambda actual: actual.lower().startswith(needle)
    if modifier == "endswith":
        return lambda actual: actual.lower().endswith(needle)

    if "*" in text or "?" in text:
        pattern = re.compile(_wildcard_to_regex(text), re.IGNORECASE | re.DOTALL)
        return lambda actual: pattern.fullmatch(actual) is not None
    return lambda actual: actual.lower() == needle


def _wildcard_to_regex(text: str) -> str:
    out = []
    for ch in text:
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return "".join(out)


# ---------------------------------------------------------------------------
# Compiling a detection block
# ---------------------------------------------------------------------------

def compile_selection(name: str, body):
    """One named selection → node.

    A mapping is AND over its fields; a list of mappings is OR over them;
    a list of plain values is a keyword search.
    """
    if isinstance(body, dict):
        if not body:
            raise RuleValidationError(f"selection '{name}' is empty")
        return AndNode(_compile_field(key, value) for key, value in body.items())
    if isinstance(body, list) and body:
        if all(isinstance(item, dict) for item in body):
            return OrNode(compile_selection(name, item) for item in body)
        if all(_is_scalar(item) for item in body):
            return KeywordPredicate(body)
    raise RuleValidationError(f"selection '{name}' has an unsupported shape")


def _compile_field(key: str, value) -> FieldPredicate:
    field, *mods = str(key).split("|")
    if not field:
        raise RuleValidationError(f"empty field name in '{key}'")
    match_all = "all" in mods
    mods = [m for m in mods if m != "all"]
    if len(mods) > 1:
        raise RuleValidationError(f"too many modifiers in '{key}'")
    modifier = mods[0] if mods else ""
    if modifier and modifier not in _MODIFIERS:
        raise RuleValidationError(f"unknown modifier '{modifier}' in '{key}'")
    values = value if isinstance(value, list) else [value]
    if not values:
        raise RuleValidationError(f"field '{key}' has no values")
    return FieldPredicate(field, modifier, values, match_all)


def compile_detection(detection: dict):
    """Compile a ``detection`` block.

    Returns (tree, aggregation_text) where aggregation_text is whatever
    follows the first ``|`` in the condition, or None.
    """
    if not isinstance(detection, dict):
        raise RuleValidationError("detection must be a mapping")

    selections = {
        name: compile_selection(name, body)
        for name, body in detection.items()
        if name not in ("condition", "timeframe")
    }
    if not selections:
        raise RuleValidationError("detection has no selections")

    condition = detection.get("condition")
    if isinstance(condition, list):
        if len(condition) != 1:
            raise RuleValidationError("multiple conditions are not supported")
        condition = condition[0]
    if condition is None:
        if len(selections) != 1:
            raise RuleValidationError("condition is required with several selections")
        return next(iter(selections.values())), None
    if not isinstance(condition, str) or not condition.strip():
        raise RuleValidationError("condition must be a non-empty string")

    expression, _, aggregation = condition.partition("|")
    tree = ConditionParser(expression, selections).parse()
    return tree, (aggregation.strip() or None)


class ConditionParser:
    """Recursive descent over ``and`` / ``or`` / ``not`` / ``x of y`` / parens."""

    _TOKEN = re.compile(r"\(|\)|[^\s()]+")

    def __init__(self, text: str, selections: dict):
        self.tokens = self._TOKEN.findall(text)
        self.pos = 0
        self.selections = selections

    def parse(self):
        if not self.tokens:
            raise RuleValidationError("empty condition")
        node = self._or()
        if self.pos != len(self.tokens):
            raise RuleValidationError(
                f"unexpected token '{self.tokens[self.pos]}' in condition"
            )
        return node

    def _peek(self):
        return self.tokens[self.pos].lower() if self.pos < len(self.tokens) else None

    def _next(self):
        token = self._peek()
        if token is None:
            raise RuleValidationError("condition ends unexpectedly")
        raw = self.tokens[self.pos]
        self.pos += 1
        return raw

    def _or(self):
        nodes = [self._and()]
        while self._peek() == "or":
            self._next()
            nodes.append(self._and())
        return nodes[0] if len(nodes) == 1 else OrNode(nodes)

    def _and(self):
        nodes = [self._not()]
        while self._peek() == "and":
            self._next()
            nodes.append(self._not())
        return nodes[0] if len(nodes) == 1 else AndNode(nodes)

    def _not(self):
        if self._peek() == "not":
            self._next()
            return NotNode(self._not())
        return self._primary()

    def _primary(self):
        token = self._next()
        lowered = token.lower()
        if lowered == "(":
            node = self._or()
            if self._peek() != ")":
                raise RuleValidationError("unbalanced parentheses in condition")
            self._next()
            return node
        if lowered == ")":
            raise RuleValidationError("unbalanced parentheses in condition")
        if lowered in ("1", "any", "all") and self._peek() == "of":
            self._next()
            names = self._names(self._next())
            nodes = [self.selections[n] for n in names]
            return AndNode(nodes) if lowered == "all" else OrNode(nodes)
        if lowered in ("and", "or", "not", "of"):
            raise RuleValidationError(f"unexpected '{token}' in condition")
        if token not in self.selections:
            raise RuleValidationError(f"unknown selection '{token}' in condition")
        return self.selections[token]

    def _names(self, pattern: str) -> list[str]:
        if pattern.lower() == "them":
            return list(self.selections)
        names = [n for n in self.selections if fnmatch.fnmatchcase(n, pattern)]
        if not names:
            raise RuleValidationError(f"no selection matches '{pattern}'")
        return names
