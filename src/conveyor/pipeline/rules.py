"""Rule evaluation — decides per job whether it runs for a given trigger.

Both declaration forms compile to the same thing: an ordered list of
:class:`Rule` objects, each pairing a predicate with the ``when`` it yields.
The first rule whose predicate matches decides; if none match the job is
excluded.

- Structured ``rules:`` entries map one-to-one onto rules.
- Legacy ``only``/``except`` compiles to ``[Rule(except, never), Rule(only, when)]``.

Evaluation is a pure function of the job config and the :class:`RuleContext`.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, ClassVar

from conveyor.config import JobConfig, OnlyExceptConfig, PipelineConfig, WhenPolicy
from conveyor.errors import RuleEvaluationError
from conveyor.models import PipelineSource, RuleContext

logger = logging.getLogger(__name__)


# ── Predicates ───────────────────────────────────────────────────────────────


class Predicate:
    """Base for all predicate variants."""

    kind: ClassVar[str] = "predicate"

    def matches(self, ctx: RuleContext) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Always(Predicate):
    kind: ClassVar[str] = "always"

    def matches(self, ctx: RuleContext) -> bool:
        return True


@dataclass(frozen=True)
class RefPredicate(Predicate):
    """Matches the branch or tag name.

    Patterns are exact names, ``/regex/`` literals, or the ``branches`` and
    ``tags`` keywords. Merge request pipelines never match ref patterns; they
    are selected with the ``merge_requests`` keyword instead.
    """

    kind: ClassVar[str] = "ref"
    patterns: tuple[str, ...]

    def matches(self, ctx: RuleContext) -> bool:
        if ctx.source == PipelineSource.MERGE_REQUEST:
            return False
        ref = ctx.ref_name
        for pattern in self.patterns:
            if pattern == "branches":
                if ctx.branch and not ctx.tag:
                    return True
            elif pattern == "tags":
                if ctx.tag:
                    return True
            elif _is_regex_literal(pattern):
                if ref and _compile_regex_literal(pattern).search(ref):
                    return True
            elif pattern == ref:
                return True
        return False


@dataclass(frozen=True)
class EventPredicate(Predicate):
    """Matches the pipeline source (push, merge request, web, api, trigger)."""

    kind: ClassVar[str] = "event"
    sources: frozenset[PipelineSource]

    def matches(self, ctx: RuleContext) -> bool:
        return ctx.source in self.sources


@dataclass(frozen=True)
class SchedulePredicate(Predicate):
    kind: ClassVar[str] = "schedule"
    expected: bool = True

    def matches(self, ctx: RuleContext) -> bool:
        return ctx.is_scheduled == self.expected


@dataclass(frozen=True)
class ChangesPredicate(Predicate):
    """Matches when any changed path matches any glob.

    An unknown change set (``changed_paths is None``) always matches.
    """

    kind: ClassVar[str] = "changes"
    globs: tuple[str, ...]

    def matches(self, ctx: RuleContext) -> bool:
        if ctx.changed_paths is None:
            return True
        for path in ctx.changed_paths:
            for glob in self.globs:
                if glob.endswith("/") and path.startswith(glob):
                    return True
                if any(fnmatch.fnmatchcase(path, g) for g in _globstar_variants(glob)):
                    return True
        return False


@lru_cache(maxsize=256)
def _globstar_variants(glob: str) -> tuple[str, ...]:
    """``glob`` plus every form with some ``**/`` segments matching zero dirs."""
    variants = [glob]
    for variant in variants:
        index = variant.find("**/")
        while index != -1:
            reduced = variant[:index] + variant[index + 3 :]
            if reduced not in variants:
                variants.append(reduced)
            index = variant.find("**/", index + 3)
    return tuple(variants)


@dataclass(frozen=True)
class ExpressionPredicate(Predicate):
    """An ``if:`` expression over pipeline variables.

    Supports ``$VAR``, ``==``, ``!=``, ``=~ /re/``, ``!~ /re/``, ``null``,
    ``&&``, ``||`` and parentheses.
    """

    kind: ClassVar[str] = "expression"
    source: str
    tree: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.tree is None:
            object.__setattr__(self, "tree", _Parser(self.source).parse())

    def matches(self, ctx: RuleContext) -> bool:
        return bool(_evaluate(self.tree, ctx.all_variables()))


@dataclass(frozen=True)
class AllOf(Predicate):
    kind: ClassVar[str] = "all_of"
    predicates: tuple[Predicate, ...]

    def matches(self, ctx: RuleContext) -> bool:
        return all(p.matches(ctx) for p in self.predicates)


@dataclass(frozen=True)
class AnyOf(Predicate):
    kind: ClassVar[str] = "any_of"
    predicates: tuple[Predicate, ...]

    def matches(self, ctx: RuleContext) -> bool:
        return any(p.matches(ctx) for p in self.predicates)


# ── Rules and decisions ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Rule:
    predicate: Predicate
    when: WhenPolicy
    allow_failure: bool | None = None


@dataclass(frozen=True)
class RuleDecision:
    """Outcome of rule evaluation for one job."""

    included: bool
    when: WhenPolicy = WhenPolicy.ON_SUCCESS
    allow_failure: bool = False
    reason: str = ""

    @property
    def manual(self) -> bool:
        return self.included and self.when == WhenPolicy.MANUAL


_LEGACY_EVENTS: dict[str, PipelineSource] = {
    "merge_requests": PipelineSource.MERGE_REQUEST,
    "pushes": PipelineSource.PUSH,
    "web": PipelineSource.WEB,
    "api": PipelineSource.API,
    "triggers": PipelineSource.TRIGGER,
}


def compile_rules(job: JobConfig) -> list[Rule]:
    """Compile a job's rule declarations into an ordered rule list.

    Raises:
        RuleEvaluationError: If a predicate is malformed.
    """
    if job.rules is not None:
        if job.only or job.except_:
            logger.warning("Job '%s' declares both rules and only/except; using rules", job.name)
        rules: list[Rule] = []
        for entry in job.rules:
            parts: list[Predicate] = []
            if entry.if_ is not None:
                parts.append(ExpressionPredicate(entry.if_))
            if entry.changes is not None:
                parts.append(ChangesPredicate(tuple(entry.changes)))
            predicate: Predicate = AllOf(tuple(parts)) if parts else Always()
            rules.append(Rule(predicate, entry.when or job.when, entry.allow_failure))
        return rules

    rules = []
    if job.except_ and not job.except_.is_empty():
        rules.append(Rule(compile_only_except(job.except_), WhenPolicy.NEVER))
    if job.only and not job.only.is_empty():
        rules.append(Rule(compile_only_except(job.only), job.when))
    else:
        rules.append(Rule(Always(), job.when))
    return rules


def compile_only_except(block: OnlyExceptConfig) -> Predicate:
    """Compile an ``only``/``except`` block. Its keys are AND-ed together."""
    parts: list[Predicate] = []
    if block.refs:
        alternatives: list[Predicate] = []
        plain: list[str] = []
        for ref in block.refs:
            if ref in _LEGACY_EVENTS:
                alternatives.append(EventPredicate(frozenset({_LEGACY_EVENTS[ref]})))
            elif ref == "schedules":
                alternatives.append(SchedulePredicate())
            else:
                if _is_regex_literal(ref):
                    _compile_regex_literal(ref)
                plain.append(ref)
        if plain:
            alternatives.append(RefPredicate(tuple(plain)))
        parts.append(AnyOf(tuple(alternatives)))
    if block.changes:
        parts.append(ChangesPredicate(tuple(block.changes)))
    if block.variables:
        parts.append(AnyOf(tuple(ExpressionPredicate(expr) for expr in block.variables)))
    return AllOf(tuple(parts))


def evaluate_job(job: JobConfig, ctx: RuleContext) -> RuleDecision:
    """First matching rule wins; no match excludes the job.

    Raises:
        RuleEvaluationError: If a predicate is malformed.
    """
    for rule in compile_rules(job):
        if not rule.predicate.matches(ctx):
            continue
        if rule.when == WhenPolicy.NEVER:
            return RuleDecision(included=False, when=WhenPolicy.NEVER, reason="matched never rule")
        allow_failure = rule.allow_failure
        if allow_failure is None:
            allow_failure = job.allow_failure
        if allow_failure is None:
            allow_failure = rule.when == WhenPolicy.MANUAL
        return RuleDecision(
            included=True,
            when=rule.when,
            allow_failure=allow_failure,
            reason=f"matched {rule.predicate.kind} rule",
        )
    return RuleDecision(included=False, reason="no rule matched")


def evaluate_pipeline(config: PipelineConfig, ctx: RuleContext) -> dict[str, RuleDecision]:
    """Evaluate every job. A malformed rule excludes only its own job."""
    decisions: dict[str, RuleDecision] = {}
    for name, job in config.jobs.items():
        try:
            decisions[name] = evaluate_job(job, ctx)
        except RuleEvaluationError as exc:
            logger.warning("Excluding job '%s': %s", name, exc)
            decisions[name] = RuleDecision(included=False, reason=f"rule error: {exc}")
        logger.debug("Rule decision for '%s': %s", name, decisions[name])
    return decisions


# ── Expression parsing ───────────────────────────────────────────────────────

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("VAR", r"\$\{[A-Za-z_][A-Za-z0-9_]*\}|\$[A-Za-z_][A-Za-z0-9_]*"),
    ("STRING", r'"(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\''),
    ("REGEX", r"/(?:\\.|[^/\\])*/[imsx]*"),
    ("OP", r"==|!=|=~|!~|&&|\|\|"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("NULL", r"null\b"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_COMPARISONS = ("==", "!=", "=~", "!~")


class _Parser:
    """Recursive-descent parser producing nested tuples.

    Node shapes: ``("var", name)``, ``("str", value)``, ``("regex", pattern)``,
    ``("null",)``, ``("cmp", op, left, right)``, ``("and", l, r)``, ``("or", l, r)``.
    """

    def __init__(self, source: str):
        self.source = source
        self.tokens = self._tokenize(source)
        self.pos = 0

    def _tokenize(self, source: str) -> list[tuple[str, str]]:
        tokens: list[tuple[str, str]] = []
        pos = 0
        while pos < len(source):
            match = _TOKEN_RE.match(source, pos)
            if not match:
                raise RuleEvaluationError(f"Unexpected character at {pos} in expression: {source!r}")
            kind = match.lastgroup or ""
            if kind != "WS":
                tokens.append((kind, match.group()))
            pos = match.end()
        if not tokens:
            raise RuleEvaluationError("Empty rule expression")
        return tokens

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise RuleEvaluationError(f"Unexpected end of expression: {self.source!r}")
        self.pos += 1
        return token

    def parse(self) -> tuple:
        tree = self._or()
        if self._peek() is not None:
            raise RuleEvaluationError(f"Unexpected token {self._peek()[1]!r} in {self.source!r}")
        return tree

    def _or(self) -> tuple:
        left = self._and()
        while self._peek() == ("OP", "||"):
            self._next()
            left = ("or", left, self._and())
        return left

    def _and(self) -> tuple:
        left = self._primary()
        while self._peek() == ("OP", "&&"):
            self._next()
            left = ("and", left, self._primary())
        return left

    def _primary(self) -> tuple:
        if self._peek() == ("LPAREN", "("):
            self._next()
            inner = self._or()
            if self._next() != ("RPAREN", ")"):
                raise RuleEvaluationError(f"Unbalanced parentheses in {self.source!r}")
            return inner
        left = self._operand()
        token = self._peek()
        if token and token[0] == "OP" and token[1] in _COMPARISONS:
            self._next()
            right = self._operand()
            if token[1] in ("=~", "!~") and right[0] not in ("regex", "var"):
                raise RuleEvaluationError(f"Right side of {token[1]} must be a /regex/ in {self.source!r}")
            return ("cmp", token[1], left, right)
        return left

    def _operand(self) -> tuple:
        kind, text = self._next()
        if kind == "VAR":
            return ("var", text.strip("${}"))
        if kind == "STRING":
            return ("str", text[1:-1])
        if kind == "REGEX":
            _compile_regex_literal(text)
            return ("regex", text)
        if kind == "NULL":
            return ("null",)
        raise RuleEvaluationError(f"Unexpected token {text!r} in {self.source!r}")


def _evaluate(node: tuple, variables: dict[str, str]) -> Any:
    tag = node[0]
    if tag == "var":
        return variables.get(node[1])
    if tag == "str":
        return node[1]
    if tag == "null":
        return None
    if tag == "regex":
        return node[1]
    if tag == "and":
        return bool(_evaluate(node[1], variables)) and bool(_evaluate(node[2], variables))
    if tag == "or":
        return bool(_evaluate(node[1], variables)) or bool(_evaluate(node[2], variables))
    if tag == "cmp":
        op, left, right = node[1], _evaluate(node[2], variables), _evaluate(node[3], variables)
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if not isinstance(right, str) or not _is_regex_literal(right):
            raise RuleEvaluationError(f"Not a regex literal: {right!r}")
        found = left is not None and _compile_regex_literal(right).search(left) is not None
        return found if op == "=~" else not found
    raise RuleEvaluationError(f"Unknown expression node: {tag}")


def _is_regex_literal(text: str) -> bool:
    return bool(re.fullmatch(r"/.*/[imsx]*", text, re.DOTALL)) and len(text) >= 2


def _compile_regex_literal(text: str) -> re.Pattern[str]:
    body, _, flags = text[1:].rpartition("/")
    flag_bits = 0
    for ch in flags:
        flag_bits |= {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}[ch]
    try:
        return re.compile(body, flag_bits)
    except re.error as exc:
        raise RuleEvaluationError(f"Invalid regex {text!r}: {exc}") from exc
