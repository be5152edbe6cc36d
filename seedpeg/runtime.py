"""The parsing runtime: memoized recursive descent with seed growing.

Every rule in the grammar is turned into a function that takes the parse
state and an index into the input, and returns either `(value, end)` or
None if it didn't match. Expressions inside rules are compiled into little
closures of the same shape, so by the time we're parsing all the dispatch on
expression types has already happened.

Calls to rules go through `ParseState.apply`, which does two things:

  - Memoization. Each (rule, index) pair is only ever evaluated once, which
    keeps the whole thing linear-ish even with a lot of backtracking.

  - Left recursion. If a rule calls itself at the same index before it has
    finished, the inner call doesn't recurse; it gets the "seed", which is
    failure the first time around. The outer call then finishes using some
    other alternative. If it succeeds, we store that as the seed and evaluate
    the rule again: now the inner call gets the seed and can extend it. We
    keep going as long as each round ends further along than the last.

    For indirect recursion (A calls B calls A) the results of everything
    between the growing rule and the recursive call depend on the seed, so
    those are marked as tainted and thrown away instead of being memoized,
    and get evaluated again next round.

Failures are ordinary return values. The only thing that survives a failed
parse is the furthest index that any terminal failed at, along with the set
of things that were expected there, which is what goes in the ParseError.
Memo entries remember the failures recorded while they were computed, so
that using a memoized result reports the same failures as computing it did.
"""

import bisect
import dataclasses
import enum
import logging
import re
import typing

from . import capture
from . import grammar as g


memo_log = logging.getLogger("seedpeg.memo")
action_log = logging.getLogger("seedpeg.action")


###############################################################################
# Values
###############################################################################


@dataclasses.dataclass(frozen=True)
class Token:
    """A token, as produced by the lexer. `start` and `end` are offsets into
    the source text.

    `value` is whatever the token's action made of it, if it has one.
    """

    kind: str
    text: str
    start: int
    end: int
    value: typing.Any = dataclasses.field(default=None, compare=False)


@dataclasses.dataclass(frozen=True, order=True)
class Position:
    """A place in the input. Positions compare by their index in the input
    (characters, or tokens if there's a lexer); offset, line and column are
    for humans.
    """

    index: int
    offset: int = dataclasses.field(compare=False)
    line: int = dataclasses.field(compare=False)
    column: int = dataclasses.field(compare=False)

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


def newlines(text: str) -> list[int]:
    return [m.start() for m in re.finditer("\n", text)]


def locate(index: int, offset: int, lines: list[int]) -> Position:
    line_index = bisect.bisect_left(lines, offset)
    if line_index == 0:
        column_start = 0
    else:
        column_start = lines[line_index - 1] + 1
    return Position(index, offset, line_index + 1, offset - column_start + 1)


class ErrorKind(enum.Enum):
    UNEXPECTED_SYMBOL = "unexpected symbol"
    UNEXPECTED_END_OF_INPUT = "unexpected end of input"
    LEXICAL_ERROR = "lexical error"
    NO_BASE_CASE = "no base case"
    NESTED_TOO_DEEPLY = "nested too deeply"


class ParseError(Exception):
    """The input didn't match.

    `position` is the furthest place that anything failed to match, and
    `expected` is the set of things that would have been acceptable there.
    """

    kind: ErrorKind
    position: Position
    expected: frozenset[str]
    found: str | None

    def __init__(
        self,
        kind: ErrorKind,
        position: Position,
        expected: typing.Iterable[str] = (),
        found: str | None = None,
    ):
        self.kind = kind
        self.position = position
        self.expected = frozenset(expected)
        self.found = found
        super().__init__(str(self))

    @property
    def message(self) -> str:
        match self.kind:
            case ErrorKind.UNEXPECTED_END_OF_INPUT:
                message = "Unexpected end of input"
            case ErrorKind.LEXICAL_ERROR:
                message = f"No token matches {self.found}"
            case ErrorKind.NO_BASE_CASE:
                message = "Left-recursive rule has no base case"
            case ErrorKind.NESTED_TOO_DEEPLY:
                message = "Input is nested too deeply"
            case _:
                message = f"Unexpected {self.found}"

        if len(self.expected) == 1:
            (only,) = self.expected
            message += f", expected {only}"
        elif len(self.expected) > 1:
            message += f", expected one of {', '.join(sorted(self.expected))}"
        return message

    def __str__(self) -> str:
        return f"{self.position.line}:{self.position.column}: {self.message}"


###############################################################################
# Parse state and memoization
###############################################################################


Result = tuple[typing.Any, int] | None


@dataclasses.dataclass
class MemoEntry:
    """The memo for one rule at one index.

    While the rule is being evaluated `complete` is False and `result` is
    the current seed. `detected` is set when somebody calls the rule again
    before it finishes (left recursion), and `tainted` is set when the result
    depends on some other rule's seed that is still growing.
    """

    rule: str
    index: int
    depth: int
    result: Result = None
    complete: bool = False
    detected: bool = False
    tainted: bool = False
    rounds: int = 0
    furthest: int = -1
    expected: set[str] = dataclasses.field(default_factory=set)


class ParseState:
    """Everything that belongs to one call to parse. Nothing in here is
    shared with any other parse.
    """

    program: "Program"
    symbols: str | typing.Sequence[Token]
    source: str | None
    memo: dict[tuple[str, int], MemoEntry]
    stack: list[MemoEntry]
    furthest: int
    expected: set[str]

    _lines: list[int] | None

    def __init__(
        self,
        program: "Program",
        symbols: str | typing.Sequence[Token],
        source: str | None = None,
    ):
        self.program = program
        self.symbols = symbols
        self.source = source if source is not None else (symbols if isinstance(symbols, str) else None)
        self.memo = {}
        self.stack = []
        self.furthest = -1
        self.expected = set()
        self._lines = None

    def apply(self, name: str, index: int) -> Result:
        key = (name, index)
        entry = self.memo.get(key)
        if entry is not None:
            if not entry.complete:
                # Left recursion: hand back the seed, and taint everything that
                # got us here from the rule that's growing.
                entry.detected = True
                for frame in self.stack[entry.depth + 1 :]:
                    frame.tainted = True
            else:
                self.restore_failure((entry.furthest, entry.expected))
            return entry.result

        body = self.program.rules[name]
        entry = MemoEntry(rule=name, index=index, depth=len(self.stack))
        self.memo[key] = entry
        saved = self.save_failure()
        self.stack.append(entry)
        try:
            result = body(self, index)
            if entry.detected and result is not None:
                result = self._grow(entry, body, result)
        finally:
            self.stack.pop()
            entry.furthest, entry.expected = self.save_failure()
            self.restore_failure(saved)
            self.restore_failure((entry.furthest, entry.expected))

        entry.result = result
        if entry.tainted:
            del self.memo[key]
        else:
            entry.complete = True
        return result

    def _grow(self, entry: MemoEntry, body: "Parselet", result: Result) -> Result:
        assert result is not None
        while True:
            entry.result = result
            entry.rounds += 1
            next_result = body(self, entry.index)
            if next_result is None or next_result[1] <= result[1]:
                break
            result = next_result

        if memo_log.isEnabledFor(logging.DEBUG):
            memo_log.debug(
                "grew %s at %d to %d in %d rounds",
                entry.rule,
                entry.index,
                result[1],
                entry.rounds,
            )
        return result

    def fail(self, index: int, expected: str):
        if index > self.furthest:
            self.furthest = index
            self.expected = {expected}
        elif index == self.furthest:
            self.expected.add(expected)

    def save_failure(self) -> tuple[int, set[str]]:
        saved = (self.furthest, self.expected)
        self.furthest = -1
        self.expected = set()
        return saved

    def restore_failure(self, saved: tuple[int, set[str]]):
        """Merge a failure saved with `save_failure` back in."""
        furthest, expected = saved
        if furthest > self.furthest:
            self.furthest = furthest
            self.expected = set(expected)
        elif furthest == self.furthest:
            self.expected |= expected

    def position(self, index: int) -> Position:
        if self._lines is None:
            self._lines = newlines(self.source) if self.source is not None else []

        if isinstance(self.symbols, str):
            return locate(index, index, self._lines)

        if index < len(self.symbols):
            offset = self.symbols[index].start
        elif self.source is not None:
            offset = len(self.source)
        elif len(self.symbols) > 0:
            offset = self.symbols[-1].end
        else:
            offset = 0
        return locate(index, offset, self._lines)

    def describe(self, index: int) -> str:
        symbol = self.symbols[index]
        if isinstance(symbol, Token):
            return f"{symbol.kind} {symbol.text!r}"
        return repr(symbol)

    def error(self) -> ParseError:
        index = max(self.furthest, 0)
        if index >= len(self.symbols):
            return ParseError(
                ErrorKind.UNEXPECTED_END_OF_INPUT,
                self.position(index),
                self.expected,
            )
        return ParseError(
            ErrorKind.UNEXPECTED_SYMBOL,
            self.position(index),
            self.expected,
            found=self.describe(index),
        )


###############################################################################
# Compiling expressions
###############################################################################


Parselet = typing.Callable[[ParseState, int], Result]


class Program:
    """The executable form of a grammar: one parselet per rule, built out of
    the capture plans.
    """

    rules: dict[str, Parselet]
    tokens: bool

    _grammar: g.Grammar
    _captures: dict[g.Expression, capture.Capture]
    _compiled: dict[g.Expression, Parselet]

    def __init__(self, grammar: g.Grammar, info: capture.CaptureInfo):
        self._grammar = grammar
        self._captures = info.captures
        self._compiled = {}
        self.tokens = grammar.has_lexer
        self.rules = {}
        for name, plan in info.rules.items():
            self.rules[name] = self._rule(grammar.rules[name], plan)

    def _rule(self, rule: g.Rule, plan: capture.RulePlan) -> Parselet:
        productions = [self._production(p) for p in plan.productions]
        error_name = rule.error_name

        def parse_choice(state: ParseState, index: int) -> Result:
            for production in productions:
                result = production(state, index)
                if result is not None:
                    return result
            return None

        if error_name is None:
            return parse_choice

        def parse_named(state: ParseState, index: int) -> Result:
            saved = state.save_failure()
            result = parse_choice(state, index)
            if result is None and state.furthest <= index:
                state.save_failure()
                state.fail(index, error_name)
            state.restore_failure(saved)
            return result

        return parse_named

    def _production(self, plan: capture.ProductionPlan) -> Parselet:
        items = [self.compile(item) for item in plan.items]

        def parse(state: ParseState, index: int) -> Result:
            values = []
            pos = index
            for item in items:
                result = item(state, pos)
                if result is None:
                    return None
                value, pos = result
                values.append(value)

            if plan.action is not None and action_log.isEnabledFor(logging.DEBUG):
                action_log.debug("action at %d-%d: %r", index, pos, plan.action)
            return (plan.value(values), pos)

        return parse

    def compile(self, expr: g.Expression) -> Parselet:
        existing = self._compiled.get(expr)
        if existing is not None:
            return existing

        result = self._compile(expr)
        self._compiled[expr] = result
        return result

    def _compile(self, expr: g.Expression) -> Parselet:
        match expr:
            case g.Literal(text=text):
                if self.tokens:
                    return self._token_literal(text, str(expr))
                return self._literal(text, str(expr))

            case g.Class():
                if self.tokens:
                    return self._token_class(expr)
                return self._class(expr)

            case g.Reference(name=name):
                if name in self._grammar.rules:

                    def parse_reference(state: ParseState, index: int) -> Result:
                        return state.apply(name, index)

                    return parse_reference

                token = self._grammar.tokens[name]
                return self._token_kind(name, token.error_name or name, token.has_value)

            case g.Sequence(items=items):
                return self._sequence([self.compile(i) for i in items], self._captures[expr].keep)

            case g.Choice(alternatives=alternatives):
                return self._choice([self.compile(a) for a in alternatives])

            case g.Optional(item=item):
                return self._optional(self.compile(item))

            case g.Repeat(item=item, minimum=minimum):
                return self._repeat(self.compile(item), minimum)

            case g.Bind(item=item):
                return self.compile(item)

            case g.And(item=item):
                return self._and(self.compile(item))

            case g.Not(item=item):
                return self._not(self.compile(item), str(item))

            case _:
                raise TypeError(f"Unknown expression {expr!r}")

    def _literal(self, text: str, expected: str) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            symbols = state.symbols
            assert isinstance(symbols, str)
            if symbols.startswith(text, index):
                return (text, index + len(text))
            state.fail(index, expected)
            return None

        return parse

    def _class(self, cls: g.Class) -> Parselet:
        expected = str(cls)

        def parse(state: ParseState, index: int) -> Result:
            symbols = state.symbols
            if index < len(symbols):
                char = symbols[index]
                assert isinstance(char, str)
                if cls.contains(char):
                    return (char, index + 1)
            state.fail(index, expected)
            return None

        return parse

    def _token_literal(self, text: str, expected: str) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            symbols = state.symbols
            if index < len(symbols):
                token = symbols[index]
                assert isinstance(token, Token)
                if token.text == text:
                    return (token, index + 1)
            state.fail(index, expected)
            return None

        return parse

    def _token_class(self, cls: g.Class) -> Parselet:
        expected = str(cls)

        def parse(state: ParseState, index: int) -> Result:
            symbols = state.symbols
            if index < len(symbols):
                token = symbols[index]
                assert isinstance(token, Token)
                if len(token.text) == 1 and cls.contains(token.text):
                    return (token, index + 1)
            state.fail(index, expected)
            return None

        return parse

    def _token_kind(self, kind: str, expected: str, has_value: bool) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            symbols = state.symbols
            if index < len(symbols):
                token = symbols[index]
                assert isinstance(token, Token)
                if token.kind == kind:
                    return (token.value if has_value else token, index + 1)
            state.fail(index, expected)
            return None

        return parse

    def _sequence(self, items: list[Parselet], keep: tuple[bool, ...]) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            kept = []
            pos = index
            for item, k in zip(items, keep):
                result = item(state, pos)
                if result is None:
                    return None
                value, pos = result
                if k:
                    kept.append(value)

            if len(kept) == 0:
                return (None, pos)
            if len(kept) == 1:
                return (kept[0], pos)
            return (tuple(kept), pos)

        return parse

    def _choice(self, alternatives: list[Parselet]) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            for alternative in alternatives:
                result = alternative(state, index)
                if result is not None:
                    return result
            return None

        return parse

    def _optional(self, item: Parselet) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            result = item(state, index)
            if result is None:
                return (None, index)
            return result

        return parse

    def _repeat(self, item: Parselet, minimum: int) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            values = []
            pos = index
            while True:
                result = item(state, pos)
                if result is None:
                    break
                value, end = result
                if end == pos:
                    # Matched nothing; going around again would never stop.
                    if len(values) < minimum:
                        values.append(value)
                    break
                values.append(value)
                pos = end

            if len(values) < minimum:
                return None
            return (values, pos)

        return parse

    def _and(self, item: Parselet) -> Parselet:
        def parse(state: ParseState, index: int) -> Result:
            if item(state, index) is None:
                return None
            return (None, index)

        return parse

    def _not(self, item: Parselet, description: str) -> Parselet:
        expected = f"not {description}"

        def parse(state: ParseState, index: int) -> Result:
            saved = state.save_failure()
            result = item(state, index)
            state.save_failure()
            state.restore_failure(saved)
            if result is not None:
                state.fail(index, expected)
                return None
            return (None, index)

        return parse

    def parse(
        self,
        rule: str,
        symbols: str | typing.Sequence[Token],
        *,
        source: str | None = None,
        complete: bool = False,
    ) -> typing.Any:
        state = ParseState(self, symbols, source)
        try:
            result = state.apply(rule, 0)
        except RecursionError as e:
            raise ParseError(
                ErrorKind.NESTED_TOO_DEEPLY,
                state.position(max(state.furthest, 0)),
            ) from e
        if result is not None and complete and result[1] != len(symbols):
            state.fail(result[1], "end of input")
            result = None

        if result is None:
            raise state.error()
        return result[0]
