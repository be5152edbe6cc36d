"""The grammar representation for seedpeg.

A grammar is a set of named rules. Each rule is an ordered list of
productions, and each production is an ordered list of expressions with an
optional action attached to the end. Expressions are the usual PEG
operators:

    Literal("+")            matches exactly "+"
    Class.from_ranges(...)  matches one character in a set of ranges
    Reference("expr")       invokes another rule (or a token, see below)
    Sequence(...)           matches things in order
    Choice(...)             ordered choice: the first one that works wins
    Optional(e)             zero or one
    Repeat(e, minimum)      zero-or-more or one-or-more, greedy
    Bind("lhs", e)          names a value for the action
    And(e), Not(e)          lookahead; consumes nothing

You can build all of these directly, but it's nicer to use the sugar:

    Expr = rule(
        "Expr",
        prod(bind("lhs", ref("Expr")), "+", bind("rhs", ref("Term")),
             action=lambda lhs, rhs: lhs + rhs),
        prod(ref("Term")),
        type="int",
    )

Strings are promoted to literals everywhere an expression is expected, and
`a + b`, `a | b`, `a.star()`, `a.plus()` and `a.question()` do what you
would expect.

## Tokens

A grammar can optionally declare a token layer with `TokenDef`. If any
tokens are declared then the input is lexed first (see `seedpeg.lexer`) and
the rules match tokens instead of characters: a literal matches a token with
that text, and a reference to a token name matches a token of that kind.
Whitespace is never skipped implicitly; declare a token with `skip=True` if
you want the lexer to throw something away.

Tokens can have actions too, which turn the text of the token into a value:

    token("Integer", one_or_more(chars(("0", "9"))), action=int, type="int")

and a token can switch the lexer into another set of tokens for a while,
which is how you lex things like string literals with escapes in them.

Nothing in here knows how to parse anything. This module is just the data;
see `seedpeg.compiler` for the thing that turns it into a parser.
"""

import bisect
import dataclasses
import enum
import inspect
import os
import typing


###############################################################################
# Errors
###############################################################################


class GrammarErrorKind(enum.Enum):
    UNRESOLVED_REFERENCE = "unresolved reference"
    TYPE_MISMATCH = "type mismatch"
    NO_BASE_CASE = "no base case"
    DUPLICATE_DEFINITION = "duplicate definition"
    DUPLICATE_BINDING = "duplicate binding"
    UNRESOLVED_ACTION = "unresolved action"
    INVALID_TOKEN = "invalid token"
    MISPLACED_BINDING = "misplaced binding"


class GrammarError(ValueError):
    """Raised when a grammar cannot be compiled. These are authoring errors:
    nothing about the input can make them go away.
    """

    kind: GrammarErrorKind
    message: str
    rule: str | None

    def __init__(self, kind: GrammarErrorKind, message: str, rule: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.rule = rule

    def __str__(self) -> str:
        if self.rule is not None:
            return f"{self.kind.value} in {self.rule}: {self.message}"
        return f"{self.kind.value}: {self.message}"


def _caller_location() -> str:
    """The first place on the stack outside of this file, for error
    messages.
    """
    here = os.path.abspath(__file__)
    for frame in inspect.stack()[1:]:
        if os.path.abspath(frame.filename) != here:
            return f"{frame.filename}:{frame.lineno}"
    return "<unknown>"


###############################################################################
# Character sets
###############################################################################

UNICODE_MAX_CP = 1114112


@dataclasses.dataclass(frozen=True, slots=True)
class Span:
    lower: int  # inclusive
    upper: int  # exclusive

    @classmethod
    def from_str(cls, lower: str, upper: str | None = None) -> "Span":
        lo = ord(lower)
        if upper is None:
            hi = lo + 1
        else:
            hi = ord(upper) + 1

        return Span(lower=lo, upper=hi)

    def __len__(self) -> int:
        return self.upper - self.lower

    def intersects(self, other: "Span") -> bool:
        """Determine if this span intersects the other span."""
        return self.lower < other.upper and self.upper > other.lower

    def split(self, other: "Span") -> tuple["Span|None", "Span|None", "Span|None"]:
        """Split two possibly-intersecting spans into three regions: a low
        region, which covers just the lower part of the union, a mid region,
        which covers the intersection, and a hi region, which covers just the
        upper part of the union.

        Graphically, given two spans A and B:

                   [      B    )
             [      A    )
             [ lo )[ mid )[ hi )

        If the lower bounds align then `lo` is None; if the upper bounds
        align then `hi` is None. If the spans don't intersect at all then
        `mid` is None and lo and hi are just the two spans, in order.

        split is reflexive: it doesn't matter which order you split things in,
        you will always get the same output spans, in the same order.
        """
        if not self.intersects(other):
            if self.lower < other.lower:
                return (self, None, other)
            else:
                return (other, None, self)

        first = min(self.lower, other.lower)
        second = max(self.lower, other.lower)
        third = min(self.upper, other.upper)
        fourth = max(self.upper, other.upper)

        low = Span(first, second) if first != second else None
        mid = Span(second, third)
        hi = Span(third, fourth) if third != fourth else None

        return (low, mid, hi)

    def __str__(self) -> str:
        return f"[{self.lower}-{self.upper})"


def _str_repr(x: int) -> str:
    return repr(chr(x))[1:-1]


def _normalize(spans: typing.Iterable[Span]) -> tuple[Span, ...]:
    """Sort and merge a bunch of spans so that they are disjoint and not
    adjacent.
    """
    result: list[Span] = []
    for span in sorted(spans, key=lambda s: s.lower):
        if len(span) == 0:
            continue
        if len(result) > 0 and result[-1].upper >= span.lower:
            last = result[-1]
            result[-1] = Span(last.lower, max(last.upper, span.upper))
        else:
            result.append(span)
    return tuple(result)


###############################################################################
# Expressions
###############################################################################


class Expression:
    """The base of all the grammar expressions. Provides the operators; all
    the interesting bits are in the subclasses.
    """

    def __or__(self, other: "Expression | str") -> "Expression":
        return alt(self, other)

    def __ror__(self, other: str) -> "Expression":
        return alt(other, self)

    def __add__(self, other: "Expression | str") -> "Expression":
        return seq(self, other)

    def __radd__(self, other: str) -> "Expression":
        return seq(other, self)

    def plus(self) -> "Expression":
        return Repeat(self, 1)

    def star(self) -> "Expression":
        return Repeat(self, 0)

    def question(self) -> "Expression":
        return Optional(self)


@dataclasses.dataclass(frozen=True)
class Literal(Expression):
    text: str

    def __str__(self) -> str:
        return repr(self.text)


@dataclasses.dataclass(frozen=True)
class Class(Expression):
    """A set of characters. Matches exactly one character, or one token whose
    text is exactly one character in the set.
    """

    spans: tuple[Span, ...]
    inversion: bool = dataclasses.field(default=False, compare=False)  # Just pretty.

    def __post_init__(self):
        object.__setattr__(self, "spans", _normalize(self.spans))

    @classmethod
    def from_ranges(cls, *args: str | tuple[str, str]) -> "Class":
        values = []
        for a in args:
            if isinstance(a, str):
                values.extend(Span.from_str(c) for c in a)
            else:
                values.append(Span.from_str(a[0], a[1]))

        return Class(tuple(values))

    @classmethod
    def any(cls) -> "Class":
        return Class((Span(0, UNICODE_MAX_CP),))

    def invert(self) -> "Class":
        spans = []
        lower = 0
        for span in self.spans:
            upper = span.lower
            if upper != lower:
                assert lower < upper
                spans.append(Span(lower, upper))
            lower = span.upper

        upper = UNICODE_MAX_CP
        if upper != lower:
            assert lower < upper
            spans.append(Span(lower, upper))

        return Class(tuple(spans), inversion=not self.inversion)

    def __invert__(self) -> "Class":
        return self.invert()

    def contains(self, char: str) -> bool:
        cp = ord(char)
        index = bisect.bisect_right(self.spans, cp, key=lambda s: s.upper)
        return index < len(self.spans) and self.spans[index].lower <= cp

    def __str__(self) -> str:
        if len(self.spans) == 1:
            span = self.spans[0]
            if len(span) == 1:
                return repr(chr(span.lower))

        ranges = []
        for span in self.spans:
            start = _str_repr(span.lower)
            end = _str_repr(span.upper - 1)
            if start == end:
                ranges.append(start)
            else:
                ranges.append(f"{start}-{end}")
        return "[{}]".format("".join(ranges))


@dataclasses.dataclass(frozen=True)
class Reference(Expression):
    name: str

    def __str__(self) -> str:
        return self.name


@dataclasses.dataclass(frozen=True)
class Sequence(Expression):
    items: tuple[Expression, ...]

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))

    def __str__(self) -> str:
        return "(" + " ".join(str(i) for i in self.items) + ")"


@dataclasses.dataclass(frozen=True)
class Choice(Expression):
    alternatives: tuple[Expression, ...]

    def __post_init__(self):
        object.__setattr__(self, "alternatives", tuple(self.alternatives))

    def __str__(self) -> str:
        return "(" + " | ".join(str(a) for a in self.alternatives) + ")"


@dataclasses.dataclass(frozen=True)
class Optional(Expression):
    item: Expression

    def __str__(self) -> str:
        return f"{self.item}?"


@dataclasses.dataclass(frozen=True)
class Repeat(Expression):
    item: Expression
    minimum: int = 0

    def __post_init__(self):
        if self.minimum not in (0, 1):
            raise ValueError(f"Repeat minimum must be 0 or 1, not {self.minimum}")

    def __str__(self) -> str:
        return f"{self.item}{'+' if self.minimum else '*'}"


@dataclasses.dataclass(frozen=True)
class Bind(Expression):
    name: str
    item: Expression

    def __str__(self) -> str:
        return f"{self.name}:{self.item}"


@dataclasses.dataclass(frozen=True)
class And(Expression):
    item: Expression

    def __str__(self) -> str:
        return f"&{self.item}"


@dataclasses.dataclass(frozen=True)
class Not(Expression):
    item: Expression

    def __str__(self) -> str:
        return f"!{self.item}"


###############################################################################
# Rules, productions, and tokens
###############################################################################


@dataclasses.dataclass(frozen=True)
class Action:
    """The thing that turns the values of a production into the value of the
    rule. Either carries the callable in `fn`, or names it with `name` so it
    can be looked up in the `actions` passed to `compile`.

    `returns` is the name of the type the action produces. If it's None then
    the action is assumed to produce whatever type the rule declares.
    """

    fn: typing.Callable[..., typing.Any] | None = None
    returns: str | None = None
    name: str | None = None


@dataclasses.dataclass(frozen=True)
class Production:
    items: tuple[Expression, ...]
    action: Action | None = None

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))

    def __str__(self) -> str:
        body = " ".join(str(i) for i in self.items)
        if self.action is not None:
            return f"{body} => ..."
        return body


class Rule:
    """A named rule in the grammar: an ordered list of productions, tried in
    order, the first one that matches wins.

    `type` is the name of the type this rule produces, if you want to declare
    one; if you don't then it is inferred. `entry` is True if you're allowed
    to start a parse at this rule.

    error_name is a human-readable name, to be shown in error messages. If the
    rule fails without getting past where it started then the error will say
    that this was expected, rather than listing everything inside it that
    failed to match.
    """

    name: str
    productions: tuple[Production, ...]
    type: str | None
    entry: bool
    error_name: str | None
    definition_location: str

    def __init__(
        self,
        name: str,
        productions: typing.Iterable["Production | Expression | str"],
        *,
        type: str | None = None,
        entry: bool = True,
        error_name: str | None = None,
    ):
        self.name = name
        self.productions = tuple(_production(p) for p in productions)
        self.type = type
        self.entry = entry
        self.error_name = error_name
        self.definition_location = _caller_location()

    def __repr__(self) -> str:
        return f"Rule({self.name!r})"


class TokenDef:
    """A token in the lexer layer. The pattern is a regular expression made
    out of the regular parts of the expression language: literals, classes,
    sequences, choices, optionals and repeats, plus references to other
    tokens (which are inlined).

    If there's an `action` it gets called with the text of the token, and
    what it returns is the token's `value`; that's also what a reference to
    the token produces in a rule, and `type` says what type that is.

    `enter` names a lexer state to switch to once the pattern has matched.
    The state's tokens are matched one after another until one of them with
    `leave=True` matches, and the token covers all of that text. The values
    of the tokens matched inside the state (their action's result, or their
    text) are collected into a list, which goes to `action` instead of the
    text.
    """

    name: str
    pattern: Expression
    skip: bool
    error_name: str | None
    action: typing.Callable[[typing.Any], typing.Any] | None
    type: str | None
    enter: str | None
    leave: bool
    definition_location: str

    def __init__(
        self,
        name: str,
        pattern: "Expression | str",
        *,
        skip: bool = False,
        error_name: str | None = None,
        action: typing.Callable[[typing.Any], typing.Any] | None = None,
        type: str | None = None,
        enter: str | None = None,
        leave: bool = False,
    ):
        self.name = name
        self.pattern = _expression(pattern)
        self.skip = skip
        self.error_name = error_name
        self.action = action
        self.type = type
        self.enter = enter
        self.leave = leave
        self.definition_location = _caller_location()

    @property
    def has_value(self) -> bool:
        """True if matching this token produces a value other than the token
        itself.
        """
        return self.action is not None or self.enter is not None

    def __repr__(self) -> str:
        return f"TokenDef({self.name!r})"


class Grammar:
    """All the rules and tokens for a language.

    Rules are kept in declaration order, and so are tokens; the order of the
    tokens matters, since when two tokens match the same text the one that
    was declared first wins.

    `states` are extra sets of tokens that the lexer only uses after a token
    with `enter` set; see `TokenDef`.
    """

    rules: dict[str, Rule]
    tokens: dict[str, TokenDef]
    states: dict[str, list[TokenDef]]
    name: str

    def __init__(
        self,
        rules: typing.Iterable[Rule],
        tokens: typing.Iterable[TokenDef] = (),
        *,
        name: str | None = None,
        states: typing.Mapping[str, typing.Iterable[TokenDef]] | None = None,
    ):
        self.rules = {}
        for r in rules:
            existing = self.rules.get(r.name)
            if existing is not None:
                raise GrammarError(
                    GrammarErrorKind.DUPLICATE_DEFINITION,
                    f"""Found more than one rule named {r.name}:
- {existing.definition_location}
- {r.definition_location}""",
                    r.name,
                )
            self.rules[r.name] = r

        self.tokens = {}
        for t in tokens:
            existing_token = self.tokens.get(t.name)
            if existing_token is not None:
                raise GrammarError(
                    GrammarErrorKind.DUPLICATE_DEFINITION,
                    f"""Found more than one token named {t.name}:
- {existing_token.definition_location}
- {t.definition_location}""",
                    t.name,
                )

            existing_rule = self.rules.get(t.name)
            if existing_rule is not None:
                raise GrammarError(
                    GrammarErrorKind.DUPLICATE_DEFINITION,
                    f"""Found a token and a rule both named {t.name}:
- The rule was defined at {existing_rule.definition_location}
- The token was defined at {t.definition_location}""",
                    t.name,
                )
            self.tokens[t.name] = t

        self.states = {}
        for state_name, state_tokens in (states or {}).items():
            seen: dict[str, TokenDef] = {}
            for t in state_tokens:
                existing_token = seen.get(t.name)
                if existing_token is not None:
                    raise GrammarError(
                        GrammarErrorKind.DUPLICATE_DEFINITION,
                        f"""Found more than one token named {t.name} in lexer state {state_name}:
- {existing_token.definition_location}
- {t.definition_location}""",
                        t.name,
                    )
                seen[t.name] = t
            self.states[state_name] = list(seen.values())

        self.name = name or "grammar"

    @property
    def has_lexer(self) -> bool:
        return len(self.tokens) > 0

    def entry_rules(self) -> list[str]:
        return [name for name, r in self.rules.items() if r.entry]

    def __repr__(self) -> str:
        return f"Grammar({self.name!r}, {len(self.rules)} rules, {len(self.tokens)} tokens)"


###############################################################################
# Sugar for constructing grammars
###############################################################################


def _expression(value: "Expression | str") -> Expression:
    if isinstance(value, str):
        return Literal(value)
    if not isinstance(value, Expression):
        raise TypeError(f"Expected an expression or a string, got {value!r}")
    return value


def _production(value: "Production | Expression | str") -> Production:
    if isinstance(value, Production):
        return value
    return Production((_expression(value),))


def lit(text: str) -> Literal:
    return Literal(text)


def chars(*args: str | tuple[str, str]) -> Class:
    """A character class. Strings contribute each of their characters, and
    tuples are inclusive ranges:

        chars(("a", "z"), ("A", "Z"), "_")
    """
    return Class.from_ranges(*args)


def ref(name: str) -> Reference:
    return Reference(name)


def seq(*args: "Expression | str") -> Expression:
    """A sequence of expressions. Nested sequences are flattened; a sequence
    of one thing is just that thing.
    """
    items: list[Expression] = []
    for a in args:
        e = _expression(a)
        if isinstance(e, Sequence):
            items.extend(e.items)
        else:
            items.append(e)

    if len(items) == 1:
        return items[0]
    return Sequence(tuple(items))


def alt(*args: "Expression | str") -> Expression:
    """An ordered choice between a series of alternatives."""
    alternatives: list[Expression] = []
    for a in args:
        e = _expression(a)
        if isinstance(e, Choice):
            alternatives.extend(e.alternatives)
        else:
            alternatives.append(e)

    if len(alternatives) == 1:
        return alternatives[0]
    return Choice(tuple(alternatives))


def opt(*args: "Expression | str") -> Optional:
    """Mark a sequence as optional."""
    return Optional(seq(*args))


def zero_or_more(*args: "Expression | str") -> Repeat:
    return Repeat(seq(*args), 0)


def one_or_more(*args: "Expression | str") -> Repeat:
    return Repeat(seq(*args), 1)


def bind(name: str, *args: "Expression | str") -> Bind:
    return Bind(name, seq(*args))


def lookahead(*args: "Expression | str") -> And:
    """Succeed without consuming anything if the sequence matches here."""
    return And(seq(*args))


def not_followed_by(*args: "Expression | str") -> Not:
    """Succeed without consuming anything if the sequence does NOT match
    here.
    """
    return Not(seq(*args))


def prod(
    *items: "Expression | str",
    action: "typing.Callable[..., typing.Any] | Action | str | None" = None,
    returns: str | None = None,
) -> Production:
    """Construct a production. `action` can be a callable, an `Action`, or
    the name of an action to be resolved when the grammar is compiled.
    """
    if action is None:
        act = Action(returns=returns) if returns is not None else None
    elif isinstance(action, Action):
        act = action
    elif isinstance(action, str):
        act = Action(name=action, returns=returns)
    else:
        act = Action(fn=action, returns=returns)

    return Production(tuple(_expression(i) for i in items), act)


@typing.overload
def rule(name: str, /, *productions: "Production | Expression | str", **kwargs) -> Rule: ...


@typing.overload
def rule(
    *,
    name: str | None = None,
    type: str | None = None,
    entry: bool = True,
    error_name: str | None = None,
) -> typing.Callable[[typing.Callable[[], typing.Any]], Rule]: ...


def rule(
    name: str | None = None,
    /,
    *productions: "Production | Expression | str",
    **kwargs,
) -> Rule | typing.Callable[[typing.Callable[[], typing.Any]], Rule]:
    """Construct a rule.

    Call it with a name and the productions:

        rule("Digit", prod(chars(("0", "9"))), type="str")

    or use it as a decorator on a function that returns the productions (a
    single production or expression, or a list of them). The rule is named
    after the function unless you say otherwise:

        @rule(type="int")
        def Term():
            return [prod("(", ref("Expr"), ")"), prod(ref("Number"))]
    """
    if name is not None:
        return Rule(name, productions, **kwargs)

    rule_name = kwargs.pop("name", None)

    def wrapper(f: typing.Callable[[], typing.Any]) -> Rule:
        body = f()
        if isinstance(body, (Production, Expression, str)):
            body = [body]
        result = Rule(rule_name or f.__name__, body, **kwargs)
        result.definition_location = f"{f.__code__.co_filename}:{f.__code__.co_firstlineno}"
        return result

    return wrapper


def token(name: str, pattern: "Expression | str", **kwargs) -> TokenDef:
    return TokenDef(name, pattern, **kwargs)
