"""Capture analysis: which values does a production keep, and what type is
the result?

Every expression is either loud (significant, its value is kept by whatever
contains it) or silent (it has to match, but nobody cares what it matched).
References to rules and explicit bindings are loud; literals and character
classes are silent. That way

    Term -> int { '(' Expr ')' }

just produces the value of Expr, with no action needed. The one wrinkle is
that a sequence of nothing but silent things keeps all of their values
anyway, since otherwise

    Digit -> str { '0' | '1' }

would produce nothing at all, which is clearly not what anybody meant. (The
sequence itself stays silent, though: promotion doesn't leak upwards.)

Types here are just names. We don't know anything about the host types that
actions produce; we only check that the alternatives of a choice (and the
productions of a rule) agree with each other.
"""

import dataclasses
import typing

from . import grammar as g


###############################################################################
# Result types
###############################################################################


@dataclasses.dataclass(frozen=True)
class UnitType:
    def __str__(self) -> str:
        return "()"


@dataclasses.dataclass(frozen=True)
class Element:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclasses.dataclass(frozen=True)
class TupleType:
    items: tuple["ResultType", ...]

    def __str__(self) -> str:
        return "(" + ", ".join(str(i) for i in self.items) + ")"


@dataclasses.dataclass(frozen=True)
class SequenceType:
    item: "ResultType"

    def __str__(self) -> str:
        return f"[{self.item}]"


@dataclasses.dataclass(frozen=True)
class OptionType:
    item: "ResultType"

    def __str__(self) -> str:
        return f"{self.item}?"


@dataclasses.dataclass(frozen=True)
class UnknownType:
    """The type of an action that didn't say what it returns, in a rule that
    didn't say either. Unifies with anything.
    """

    def __str__(self) -> str:
        return "?"


ResultType = UnitType | Element | TupleType | SequenceType | OptionType | UnknownType

UNIT = UnitType()
UNKNOWN = UnknownType()


def unify(a: ResultType, b: ResultType) -> ResultType | None:
    """Find the type that is both a and b, or None if there isn't one."""
    if isinstance(a, UnknownType):
        return b
    if isinstance(b, UnknownType):
        return a

    match (a, b):
        case (UnitType(), UnitType()):
            return a
        case (Element(name=x), Element(name=y)):
            return a if x == y else None
        case (TupleType(items=xs), TupleType(items=ys)):
            if len(xs) != len(ys):
                return None
            items = []
            for x, y in zip(xs, ys):
                u = unify(x, y)
                if u is None:
                    return None
                items.append(u)
            return TupleType(tuple(items))
        case (SequenceType(item=x), SequenceType(item=y)):
            u = unify(x, y)
            return SequenceType(u) if u is not None else None
        case (OptionType(item=x), OptionType(item=y)):
            u = unify(x, y)
            return OptionType(u) if u is not None else None
        case _:
            return None


def combine(types: list[ResultType]) -> ResultType:
    """The type of a bunch of kept values: nothing, one thing, or a tuple."""
    if len(types) == 0:
        return UNIT
    if len(types) == 1:
        return types[0]
    return TupleType(tuple(types))


###############################################################################
# The analysis
###############################################################################


@dataclasses.dataclass(frozen=True)
class Capture:
    """What we figured out about one expression.

    `keep` is only interesting for sequences: keep[i] is True if the value of
    the i'th item is part of the sequence's value.
    """

    significant: bool
    type: ResultType
    keep: tuple[bool, ...] = ()


class Binding(typing.NamedTuple):
    """A name the action gets called with. `index` is the production item the
    value comes out of, and `get` digs the value out of that item's value,
    for binds that sit inside optionals, repeats or nested sequences.
    """

    index: int
    name: str
    get: typing.Callable[[typing.Any], typing.Any]


@dataclasses.dataclass(frozen=True)
class ProductionPlan:
    """A production, ready to run.

    `items` are the production's expressions with nested sequences inlined.
    `bindings` are the names the action sees, in the order they appear.
    """

    items: tuple[g.Expression, ...]
    keep: tuple[bool, ...]
    bindings: tuple[Binding, ...]
    action: typing.Callable[..., typing.Any] | None
    type: ResultType

    def value(self, values: list[typing.Any]) -> typing.Any:
        if self.action is None:
            return self.collect(values)
        if len(self.bindings) > 0:
            return self.action(**{b.name: b.get(values[b.index]) for b in self.bindings})
        return self.action(self.collect(values))

    def collect(self, values: list[typing.Any]) -> typing.Any:
        kept = [v for v, k in zip(values, self.keep) if k]
        if len(kept) == 0:
            return None
        if len(kept) == 1:
            return kept[0]
        return tuple(kept)


@dataclasses.dataclass(frozen=True)
class RulePlan:
    name: str
    type: ResultType
    productions: tuple[ProductionPlan, ...]


@dataclasses.dataclass
class CaptureInfo:
    rules: dict[str, RulePlan]
    captures: dict[g.Expression, Capture]


def _identity(value: typing.Any) -> typing.Any:
    return value


def _when_present(get: typing.Callable[[typing.Any], typing.Any]):
    return lambda value: None if value is None else get(value)


def _each(get: typing.Callable[[typing.Any], typing.Any]):
    return lambda value: [get(v) for v in value]


def _slot(slot: int, get: typing.Callable[[typing.Any], typing.Any]):
    return lambda value: get(value[slot])


def _contains_bind(expr: g.Expression) -> bool:
    match expr:
        case g.Bind():
            return True
        case g.Sequence(items=items):
            return any(_contains_bind(i) for i in items)
        case g.Choice(alternatives=alternatives):
            return any(_contains_bind(a) for a in alternatives)
        case g.Optional(item=item) | g.Repeat(item=item) | g.And(item=item) | g.Not(item=item):
            return _contains_bind(item)
        case _:
            return False


def _flatten(items: typing.Iterable[g.Expression]) -> list[g.Expression]:
    result = []
    for item in items:
        if isinstance(item, g.Sequence):
            result.extend(_flatten(item.items))
        else:
            result.append(item)
    return result


def _keep_mask(children: list[Capture]) -> tuple[bool, tuple[bool, ...]]:
    """Decide which children of a sequence are kept. Returns whether the
    sequence is significant along with the mask.
    """
    loud = tuple(c.significant for c in children)
    if any(loud):
        return (True, loud)

    # Nothing is loud, so promote everything that has a value.
    return (False, tuple(not isinstance(c.type, UnitType) for c in children))


class CaptureAnalyzer:
    """Walks a grammar and works out the loud/silent status and type of
    everything in it, and builds a `RulePlan` for every rule.

    A rule without a declared type that refers to itself (directly or not)
    needs its own type to work out its own type. The first time around, the
    inner references get `UNKNOWN`; if that turns out to be wrong, we go
    around again, this time with what we got last time as the guess, until
    the guesses stop changing.
    """

    grammar: g.Grammar
    actions: typing.Mapping[str, typing.Callable[..., typing.Any]]
    terminal: Element
    captures: dict[g.Expression, Capture]
    plans: dict[str, RulePlan]

    _inferring: list[str]
    _guesses: dict[str, ResultType]
    _guessed: set[str]

    def __init__(
        self,
        grammar: g.Grammar,
        actions: typing.Mapping[str, typing.Callable[..., typing.Any]] | None = None,
    ):
        self.grammar = grammar
        self.actions = actions or {}
        self.terminal = Element("Token" if grammar.has_lexer else "str")
        self.captures = {}
        self.plans = {}
        self._inferring = []
        self._guesses = {}
        self._guessed = set()

    def analyze(self) -> CaptureInfo:
        for _ in range(len(self.grammar.rules) + 1):
            self._guessed = set()
            for name in self.grammar.rules:
                self.rule_plan(name)

            wrong = sorted(
                name
                for name in self._guessed
                if self._guesses.get(name, UNKNOWN) != self.plans[name].type
            )
            if len(wrong) == 0:
                return CaptureInfo(rules=dict(self.plans), captures=dict(self.captures))

            self._guesses = {name: plan.type for name, plan in self.plans.items()}
            self.plans = {}
            self.captures = {}

        name = wrong[0]
        raise g.GrammarError(
            g.GrammarErrorKind.TYPE_MISMATCH,
            f"The type of {name} keeps growing every time it refers to itself "
            f"(last seen as {self._guesses[name]}); give it a type",
            name,
        )

    def _error(self, kind: g.GrammarErrorKind, message: str) -> g.GrammarError:
        current = self._inferring[-1] if len(self._inferring) > 0 else None
        return g.GrammarError(kind, message, current)

    def reference_type(self, name: str) -> ResultType:
        rule = self.grammar.rules.get(name)
        if rule is None:
            token = self.grammar.tokens.get(name)
            if token is not None:
                if token.type is not None:
                    return Element(token.type)
                if token.has_value:
                    return UNKNOWN
                return Element("Token")
            raise self._error(
                g.GrammarErrorKind.UNRESOLVED_REFERENCE,
                f"Reference to {name}, which is not a rule or a token",
            )

        if rule.type is not None:
            return Element(rule.type)
        if name in self._inferring:
            self._guessed.add(name)
            return self._guesses.get(name, UNKNOWN)
        return self.rule_plan(name).type

    def rule_plan(self, name: str) -> RulePlan:
        plan = self.plans.get(name)
        if plan is not None:
            return plan

        rule = self.grammar.rules[name]
        self._inferring.append(name)
        try:
            productions = tuple(self.production_plan(rule, p) for p in rule.productions)

            result: ResultType | None = None
            for p in productions:
                if result is None:
                    result = p.type
                    continue
                unified = unify(result, p.type)
                if unified is None:
                    raise self._error(
                        g.GrammarErrorKind.TYPE_MISMATCH,
                        f"Productions of {name} produce different types: {result} and {p.type}",
                    )
                result = unified

            if rule.type is not None:
                declared = Element(rule.type)
                if result is not None and unify(declared, result) is None:
                    raise self._error(
                        g.GrammarErrorKind.TYPE_MISMATCH,
                        f"{name} is declared to produce {rule.type}, but it produces {result}",
                    )
                result = declared
        finally:
            self._inferring.pop()

        plan = RulePlan(name=name, type=result if result is not None else UNIT, productions=productions)
        self.plans[name] = plan
        return plan

    def production_plan(self, rule: g.Rule, production: g.Production) -> ProductionPlan:
        items = _flatten(production.items)
        children = [self.capture(item) for item in items]
        _, keep = _keep_mask(children)

        bindings: list[Binding] = []
        seen: set[str] = set()
        for index, item in enumerate(items):
            for name, get in self.binding_paths(item):
                if name in seen:
                    raise self._error(
                        g.GrammarErrorKind.DUPLICATE_BINDING,
                        f"The name {name} is bound more than once in `{production}`",
                    )
                seen.add(name)
                bindings.append(Binding(index, name, get))

        fn = None
        if production.action is not None:
            fn = self.resolve_action(production.action)
            if production.action.returns is not None:
                ptype: ResultType = Element(production.action.returns)
            elif rule.type is not None:
                ptype = Element(rule.type)
            else:
                ptype = UNKNOWN
        else:
            ptype = combine([c.type for c, k in zip(children, keep) if k])

        return ProductionPlan(
            items=tuple(items),
            keep=keep,
            bindings=tuple(bindings),
            action=fn,
            type=ptype,
        )

    def binding_paths(
        self, expr: g.Expression
    ) -> list[tuple[str, typing.Callable[[typing.Any], typing.Any]]]:
        """Find the binds in an expression, along with how to get each bound
        value out of the expression's value. A bind under an optional is None
        when the optional didn't match, and a bind under a repeat is a list
        with one value for each time around.
        """
        match expr:
            case g.Bind(name=name, item=item):
                return [(name, _identity)] + self.binding_paths(item)

            case g.Optional(item=item):
                return [(name, _when_present(get)) for name, get in self.binding_paths(item)]

            case g.Repeat(item=item):
                return [(name, _each(get)) for name, get in self.binding_paths(item)]

            case g.Sequence(items=items):
                # Anything with a bind in it is loud, so it's always kept.
                slots = [i for i, k in enumerate(self.capture(expr).keep) if k]
                paths = []
                for index, item in enumerate(items):
                    for name, get in self.binding_paths(item):
                        if len(slots) > 1:
                            get = _slot(slots.index(index), get)
                        paths.append((name, get))
                return paths

            case g.Choice() | g.And() | g.Not():
                if _contains_bind(expr):
                    raise self._error(
                        g.GrammarErrorKind.MISPLACED_BINDING,
                        f"`{expr}` has a bind inside it, but there's no telling whether "
                        "that part matched; bind the whole thing instead",
                    )
                return []

            case _:
                return []

    def resolve_action(self, action: g.Action) -> typing.Callable[..., typing.Any] | None:
        if action.fn is not None:
            return action.fn
        if action.name is None:
            return None

        fn = self.actions.get(action.name)
        if fn is None:
            raise self._error(
                g.GrammarErrorKind.UNRESOLVED_ACTION,
                f"No action named {action.name} was provided",
            )
        return fn

    def capture(self, expr: g.Expression) -> Capture:
        existing = self.captures.get(expr)
        if existing is not None:
            return existing

        result = self._capture(expr)
        self.captures[expr] = result
        return result

    def _capture(self, expr: g.Expression) -> Capture:
        match expr:
            case g.Literal() | g.Class():
                return Capture(False, self.terminal)

            case g.Reference(name=name):
                return Capture(True, self.reference_type(name))

            case g.Bind(item=item):
                return Capture(True, self.capture(item).type)

            case g.Sequence(items=items):
                children = [self.capture(i) for i in items]
                significant, keep = _keep_mask(children)
                kept = [c.type for c, k in zip(children, keep) if k]
                return Capture(significant, combine(kept), keep)

            case g.Choice(alternatives=alternatives):
                children = [self.capture(a) for a in alternatives]
                result = children[0].type
                for alternative, child in zip(alternatives[1:], children[1:]):
                    unified = unify(result, child.type)
                    if unified is None:
                        raise self._error(
                            g.GrammarErrorKind.TYPE_MISMATCH,
                            f"Alternatives of {expr} produce different types: "
                            f"{result}, but {alternative} produces {child.type}",
                        )
                    result = unified
                return Capture(any(c.significant for c in children), result)

            case g.Optional(item=item):
                child = self.capture(item)
                if isinstance(child.type, UnitType):
                    return Capture(child.significant, UNIT)
                return Capture(child.significant, OptionType(child.type))

            case g.Repeat(item=item):
                child = self.capture(item)
                if isinstance(child.type, UnitType):
                    return Capture(child.significant, UNIT)
                return Capture(child.significant, SequenceType(child.type))

            case g.And() | g.Not():
                self.capture(expr.item)
                return Capture(False, UNIT)

            case _:
                raise TypeError(f"Unknown expression {expr!r}")


def analyze(
    grammar: g.Grammar,
    actions: typing.Mapping[str, typing.Callable[..., typing.Any]] | None = None,
) -> CaptureInfo:
    return CaptureAnalyzer(grammar, actions).analyze()
