"""Left recursion analysis.

PEG parsers don't like left recursion: `Expr -> Expr '+' Term` calls
itself at the same position forever. seedpeg handles it at runtime by
growing a seed (see `seedpeg.runtime`), but we still need to know some
things about the grammar ahead of time:

  - which rules are left-recursive at all, and whether it is direct
    (Expr calls Expr) or indirect (Expr calls Foo calls Expr), which is
    mostly for diagnostics;

  - whether every left-recursive cycle has some way to get started. A rule
    like `A -> A 'x'` can never match anything, since every way of matching
    it starts by matching it. Seed growing can't help, so we reject those
    grammars up front rather than quietly failing every parse.

Everything here is computed over the "left calls" of a rule: the rules it can
invoke before consuming any input. Finding those needs to know which rules
can match the empty string, and that (like FIRST sets in an LR generator) is
computed by iterating to a fixed point.
"""

import dataclasses
import enum
import typing

from . import grammar as g


class Recursion(enum.Enum):
    NONE = "none"
    DIRECT = "direct"
    INDIRECT = "indirect"


def is_nullable(expr: g.Expression, nullable: typing.Mapping[str, bool]) -> bool:
    """Can this expression match without consuming anything? `nullable` is
    the current guess for every rule; references to anything else (tokens)
    are never nullable.
    """
    match expr:
        case g.Literal(text=text):
            return len(text) == 0
        case g.Class():
            return False
        case g.Reference(name=name):
            return nullable.get(name, False)
        case g.Sequence(items=items):
            return all(is_nullable(i, nullable) for i in items)
        case g.Choice(alternatives=alternatives):
            return any(is_nullable(a, nullable) for a in alternatives)
        case g.Optional() | g.And() | g.Not():
            return True
        case g.Repeat(item=item, minimum=minimum):
            return minimum == 0 or is_nullable(item, nullable)
        case g.Bind(item=item):
            return is_nullable(item, nullable)
        case _:
            raise TypeError(f"Unknown expression {expr!r}")


def left_calls(
    expr: g.Expression,
    nullable: typing.Mapping[str, bool],
    rules: typing.Container[str],
) -> set[str]:
    """The rules this expression can call before it consumes any input."""
    match expr:
        case g.Literal() | g.Class():
            return set()
        case g.Reference(name=name):
            return {name} if name in rules else set()
        case g.Sequence(items=items):
            result: set[str] = set()
            for item in items:
                result |= left_calls(item, nullable, rules)
                if not is_nullable(item, nullable):
                    break
            return result
        case g.Choice(alternatives=alternatives):
            result = set()
            for alternative in alternatives:
                result |= left_calls(alternative, nullable, rules)
            return result
        case g.Optional(item=item) | g.Repeat(item=item) | g.Bind(item=item):
            return left_calls(item, nullable, rules)
        case g.And(item=item) | g.Not(item=item):
            return left_calls(item, nullable, rules)
        case _:
            raise TypeError(f"Unknown expression {expr!r}")


def _body(rule: g.Rule) -> g.Expression:
    """A rule as a single expression, so the helpers above can chew on it."""
    return g.Choice(tuple(g.Sequence(p.items) for p in rule.productions))


def compute_nullable(grammar: g.Grammar) -> dict[str, bool]:
    nullable = {name: False for name in grammar.rules}
    bodies = {name: _body(rule) for name, rule in grammar.rules.items()}

    changed = True
    while changed:
        changed = False
        for name, body in bodies.items():
            if not nullable[name] and is_nullable(body, nullable):
                nullable[name] = True
                changed = True

    return nullable


def strongly_connected(graph: typing.Mapping[str, typing.Iterable[str]]) -> list[list[str]]:
    """Tarjan's algorithm. Components come out in reverse topological order,
    members in the order we found them.
    """
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    result: list[list[str]] = []

    def visit(node: str):
        index[node] = lowlink[node] = len(index)
        stack.append(node)
        on_stack.add(node)

        for target in graph.get(node, ()):
            if target not in index:
                visit(target)
                lowlink[node] = min(lowlink[node], lowlink[target])
            elif target in on_stack:
                lowlink[node] = min(lowlink[node], index[target])

        if lowlink[node] == index[node]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            component.reverse()
            result.append(component)

    for node in graph:
        if node not in index:
            visit(node)

    return result


def _seedable(
    expr: g.Expression,
    seedable: typing.Mapping[str, bool],
    nullable: typing.Mapping[str, bool],
) -> bool:
    """Can this expression succeed without first succeeding at a
    left-recursive call that is still looking for its seed? References to
    rules outside any cycle count as fine: whether they match is not our
    problem here.
    """
    match expr:
        case g.Literal() | g.Class():
            return True
        case g.Reference(name=name):
            return seedable.get(name, True)
        case g.Sequence(items=items):
            for item in items:
                if not _seedable(item, seedable, nullable):
                    return False
                if not is_nullable(item, nullable):
                    return True
            return True
        case g.Choice(alternatives=alternatives):
            return any(_seedable(a, seedable, nullable) for a in alternatives)
        case g.Optional() | g.Not():
            return True
        case g.Repeat(item=item, minimum=minimum):
            return minimum == 0 or _seedable(item, seedable, nullable)
        case g.Bind(item=item) | g.And(item=item):
            return _seedable(item, seedable, nullable)
        case _:
            raise TypeError(f"Unknown expression {expr!r}")


@dataclasses.dataclass(frozen=True)
class LeftRecursionInfo:
    """Everything we know about left recursion in a grammar.

    recursion[r] says how rule r is left-recursive, if at all.

    cycles is the list of left-recursive cycles: sets of rules that can all
    reach each other through left calls.

    calls[r] is the set of rules that r can call before consuming any
    input.
    """

    recursion: dict[str, Recursion]
    cycles: list[frozenset[str]]
    nullable: dict[str, bool]
    calls: dict[str, frozenset[str]]

    @classmethod
    def from_grammar(cls, grammar: g.Grammar) -> "LeftRecursionInfo":
        """Analyze the grammar, raising a GrammarError if some left-recursive
        rule has no base case.
        """
        nullable = compute_nullable(grammar)
        bodies = {name: _body(rule) for name, rule in grammar.rules.items()}
        calls = {name: left_calls(body, nullable, grammar.rules) for name, body in bodies.items()}

        recursion: dict[str, Recursion] = {}
        cycles: list[frozenset[str]] = []
        for component in strongly_connected(calls):
            if len(component) == 1 and component[0] not in calls[component[0]]:
                recursion[component[0]] = Recursion.NONE
                continue

            cycles.append(frozenset(component))
            for name in component:
                if name in calls[name]:
                    recursion[name] = Recursion.DIRECT
                else:
                    recursion[name] = Recursion.INDIRECT

        # Every rule in a cycle starts out unable to make a seed, and we keep
        # finding ways to make one until nothing changes.
        seedable = {name: False for cycle in cycles for name in cycle}
        changed = True
        while changed:
            changed = False
            for name in seedable:
                if not seedable[name] and _seedable(bodies[name], seedable, nullable):
                    seedable[name] = True
                    changed = True

        for cycle in cycles:
            stuck = [name for name in grammar.rules if name in cycle and not seedable[name]]
            if len(stuck) > 0:
                members = ", ".join(name for name in grammar.rules if name in cycle)
                raise g.GrammarError(
                    g.GrammarErrorKind.NO_BASE_CASE,
                    f"{stuck[0]} is left-recursive but every way of matching it starts "
                    f"by calling back into {members}, so it can never match anything",
                    stuck[0],
                )

        return LeftRecursionInfo(
            recursion={name: recursion[name] for name in grammar.rules},
            cycles=cycles,
            nullable=nullable,
            calls={name: frozenset(c) for name, c in calls.items()},
        )

    def is_left_recursive(self, name: str) -> bool:
        return self.recursion[name] != Recursion.NONE
