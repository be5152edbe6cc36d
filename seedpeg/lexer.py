"""The lexer generator.

Token patterns are regular expressions written with the same expression
types as the rest of the grammar. We turn each of them into an NFA (the
usual Thompson construction), hang them all off of one start state, and then
convert the whole thing into a DFA by tracking sets of NFA states. The
transitions are over spans of code points rather than individual characters,
since otherwise `Class.any()` would make for a very large table.

At runtime we run the DFA as far as it will go and take the longest prefix
that ended in an accepting state (maximal munch). When a DFA state accepts
more than one token, the one that was declared first wins; that's how
keywords beat identifiers, as long as you declare them first.

A token can also switch into a lexer state: a separate set of tokens with its
own DFA, used until one of its tokens says to leave. String literals are the
usual reason; inside the quotes, escapes and plain characters are tokens of
their own, and their values get glued together into the string.
"""

import bisect
import logging
import typing

from . import grammar as g
from . import runtime


lexer_log = logging.getLogger("seedpeg.lexer")


ET = typing.TypeVar("ET")


class EdgeList(typing.Generic[ET]):
    """A list of edge transitions, keyed by *span*."""

    _edges: list[tuple[g.Span, list[ET]]]

    def __init__(self):
        self._edges = []

    def __iter__(self) -> typing.Iterator[tuple[g.Span, list[ET]]]:
        return iter(self._edges)

    def __repr__(self) -> str:
        return f"EdgeList[{','.join(str(s[0]) + '->' + repr(s[1]) for s in self._edges)}]"

    def add_edge(self, c: g.Span, s: ET):
        """Add an edge for the given span to the list. If there are already
        spans that overlap this one, split them up so that every span in the
        list is distinct, and the overlapping parts go to all the targets.
        """
        our_targets = [s]

        # Find the lowest upper bound that is greater than the lower bound of
        # the incoming span; nothing before that can overlap.
        point = bisect.bisect_right(self._edges, c.lower, key=lambda x: x[0].upper)

        # We keep splitting against the *lowest* overlapping span, so this
        # might take a few trips around.
        next_span: g.Span | None = c
        while next_span is not None:
            c = next_span
            next_span = None

            if point == len(self._edges):
                self._edges.insert(point, (c, [s]))
                return

            right_span, right_targets = self._edges[point]
            if not c.intersects(right_span):
                # Fits entirely before the next span.
                self._edges.insert(point, (c, [s]))
                return

            del self._edges[point]
            lo, mid, hi = c.split(right_span)

            if lo is not None:
                # lo belongs to exactly one of the two.
                targets = right_targets if lo.intersects(right_span) else our_targets
                self._edges.insert(point, (lo, targets))
                point += 1

            if mid is not None:
                self._edges.insert(point, (mid, right_targets + our_targets))
                point += 1

            if hi is not None:
                if hi.intersects(right_span):
                    self._edges.insert(point, (hi, right_targets))
                else:
                    # The rest of the incoming span might overlap more spans
                    # further up, so go around again with just that part.
                    next_span = hi


class NFAState:
    """An NFA state. A state is an accept state if it has the index of a
    token associated with it.
    """

    accept: int | None
    epsilons: list["NFAState"]
    _edges: EdgeList["NFAState"]

    def __init__(self):
        self.accept = None
        self.epsilons = []
        self._edges = EdgeList()

    def __repr__(self):
        return f"State{id(self)}"

    def edges(self) -> typing.Iterable[tuple[g.Span, list["NFAState"]]]:
        return self._edges

    def add_edge(self, c: g.Span, s: "NFAState") -> "NFAState":
        self._edges.add_edge(c, s)
        return s


class NFASuperState:
    """A set of NFA states, closed over epsilon transitions. One of these is
    one state in the DFA.
    """

    states: frozenset[NFAState]

    def __init__(self, states: typing.Iterable[NFAState]):
        stack = list(states)
        result = set()
        while len(stack) > 0:
            st = stack.pop()
            if st in result:
                continue
            result.add(st)
            stack.extend(st.epsilons)

        self.states = frozenset(result)

    def __eq__(self, other):
        if not isinstance(other, NFASuperState):
            return False
        return self.states == other.states

    def __hash__(self) -> int:
        return hash(self.states)

    def edges(self) -> list[tuple[g.Span, "NFASuperState"]]:
        working: EdgeList[list[NFAState]] = EdgeList()
        for st in self.states:
            for span, targets in st.edges():
                working.add_edge(span, targets)

        result = []
        for span, stateses in working:
            s: list[NFAState] = []
            for states in stateses:
                s.extend(states)
            result.append((span, NFASuperState(s)))

        return result

    def accept_token(self) -> int | None:
        """The earliest-declared token accepted by any state in here."""
        accepts = [st.accept for st in self.states if st.accept is not None]
        if len(accepts) == 0:
            return None
        return min(accepts)


# Each entry is (accepted token index, [(span, target state)]), with the
# edges sorted by span. State 0 is the start state.
LexerTable = list[tuple[int | None, list[tuple[g.Span, int]]]]


class _PatternBuilder:
    """Turns token patterns into NFA fragments, inlining references to
    other tokens.
    """

    def __init__(self, tokens: typing.Mapping[str, g.TokenDef], rules: typing.Container[str]):
        self.tokens = tokens
        self.rules = rules
        self.active: list[str] = []

    def build(self, token: g.TokenDef) -> tuple[NFAState, list[NFAState]]:
        self.active = [token.name]
        return self.to_nfa(token.pattern)

    def invalid(self, message: str) -> g.GrammarError:
        return g.GrammarError(g.GrammarErrorKind.INVALID_TOKEN, message, self.active[0])

    def to_nfa(self, expr: g.Expression) -> tuple[NFAState, list[NFAState]]:
        match expr:
            case g.Literal(text=text):
                start = end = NFAState()
                for c in text:
                    end = end.add_edge(g.Span.from_str(c), NFAState())
                return (start, [end])

            case g.Class(spans=spans):
                start = NFAState()
                end = NFAState()
                for span in spans:
                    start.add_edge(span, end)
                return (start, [end])

            case g.Sequence(items=items):
                start = NFAState()
                ends = [start]
                for item in items:
                    item_start, item_ends = self.to_nfa(item)
                    for end in ends:
                        end.epsilons.append(item_start)
                    ends = item_ends
                return (start, ends)

            case g.Choice(alternatives=alternatives):
                start = NFAState()
                ends = []
                for alternative in alternatives:
                    alt_start, alt_ends = self.to_nfa(alternative)
                    start.epsilons.append(alt_start)
                    ends.extend(alt_ends)
                return (start, ends)

            case g.Optional(item=item):
                start = NFAState()
                child_start, ends = self.to_nfa(item)
                start.epsilons.append(child_start)
                return (start, ends + [start])

            case g.Repeat(item=item, minimum=0):
                start = NFAState()
                child_start, ends = self.to_nfa(item)
                start.epsilons.append(child_start)
                for end in ends:
                    end.epsilons.append(start)
                return (start, [start])

            case g.Repeat(item=item):
                start, ends = self.to_nfa(item)
                end = NFAState()
                for e in ends:
                    e.epsilons.append(end)
                end.epsilons.append(start)
                return (start, [end])

            case g.Bind(item=item):
                return self.to_nfa(item)

            case g.Reference(name=name):
                other = self.tokens.get(name)
                if other is None:
                    if name in self.rules:
                        raise self.invalid(f"Token patterns can't refer to the rule {name}")
                    raise g.GrammarError(
                        g.GrammarErrorKind.UNRESOLVED_REFERENCE,
                        f"Reference to {name}, which is not a token",
                        self.active[0],
                    )
                if name in self.active:
                    raise self.invalid(
                        f"Token patterns can't be recursive: {' -> '.join(self.active + [name])}"
                    )
                self.active.append(name)
                try:
                    return self.to_nfa(other.pattern)
                finally:
                    self.active.pop()

            case g.And() | g.Not():
                raise self.invalid(f"Token patterns can't use lookahead: {expr}")

            case _:
                raise TypeError(f"Unknown expression {expr!r}")


def compile_lexer(
    tokens: typing.Sequence[g.TokenDef],
    rules: typing.Container[str] = (),
) -> LexerTable:
    """Construct a lexer table for the given tokens, in priority order."""
    builder = _PatternBuilder({t.name: t for t in tokens}, rules)

    # All the token patterns together make one big NFA rooted at `NFA`.
    NFA = NFAState()
    for index, token in enumerate(tokens):
        start, ends = builder.build(token)
        if not NFASuperState([start]).states.isdisjoint(ends):
            raise g.GrammarError(
                g.GrammarErrorKind.INVALID_TOKEN,
                f"The pattern for {token.name} matches the empty string "
                f"(defined at {token.definition_location})",
                token.name,
            )
        for end in ends:
            end.accept = index
        NFA.epsilons.append(start)

    # Convert the NFA into a DFA in the most straightforward way (by tracking
    # sets of state closures, called SuperStates.)
    DFA: dict[NFASuperState, tuple[int, list[tuple[g.Span, NFASuperState]]]] = {}

    stack = [NFASuperState([NFA])]
    while len(stack) > 0:
        ss = stack.pop()
        if ss in DFA:
            continue

        edges = ss.edges()

        DFA[ss] = (len(DFA), edges)
        for _, target in edges:
            stack.append(target)

    return [
        (
            ss.accept_token(),
            [(k, DFA[v][0]) for k, v in edges],
        )
        for ss, (_, edges) in DFA.items()
    ]


class Lexer:
    """A compiled set of tokens.

    `states` holds a lexer for each named lexer state in the grammar. They
    are all compiled up front, and they all share the same dict, so a state
    can enter other states (or itself).
    """

    tokens: list[g.TokenDef]
    table: LexerTable
    states: dict[str, "Lexer"]
    state: str | None

    def __init__(
        self,
        tokens: typing.Iterable[g.TokenDef],
        rules: typing.Container[str] = (),
        states: typing.Mapping[str, typing.Iterable[g.TokenDef]] | None = None,
        *,
        state: str | None = None,
    ):
        self.tokens = list(tokens)
        self.state = state
        self.table = compile_lexer(self.tokens, rules)
        if lexer_log.isEnabledFor(logging.INFO):
            lexer_log.info(
                "compiled %d tokens into %d states%s",
                len(self.tokens),
                len(self.table),
                f" for lexer state {state}" if state is not None else "",
            )

        self.states = {}
        if states is not None:
            for name, defs in states.items():
                self.states[name] = Lexer(defs, rules, state=name)
            for sub in self.states.values():
                sub.states = self.states
            for sub in self.states.values():
                sub._check_states()
        if state is None:
            self._check_states()

    def _check_states(self):
        for token in self.tokens:
            if token.enter is not None and token.enter not in self.states:
                raise g.GrammarError(
                    g.GrammarErrorKind.UNRESOLVED_REFERENCE,
                    f"{token.name} enters the lexer state {token.enter}, which doesn't exist",
                    token.name,
                )
            if token.leave and self.state is None:
                raise g.GrammarError(
                    g.GrammarErrorKind.INVALID_TOKEN,
                    f"{token.name} leaves a lexer state, but it isn't in one",
                    token.name,
                )

        if self.state is not None and not any(t.leave for t in self.tokens):
            raise g.GrammarError(
                g.GrammarErrorKind.INVALID_TOKEN,
                f"Nothing ever leaves the lexer state {self.state}",
                self.state,
            )

    def next_token(self, text: str, offset: int) -> tuple[g.TokenDef, int] | None:
        """Find the longest token at `offset`. Returns the token and the
        offset of its end, or None if nothing matches.
        """
        pos = offset
        state: int | None = 0
        last_accept = None
        last_accept_pos = offset

        while state is not None:
            accept, edges = self.table[state]
            if accept is not None:
                last_accept = accept
                last_accept_pos = pos

            if pos >= len(text):
                break

            char = ord(text[pos])

            # Find the index of the span where the upper value is the tightest
            # bound on the character.
            state = None
            index = bisect.bisect_right(edges, char, key=lambda x: x[0].upper)
            if index < len(edges):
                span, target = edges[index]
                if char >= span.lower:
                    state = target
                    pos += 1

        if last_accept is None:
            return None
        return (self.tokens[last_accept], last_accept_pos)

    def tokenize(self, text: str) -> list[runtime.Token]:
        """Split the text into tokens, dropping the ones marked `skip`.
        Raises a ParseError if there's something that isn't any token.
        """
        result = []
        lines: list[int] = []
        pos = 0
        while pos < len(text):
            token, end, value = self._match(text, pos, len(result), lines)
            if not token.skip:
                result.append(runtime.Token(token.name, text[pos:end], pos, end, value))
            pos = end

        return result

    def _match(
        self,
        text: str,
        pos: int,
        index: int,
        lines: list[int],
    ) -> tuple[g.TokenDef, int, typing.Any]:
        """Match one token at `pos`, including anything it does in the lexer
        state it enters. Returns the token, where it ends, and its value.
        """
        match = self.next_token(text, pos)
        if match is None:
            raise self._error(text, pos, index, lines)

        token, end = match
        if lexer_log.isEnabledFor(logging.DEBUG):
            lexer_log.debug("%s %r at %d", token.name, text[pos:end], pos)

        if token.enter is not None:
            parts, end = self.states[token.enter]._run(text, end, index, lines)
            value = token.action(parts) if token.action is not None else parts
        elif token.action is not None:
            value = token.action(text[pos:end])
        else:
            value = None
        return (token, end, value)

    def _run(
        self,
        text: str,
        pos: int,
        index: int,
        lines: list[int],
    ) -> tuple[list[typing.Any], int]:
        """Lex in this state until a token leaves it. Returns the values of
        everything matched along the way, and where the state ended.
        """
        parts = []
        while True:
            token, end, value = self._match(text, pos, index, lines)
            if token.leave:
                return (parts, end)
            if not token.skip:
                parts.append(value if token.has_value else text[pos:end])
            pos = end

    def _error(self, text: str, pos: int, index: int, lines: list[int]) -> runtime.ParseError:
        if len(lines) == 0:
            lines.extend(runtime.newlines(text))

        expected = [t.error_name or t.name for t in self.tokens if not t.skip]
        if pos >= len(text):
            return runtime.ParseError(
                runtime.ErrorKind.LEXICAL_ERROR,
                runtime.locate(index, pos, lines),
                expected,
                found="end of input",
            )
        return runtime.ParseError(
            runtime.ErrorKind.LEXICAL_ERROR,
            runtime.locate(index, pos, lines),
            expected,
            found=repr(text[pos]),
        )
