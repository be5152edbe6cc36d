"""Turning a grammar into a parser.

    parser = compile(grammar, actions={"add": operator.add})
    value = parser.parse("Expr", "1+2+3")

`compile` does all the work that can be done without seeing any input:
resolving references and actions, working out what every production
produces, checking left recursion, and building the lexer if the grammar
has tokens. The result is immutable, so it's fine to keep it around and use
it from as many threads as you like; every call to `parse` gets its own
memo table.
"""

import logging
import typing

from . import capture
from . import grammar as g
from . import leftrec
from . import lexer
from . import runtime


compile_log = logging.getLogger("seedpeg.compile")


class CompiledParser:
    grammar: g.Grammar
    info: capture.CaptureInfo
    left_recursion: leftrec.LeftRecursionInfo
    lexer: lexer.Lexer | None
    program: runtime.Program

    def __init__(
        self,
        grammar: g.Grammar,
        info: capture.CaptureInfo,
        left_recursion: leftrec.LeftRecursionInfo,
        lex: lexer.Lexer | None,
    ):
        self.grammar = grammar
        self.info = info
        self.left_recursion = left_recursion
        self.lexer = lex
        self.program = runtime.Program(grammar, info)

    def parse(
        self,
        rule: str | None,
        input: str | typing.Sequence[runtime.Token],
        *,
        complete: bool = False,
    ) -> typing.Any:
        """Parse the input starting from the named rule, and return whatever
        the rule produces. If `rule` is None then start from the first entry
        rule in the grammar.

        By default the rule only has to match a prefix of the input; pass
        complete=True to insist that it matches all of it.

        Raises ParseError if the input doesn't match. Rules call each other
        recursively, so input that nests deeper than the Python recursion
        limit allows raises a ParseError of kind NESTED_TOO_DEEPLY; if you need
        to go deeper, raise the limit with `sys.setrecursionlimit`.
        """
        if rule is None:
            entries = self.grammar.entry_rules()
            if len(entries) == 0:
                raise ValueError(f"{self.grammar.name} has no entry rules")
            rule = entries[0]

        r = self.grammar.rules.get(rule)
        if r is None:
            raise ValueError(f"{self.grammar.name} has no rule named {rule}")
        if not r.entry:
            raise ValueError(f"{rule} is not an entry rule, so parsing can't start there")

        if self.lexer is not None:
            if isinstance(input, str):
                source: str | None = input
                symbols: str | typing.Sequence[runtime.Token] = self.lexer.tokenize(input)
            else:
                source = None
                symbols = input
        else:
            if not isinstance(input, str):
                raise ValueError(f"{self.grammar.name} has no tokens, so it can only parse text")
            source = input
            symbols = input

        return self.program.parse(rule, symbols, source=source, complete=complete)

    def tokenize(self, text: str) -> list[runtime.Token]:
        if self.lexer is None:
            raise ValueError(f"{self.grammar.name} has no tokens")
        return self.lexer.tokenize(text)

    def rule_type(self, rule: str) -> capture.ResultType:
        return self.info.rules[rule].type

    def recursion(self, rule: str) -> leftrec.Recursion:
        return self.left_recursion.recursion[rule]


def compile(
    grammar: g.Grammar,
    actions: typing.Mapping[str, typing.Callable[..., typing.Any]] | None = None,
) -> CompiledParser:
    """Compile the grammar into a parser, or raise GrammarError if the grammar
    is broken. `actions` supplies the callables for actions that were given
    by name.
    """
    lex = None
    if grammar.has_lexer:
        lex = lexer.Lexer(grammar.tokens.values(), grammar.rules, grammar.states)

    info = capture.analyze(grammar, actions)
    left_recursion = leftrec.LeftRecursionInfo.from_grammar(grammar)

    if compile_log.isEnabledFor(logging.INFO):
        compile_log.info(
            "compiled %s: %d rules, %d tokens, %d left-recursive cycles",
            grammar.name,
            len(grammar.rules),
            len(grammar.tokens),
            len(left_recursion.cycles),
        )
    if compile_log.isEnabledFor(logging.DEBUG):
        for name, plan in info.rules.items():
            compile_log.debug(
                "  %s: %s (%s recursion)",
                name,
                plan.type,
                left_recursion.recursion[name].value,
            )

    return CompiledParser(grammar, info, left_recursion, lex)
