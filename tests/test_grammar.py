import pytest

from hypothesis import given
from hypothesis.strategies import characters

from seedpeg import (
    Action,
    Bind,
    Choice,
    Class,
    Grammar,
    GrammarError,
    GrammarErrorKind,
    Literal,
    Optional,
    Production,
    Reference,
    Repeat,
    Rule,
    Sequence,
    Span,
    TokenDef,
    alt,
    bind,
    chars,
    lit,
    one_or_more,
    opt,
    prod,
    ref,
    rule,
    seq,
    zero_or_more,
)


def test_strings_become_literals():
    assert seq("a", ref("B")) == Sequence((Literal("a"), Reference("B")))
    assert alt("a", "b") == Choice((Literal("a"), Literal("b")))
    assert prod("(", ref("Expr"), ")").items == (Literal("("), Reference("Expr"), Literal(")"))


def test_operators():
    a = lit("a")
    b = ref("b")
    assert a + b == Sequence((a, b))
    assert a | b == Choice((a, b))
    assert "x" + b == Sequence((Literal("x"), b))
    assert a | "y" | "z" == Choice((a, Literal("y"), Literal("z")))
    assert a.plus() == Repeat(a, 1)
    assert a.star() == Repeat(a, 0)
    assert a.question() == Optional(a)


def test_sequences_flatten():
    assert seq(seq("a", "b"), "c") == Sequence((Literal("a"), Literal("b"), Literal("c")))
    assert seq("a") == Literal("a")


def test_sugar():
    assert opt("a", "b") == Optional(Sequence((Literal("a"), Literal("b"))))
    assert zero_or_more("a") == Repeat(Literal("a"), 0)
    assert one_or_more(ref("x")) == Repeat(Reference("x"), 1)
    assert bind("lhs", ref("Expr")) == Bind("lhs", Reference("Expr"))


def test_repeat_minimum_is_zero_or_one():
    with pytest.raises(ValueError):
        Repeat(lit("a"), 2)


def test_expressions_are_hashable():
    seen = {seq("a", ref("B")), seq("a", ref("B")), chars(("0", "9"))}
    assert len(seen) == 2


def test_class_ranges():
    digits = chars(("0", "9"))
    assert digits.spans == (Span.from_str("0", "9"),)
    assert digits.contains("0")
    assert digits.contains("9")
    assert not digits.contains("a")
    assert str(digits) == "[0-9]"


def test_class_merges_spans():
    cls = Class.from_ranges(("a", "f"), ("c", "z"), "0")
    assert cls.spans == (Span(ord("0"), ord("0") + 1), Span(ord("a"), ord("z") + 1))


@given(characters())
def test_class_inversion(c: str):
    vowels = chars("aeiou")
    assert vowels.contains(c) != (~vowels).contains(c)
    assert Class.any().contains(c)


def test_prod_actions():
    def add(lhs, rhs):
        return lhs + rhs

    assert prod("a").action is None
    assert prod("a", action=add).action == Action(fn=add)
    assert prod("a", action="add", returns="int").action == Action(name="add", returns="int")


def test_rule_from_productions():
    r = rule("Digit", prod("0"), "1", type="str")
    assert r.name == "Digit"
    assert r.type == "str"
    assert r.entry
    assert r.productions == (
        Production((Literal("0"),)),
        Production((Literal("1"),)),
    )
    assert "test_grammar.py:" in r.definition_location


def test_rule_decorator():
    @rule(type="int", entry=False)
    def Term():
        return [prod("(", ref("Expr"), ")"), prod(ref("Number"))]

    assert isinstance(Term, Rule)
    assert Term.name == "Term"
    assert Term.type == "int"
    assert not Term.entry
    assert len(Term.productions) == 2


def test_rule_decorator_single_expression():
    @rule(name="digit", error_name="a digit")
    def whatever():
        return chars(("0", "9"))

    assert whatever.name == "digit"
    assert whatever.error_name == "a digit"
    assert whatever.productions == (Production((chars(("0", "9")),)),)


def test_grammar_keeps_declaration_order():
    G = Grammar(
        [rule("b", "b"), rule("a", "a", entry=False), rule("c", "c")],
        [TokenDef("Z", "z"), TokenDef("Y", "y")],
    )
    assert list(G.rules) == ["b", "a", "c"]
    assert list(G.tokens) == ["Z", "Y"]
    assert G.entry_rules() == ["b", "c"]
    assert G.has_lexer


def test_duplicate_rules():
    with pytest.raises(GrammarError) as info:
        Grammar([rule("a", "x"), rule("a", "y")])
    assert info.value.kind == GrammarErrorKind.DUPLICATE_DEFINITION
    assert "more than one rule named a" in str(info.value)


def test_duplicate_tokens():
    with pytest.raises(GrammarError) as info:
        Grammar([rule("a", "x")], [TokenDef("T", "t"), TokenDef("T", "u")])
    assert info.value.kind == GrammarErrorKind.DUPLICATE_DEFINITION


def test_rule_and_token_with_the_same_name():
    with pytest.raises(GrammarError) as info:
        Grammar([rule("a", "x")], [TokenDef("a", "t")])
    assert info.value.kind == GrammarErrorKind.DUPLICATE_DEFINITION
    assert "a token and a rule both named a" in str(info.value)


def test_grammar_errors_are_value_errors():
    with pytest.raises(ValueError):
        Grammar([rule("a", "x"), rule("a", "y")])


def test_token_values_and_states():
    assert not TokenDef("PLUS", "+").has_value
    assert TokenDef("INT", chars(("0", "9")), action=int, type="int").has_value
    assert TokenDef("STRING", '"', enter="string").has_value

    G = Grammar(
        [rule("a", "x")],
        [TokenDef("STRING", '"', enter="string")],
        states={"string": [TokenDef("END", '"', leave=True)]},
    )
    assert list(G.states) == ["string"]
    assert [t.name for t in G.states["string"]] == ["END"]


def test_duplicate_tokens_in_a_lexer_state():
    with pytest.raises(GrammarError) as info:
        Grammar(
            [rule("a", "x")],
            states={"string": [TokenDef("END", '"', leave=True), TokenDef("END", "'", leave=True)]},
        )
    assert info.value.kind == GrammarErrorKind.DUPLICATE_DEFINITION
    assert "lexer state string" in str(info.value)
