import pytest

from seedpeg import (
    Grammar,
    GrammarError,
    GrammarErrorKind,
    Recursion,
    bind,
    chars,
    lookahead,
    one_or_more,
    opt,
    prod,
    ref,
    rule,
    zero_or_more,
)
from seedpeg.leftrec import (
    LeftRecursionInfo,
    compute_nullable,
    is_nullable,
    left_calls,
    strongly_connected,
)


def test_nullable():
    G = Grammar(
        [
            rule("a", prod(opt("x"))),
            rule("b", prod(ref("a"), ref("a"))),
            rule("c", prod(ref("b"), "y")),
            rule("d", prod("z"), prod()),
            rule("e", prod(zero_or_more(ref("c")))),
            rule("f", prod(one_or_more(ref("c")))),
        ]
    )
    assert compute_nullable(G) == {
        "a": True,
        "b": True,
        "c": False,
        "d": True,
        "e": True,
        "f": False,
    }


def test_expression_nullable():
    nullable = {"x": True, "y": False}
    assert is_nullable(lookahead("q"), nullable)
    assert is_nullable(ref("x") + opt("q"), nullable)
    assert not is_nullable(ref("x") + ref("y"), nullable)
    assert not is_nullable(ref("TOKEN"), nullable)


def test_left_calls_stop_at_the_first_thing_that_consumes():
    nullable = {"x": True, "y": False, "z": False}
    rules = set(nullable)
    assert left_calls(ref("x") + ref("y") + ref("z"), nullable, rules) == {"x", "y"}
    assert left_calls(ref("y") + ref("x"), nullable, rules) == {"y"}
    assert left_calls("(" + ref("x"), nullable, rules) == set()
    assert left_calls(opt(ref("z")) + ref("y"), nullable, rules) == {"z", "y"}
    assert left_calls(bind("v", ref("z")), nullable, rules) == {"z"}


def test_strongly_connected():
    graph = {
        "a": ["b"],
        "b": ["c"],
        "c": ["a", "d"],
        "d": [],
    }
    components = strongly_connected(graph)
    assert sorted(sorted(c) for c in components) == [["a", "b", "c"], ["d"]]
    # Dependencies come out first.
    assert components[0] == ["d"]


def expr_grammar():
    return Grammar(
        [
            rule(
                "Expr",
                prod(bind("lhs", ref("Expr")), "+", bind("rhs", ref("Term")), action=lambda lhs, rhs: lhs + rhs),
                prod(ref("Term")),
                type="int",
            ),
            rule(
                "Term",
                prod("(", ref("Expr"), ")"),
                prod(ref("Number")),
                type="int",
            ),
            rule("Number", prod(one_or_more(chars(("0", "9"))), action=lambda ds: int("".join(ds))), type="int"),
        ]
    )


def test_direct_left_recursion():
    info = LeftRecursionInfo.from_grammar(expr_grammar())
    assert info.recursion == {
        "Expr": Recursion.DIRECT,
        "Term": Recursion.NONE,
        "Number": Recursion.NONE,
    }
    assert info.cycles == [frozenset({"Expr"})]
    assert info.is_left_recursive("Expr")
    assert not info.is_left_recursive("Term")


def test_indirect_left_recursion():
    G = Grammar(
        [
            rule("start", prod(ref("foo"), "+", ref("bar")), prod(ref("bar"))),
            rule("foo", prod(ref("start"))),
            rule("bar", prod("x")),
        ]
    )
    info = LeftRecursionInfo.from_grammar(G)
    assert info.recursion["start"] == Recursion.INDIRECT
    assert info.recursion["foo"] == Recursion.INDIRECT
    assert info.recursion["bar"] == Recursion.NONE
    assert info.cycles == [frozenset({"start", "foo"})]


def test_left_recursion_through_nullable_prefix():
    G = Grammar(
        [
            rule("list", prod(opt(ref("sep")), ref("list"), "x"), prod("x")),
            rule("sep", prod(",")),
        ]
    )
    info = LeftRecursionInfo.from_grammar(G)
    assert info.recursion["list"] == Recursion.DIRECT
    assert info.calls["list"] == {"sep", "list"}


def test_right_recursion_is_not_left_recursion():
    G = Grammar([rule("list", prod("x", ref("list")), prod("x"))])
    info = LeftRecursionInfo.from_grammar(G)
    assert info.recursion["list"] == Recursion.NONE
    assert info.cycles == []


def test_no_base_case_direct():
    G = Grammar([rule("A", prod(ref("A"), "x"))])
    with pytest.raises(GrammarError) as info:
        LeftRecursionInfo.from_grammar(G)
    assert info.value.kind == GrammarErrorKind.NO_BASE_CASE
    assert info.value.rule == "A"


def test_no_base_case_indirect():
    G = Grammar(
        [
            rule("A", prod(ref("B"), "x"), prod(ref("A"), "y")),
            rule("B", prod(ref("A"), "z")),
        ]
    )
    with pytest.raises(GrammarError) as info:
        LeftRecursionInfo.from_grammar(G)
    assert info.value.kind == GrammarErrorKind.NO_BASE_CASE


def test_base_case_through_another_cycle_member():
    G = Grammar(
        [
            rule("A", prod(ref("B"), "x")),
            rule("B", prod(ref("A"), "y"), prod("b")),
        ]
    )
    info = LeftRecursionInfo.from_grammar(G)
    assert info.recursion["A"] == Recursion.INDIRECT
    assert info.recursion["B"] == Recursion.INDIRECT


def test_empty_base_case():
    G = Grammar([rule("A", prod(ref("A"), "x"), prod())])
    info = LeftRecursionInfo.from_grammar(G)
    assert info.recursion["A"] == Recursion.DIRECT
