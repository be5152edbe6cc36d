from .grammar import (
    Action,
    And,
    Bind,
    Choice,
    Class,
    Expression,
    Grammar,
    GrammarError,
    GrammarErrorKind,
    Literal,
    Not,
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
    lookahead,
    not_followed_by,
    one_or_more,
    opt,
    prod,
    ref,
    rule,
    seq,
    token,
    zero_or_more,
)
from .capture import (
    Element,
    OptionType,
    ResultType,
    SequenceType,
    TupleType,
    UnitType,
    UnknownType,
)
from .leftrec import Recursion
from .lexer import EdgeList, Lexer
from .runtime import ErrorKind, ParseError, Position, Token
from .compiler import CompiledParser, compile
