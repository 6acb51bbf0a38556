"""
Typed AST for the Datalog query dialect, with its serializer and reader.

Queries are built as values and rendered to text in exactly one place
(`serialize`), which owns all string-literal escaping. `read_query` parses
the same text back into the AST for the local executor.
"""

import re
from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class Var:
    """A logic variable such as `?content`."""

    name: str

    def __post_init__(self):
        if not self.name.startswith("?"):
            raise ValueError(f"variable names start with '?': {self.name}")


@dataclass(frozen=True)
class Keyword:
    """An attribute keyword such as `:entry/string`."""

    name: str


@dataclass(frozen=True)
class SetLiteral:
    """A literal set of strings, `#{"a" "b"}`."""

    values: tuple[str, ...]


Term = Union[Var, Keyword, SetLiteral, str, int, float]


@dataclass(frozen=True)
class DataPattern:
    entity: Term
    attribute: Keyword
    value: Term


@dataclass(frozen=True)
class Predicate:
    """`[(fn arg ...)]` filtering clause."""

    fn: str
    args: tuple[Term, ...]


@dataclass(frozen=True)
class FnBinding:
    """`[(fn arg ...) ?out]` clause binding a function result."""

    fn: str
    args: tuple[Term, ...]
    output: Var


@dataclass(frozen=True)
class Not:
    clauses: tuple["Clause", ...]


@dataclass(frozen=True)
class NotJoin:
    join_vars: tuple[Var, ...]
    clauses: tuple["Clause", ...]


@dataclass(frozen=True)
class Or:
    branches: tuple["Clause", ...]


@dataclass(frozen=True)
class OrJoin:
    join_vars: tuple[Var, ...]
    branches: tuple["Clause", ...]


@dataclass(frozen=True)
class And:
    clauses: tuple["Clause", ...]


Clause = Union[DataPattern, Predicate, FnBinding, Not, NotJoin, Or, OrJoin, And]


@dataclass(frozen=True)
class FindQuery:
    find: tuple[Var, ...]
    where: tuple[Clause, ...] = field(default_factory=tuple)

    @property
    def variables(self) -> tuple[str, ...]:
        return tuple(v.name for v in self.find)


# ============== Serializer ==============

def quote_string(value: str) -> str:
    """Render a string literal, escaping backslashes, quotes and newlines."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def serialize_term(term: Term) -> str:
    if isinstance(term, Var):
        return term.name
    if isinstance(term, Keyword):
        return term.name
    if isinstance(term, SetLiteral):
        return "#{" + " ".join(quote_string(v) for v in term.values) + "}"
    if isinstance(term, bool):
        return "true" if term else "false"
    if isinstance(term, (int, float)):
        return str(term)
    if isinstance(term, str):
        return quote_string(term)
    raise TypeError(f"cannot serialize term {term!r}")


def _vars(join_vars: tuple[Var, ...]) -> str:
    return "[" + " ".join(v.name for v in join_vars) + "]"


def serialize_clause(clause: Clause, indent: int = 1) -> str:
    pad = " " * indent
    if isinstance(clause, DataPattern):
        parts = (serialize_term(clause.entity), clause.attribute.name, serialize_term(clause.value))
        return f"{pad}[{' '.join(parts)}]"
    if isinstance(clause, Predicate):
        args = " ".join(serialize_term(a) for a in clause.args)
        return f"{pad}[({clause.fn} {args})]"
    if isinstance(clause, FnBinding):
        args = " ".join(serialize_term(a) for a in clause.args)
        return f"{pad}[({clause.fn} {args}) {clause.output.name}]"

    if isinstance(clause, Not):
        head, children = "(not", clause.clauses
    elif isinstance(clause, NotJoin):
        head, children = f"(not-join {_vars(clause.join_vars)}", clause.clauses
    elif isinstance(clause, Or):
        head, children = "(or", clause.branches
    elif isinstance(clause, OrJoin):
        head, children = f"(or-join {_vars(clause.join_vars)}", clause.branches
    elif isinstance(clause, And):
        head, children = "(and", clause.clauses
    else:
        raise TypeError(f"cannot serialize clause {clause!r}")

    body = "\n".join(serialize_clause(c, indent + 2) for c in children)
    return f"{pad}{head}\n{body})"


def serialize(query: FindQuery) -> str:
    """Render a query to dialect text."""
    lines = [f"[:find {' '.join(v.name for v in query.find)}", " :where"]
    lines.extend(serialize_clause(c) for c in query.where)
    return "\n".join(lines) + "]"


# ============== Reader ==============

TOKEN_PATTERN = re.compile(r'\s+|#\{|[\[\]()}]|"(?:[^"\\]|\\.)*"|[^\s\[\]()"{}]+', re.DOTALL)
STRING_ESCAPE_PATTERN = re.compile(r'\\(.)', re.DOTALL)
NUMBER_PATTERN = re.compile(r'^-?\d+(\.\d+)?$')
STRING_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"'}
CLOSERS = {"]": "vec", ")": "list", "}": "set"}


@dataclass(frozen=True)
class Symbol:
    name: str


def _unescape(literal: str) -> str:
    def replace(match: re.Match) -> str:
        ch = match.group(1)
        return STRING_ESCAPES.get(ch, "\\" + ch)

    return STRING_ESCAPE_PATTERN.sub(replace, literal[1:-1])


def _atom(token: str):
    if token.startswith('"'):
        return _unescape(token)
    if token.startswith(":"):
        return Keyword(token)
    if token.startswith("?"):
        return Var(token)
    if token in ("true", "false"):
        return token == "true"
    if NUMBER_PATTERN.match(token):
        return float(token) if "." in token else int(token)
    return Symbol(token)


def read_forms(text: str) -> list:
    """Read dialect text into nested (kind, items) tuples without recursion."""
    stack: list[tuple[str, list]] = [("root", [])]
    pos = 0
    while pos < len(text):
        match = TOKEN_PATTERN.match(text, pos)
        if not match:
            raise ValueError(f"unexpected character at offset {pos}: {text[pos]!r}")
        token = match.group(0)
        pos = match.end()
        if token.isspace():
            continue
        if token == "[":
            stack.append(("vec", []))
        elif token == "(":
            stack.append(("list", []))
        elif token == "#{":
            stack.append(("set", []))
        elif token in CLOSERS:
            kind, items = stack.pop()
            if kind != CLOSERS[token] or not stack:
                raise ValueError(f"unbalanced {token!r} at offset {pos - 1}")
            stack[-1][1].append((kind, items))
        else:
            stack[-1][1].append(_atom(token))
    if len(stack) != 1:
        raise ValueError("unterminated form")
    return stack[0][1]


def _term(form) -> Term:
    if isinstance(form, tuple) and form[0] == "set":
        if not all(isinstance(v, str) for v in form[1]):
            raise ValueError("set literals may only hold strings")
        return SetLiteral(tuple(form[1]))
    if isinstance(form, Symbol) or isinstance(form, tuple):
        raise ValueError(f"unexpected form in term position: {form!r}")
    return form


def _join_vars(form) -> tuple[Var, ...]:
    if not (isinstance(form, tuple) and form[0] == "vec"):
        raise ValueError("join variables must be a vector")
    if not all(isinstance(v, Var) for v in form[1]):
        raise ValueError("join vector may only hold variables")
    return tuple(form[1])


def _clause(form) -> Clause:
    if not isinstance(form, tuple):
        raise ValueError(f"expected a clause, got {form!r}")
    kind, items = form

    if kind == "vec":
        if items and isinstance(items[0], tuple) and items[0][0] == "list":
            call = items[0][1]
            if not call or not isinstance(call[0], Symbol):
                raise ValueError("function clause must start with a symbol")
            fn = call[0].name
            args = tuple(_term(a) for a in call[1:])
            if len(items) == 1:
                return Predicate(fn, args)
            if len(items) == 2 and isinstance(items[1], Var):
                return FnBinding(fn, args, items[1])
            raise ValueError(f"malformed function clause ({fn} ...)")
        if len(items) != 3 or not isinstance(items[1], Keyword):
            raise ValueError("data pattern must be [entity :attribute value]")
        return DataPattern(_term(items[0]), items[1], _term(items[2]))

    if kind == "list" and items and isinstance(items[0], Symbol):
        head = items[0].name
        if head == "not":
            return Not(tuple(_clause(c) for c in items[1:]))
        if head == "not-join":
            return NotJoin(_join_vars(items[1]), tuple(_clause(c) for c in items[2:]))
        if head == "or":
            return Or(tuple(_clause(c) for c in items[1:]))
        if head == "or-join":
            return OrJoin(_join_vars(items[1]), tuple(_clause(c) for c in items[2:]))
        if head == "and":
            return And(tuple(_clause(c) for c in items[1:]))
        raise ValueError(f"unknown rule form: {head}")

    raise ValueError(f"unexpected form {form!r}")


def read_query(text: str) -> FindQuery:
    """Parse dialect text into a FindQuery.

    Raises:
        ValueError: If the text is not a well-formed `[:find ... :where ...]` query
    """
    forms = read_forms(text)
    if len(forms) != 1 or not (isinstance(forms[0], tuple) and forms[0][0] == "vec"):
        raise ValueError("query must be a single vector")
    items = forms[0][1]
    if not items or items[0] != Keyword(":find"):
        raise ValueError("query must start with :find")

    try:
        where_at = items.index(Keyword(":where"))
    except ValueError:
        raise ValueError("query has no :where clause") from None

    find = items[1:where_at]
    if not find or not all(isinstance(v, Var) for v in find):
        raise ValueError(":find must list variables")
    where = tuple(_clause(c) for c in items[where_at + 1:])
    return FindQuery(find=tuple(find), where=where)
