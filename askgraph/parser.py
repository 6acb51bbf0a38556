"""
Pure parsers for the compact condition syntaxes accepted by the search tools.

Handles `attr:key:type:(A + B - C)` attribute expressions, logical value
expressions, `*` / `~` / `~all` expansion suffixes, `page:(...)` scope syntax
and user-stated result counts. None of these functions raise on bad input:
malformed text yields a ParseError value.
"""

import re

from .models import (
    AttributeCondition,
    AttributeValue,
    Condition,
    ConditionGroup,
    ExpansionStrategy,
    ParseError,
    ScopeSyntax,
)
from .utils import JS_REGEX_PATTERN

ATTR_FULL_PATTERN = re.compile(r'^attr:([^:]+):([^:]+):(.+)$')
ATTR_SHORT_PATTERN = re.compile(r'^attr:([^:]+):(.+)$')
OPERATOR_SPLIT_PATTERN = re.compile(r'(\s*[+|\-]\s*)')
SCOPE_CONTENT_PATTERN = re.compile(r'^page:\(content:(.+)\)$', re.DOTALL)
SCOPE_BLOCK_PATTERN = re.compile(r'^page:\(block:\((.+)\)\)$', re.DOTALL)
NODE_REF_TEXT_PATTERN = re.compile(r'^#?\[\[(.+)\]\]$|^#([\w\-/]+)$')
ENTRY_REF_TEXT_PATTERN = re.compile(r'^\(\(([\w\-]+)\)\)$')

# User-stated result counts ("show me 5 random results", "top 10", "up to 20")
LIMIT_PATTERNS = [
    re.compile(r'(\d+)\s+(?:random\s+)?(?:results?|pages?|blocks?|entries|nodes?)', re.IGNORECASE),
    re.compile(r'(?:first|top|show me)\s+(\d+)', re.IGNORECASE),
    re.compile(r'(?:limit to|max|up to)\s+(\d+)', re.IGNORECASE),
]
MAX_USER_LIMIT = 500

VALUE_TYPE_ALIASES = {
    "text": "text",
    "regex": "regex",
    "ref": "node_ref",
    "page_ref": "node_ref",
    "node_ref": "node_ref",
}
SERIALIZED_VALUE_TYPES = {"text": "text", "regex": "regex", "node_ref": "ref"}


def parse_logical_expression(expr: str) -> list[AttributeValue]:
    """Parse a value expression like "A + B - C" or "A | B | C".

    Values inherit the most recent operator, defaulting to AND ("+"). In a
    pure OR expression (no "+" anywhere) the first value joins the OR group.
    """
    tokens = [t for t in OPERATOR_SPLIT_PATTERN.split(expr) if t.strip()]
    values: list[AttributeValue] = []
    current_op = "+"

    for token in tokens:
        trimmed = token.strip()
        if trimmed in ("+", "|", "-"):
            current_op = trimmed
        else:
            values.append(AttributeValue(value=trimmed, operator=current_op))

    if len(values) > 1:
        has_or = any(v.operator == "|" for v in values)
        if has_or and values[0].operator == "+" and "+" not in expr:
            values[0] = AttributeValue(value=values[0].value, operator="|")

    return values


def parse_attribute_condition(text: str) -> AttributeCondition | ParseError:
    """Parse `attr:key:type:value`, `attr:key:type:(expr)` or `attr:key:value`.

    The short form defaults to a node-reference value type. "ref" and
    "page_ref" are accepted as aliases of node_ref.
    """
    match = ATTR_FULL_PATTERN.match(text)
    if match:
        key, value_type, expression = match.groups()
        normalized = VALUE_TYPE_ALIASES.get(value_type.strip())
        if normalized is None:
            return ParseError(text=text, reason=f"invalid attribute value type: {value_type}")
    else:
        match = ATTR_SHORT_PATTERN.match(text)
        if not match:
            return ParseError(text=text, reason="expected attr:key:value or attr:key:type:value")
        key, expression = match.groups()
        normalized = "node_ref"

    key = key.strip()
    expression = expression.strip()
    if not key:
        return ParseError(text=text, reason="attribute key is empty")

    if expression.count("(") != expression.count(")"):
        return ParseError(text=text, reason="unbalanced parentheses")
    if expression.startswith("(") and expression.endswith(")"):
        values = parse_logical_expression(expression[1:-1])
    else:
        values = [AttributeValue(value=expression, operator="+")] if expression else []

    if not values:
        return ParseError(text=text, reason="attribute expression has no values")
    if normalized == "regex":
        for item in values:
            try:
                re.compile(item.value)
            except re.error as e:
                return ParseError(text=text, reason=f"invalid regex value {item.value!r}: {e}")

    return AttributeCondition(key=key, value_type=normalized, values=values)


def serialize_attribute_condition(condition: AttributeCondition) -> str:
    """Render an attribute condition back to its `attr:` text form."""
    value_type = SERIALIZED_VALUE_TYPES[condition.value_type]
    prefix = f"attr:{condition.key}:{value_type}:"
    values = condition.values

    if len(values) == 1 and values[0].operator == "+":
        return prefix + values[0].value

    first, rest = values[0], values[1:]
    # A bare first value is read as OR only when the rest has OR and no AND
    bare_is_or = any(v.operator == "|" for v in rest) and not any(v.operator == "+" for v in rest)
    if first.operator == "-":
        head = f"- {first.value}"
    elif (first.operator == "|") == bare_is_or:
        head = first.value
    else:
        head = f"{first.operator} {first.value}"

    tail = "".join(f" {v.operator} {v.value}" for v in rest)
    return f"{prefix}({head}{tail})"


def parse_semantic_suffix(
    value: str, default_strategy: ExpansionStrategy | None = None
) -> tuple[str, ExpansionStrategy | None]:
    """Strip an expansion suffix from a condition value.

    `term*` requests fuzzy expansion, `term~all` chains every strategy and
    `term~` uses the default strategy (synonyms when none is configured).

    Returns:
        Tuple of (base value, requested strategy or None)
    """
    if value.endswith("~all") and len(value) > 4:
        return value[:-4], "all"
    if value.endswith("*") and len(value) > 1 and not value.endswith(".*"):
        return value[:-1], "fuzzy"
    if value.endswith("~") and len(value) > 1:
        return value[:-1], default_strategy or "synonyms"
    return value, None


def condition_from_text(text: str, default_strategy: ExpansionStrategy | None = None) -> Condition:
    """Build a condition from a bare term, reference or `/regex/` token."""
    text = text.strip()
    ref = NODE_REF_TEXT_PATTERN.match(text)
    if ref:
        title, strategy = parse_semantic_suffix(ref.group(1) or ref.group(2), default_strategy)
        return Condition(kind="node_ref", value=title, expansion_strategy=strategy)
    entry_ref = ENTRY_REF_TEXT_PATTERN.match(text)
    if entry_ref:
        return Condition(kind="entry_ref", value=entry_ref.group(1))
    if JS_REGEX_PATTERN.match(text):
        return Condition(kind="regex", value=text)
    value, strategy = parse_semantic_suffix(text, default_strategy)
    return Condition(kind="text", value=value, expansion_strategy=strategy)


def parse_condition_expression(
    expr: str, default_strategy: ExpansionStrategy | None = None
) -> ConditionGroup | ParseError:
    """Parse "A + B - C" / "A | B" into a condition group.

    Mixed expressions AND the "+" and "-" terms with one OR group holding
    the "|" terms.
    """
    values = parse_logical_expression(expr)
    if not values:
        return ParseError(text=expr, reason="expression has no terms")

    required: list[Condition | ConditionGroup] = []
    alternatives: list[Condition | ConditionGroup] = []
    try:
        for item in values:
            condition = condition_from_text(item.value, default_strategy)
            if item.operator == "-":
                required.append(condition.model_copy(update={"negated": True}))
            elif item.operator == "|":
                alternatives.append(condition)
            else:
                required.append(condition)
    except ValueError as e:
        return ParseError(text=expr, reason=str(e))

    if not required:
        return ConditionGroup(combinator="OR", children=alternatives)
    if alternatives:
        required.append(ConditionGroup(combinator="OR", children=alternatives))
    return ConditionGroup(combinator="AND", children=required)


def parse_scope_syntax(text: str) -> ScopeSyntax | None:
    """Recognize `page:(content:...)` and `page:(block:(...))` queries.

    `content:` matches conditions anywhere within a node, `block:` requires
    a single entry to satisfy all of them.
    """
    text = text.strip()
    match = SCOPE_BLOCK_PATTERN.match(text)
    if match:
        return ScopeSyntax(scope="block", expression=match.group(1).strip())
    match = SCOPE_CONTENT_PATTERN.match(text)
    if match:
        return ScopeSyntax(scope="content", expression=match.group(1).strip())
    return None


def extract_user_requested_limit(query: str) -> int | None:
    """Find an explicit result count in the user's request (1..500)."""
    for pattern in LIMIT_PATTERNS:
        match = pattern.search(query)
        if match:
            count = int(match.group(1))
            if 1 <= count <= MAX_USER_LIMIT:
                return count
    return None
