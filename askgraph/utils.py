"""
Utility functions and compiled regex patterns for the AskGraph query engine.

Contains reference-syntax patterns, escaping helpers, string similarity,
seeded sampling, cancellation primitives and the error hierarchy.
"""

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import TypeVar

T = TypeVar("T")

# Pre-compiled regex patterns for performance
REGEX_SPECIAL_PATTERN = re.compile(r'[.*+?^${}()|\[\]\\]')
REGEX_LIKE_PATTERN = re.compile(r'\.\*|\\[bdswDSW]|\[.+\]|\(\?|\||^\^|\$$')
JS_REGEX_PATTERN = re.compile(r'^/(.*)/([a-z]*)$', re.DOTALL)
CASE_FLAG_PREFIX = '(?i)'
DAILY_UID_PATTERN = re.compile(r'^\d{2}-\d{2}-\d{4}$')
BRACKET_REF_PATTERN = re.compile(r'\[\[([^\[\]]+)\]\]')
TAG_PATTERN = re.compile(r'(?<![\w\[])#([\w\-/]+)')
ATTRIBUTE_KEY_PATTERN = re.compile(r'^([^:\n\[\]]+)::')
ENTRY_REF_PATTERN = re.compile(r'\(\(([\w\-]+)\)\)')
WORD_PATTERN = re.compile(r'\w+')
TAG_TITLE_PATTERN = re.compile(r'^[\w\-/]+$')
ATTRIBUTE_TITLE_PATTERN = re.compile(r'^[^:\n\[\]]+$')


# ============== Exceptions ==============

class AskGraphError(Exception):
    """Base class for query engine errors."""
    pass


class CompilationError(AskGraphError):
    """Raised when a condition cannot be expressed in the query dialect."""

    def __init__(self, message: str, condition: str | None = None):
        super().__init__(message)
        self.condition = condition


class ExecutionError(AskGraphError):
    """Raised when the graph executor rejects or fails a query."""

    def __init__(self, message: str, query: str | None = None):
        super().__init__(message)
        self.query = query


class ExpansionError(AskGraphError):
    """Raised when a term generator call fails or times out."""
    pass


class SearchCancelled(AskGraphError):
    """Raised when a search is cancelled by its caller."""
    pass


class ResultNotFoundError(AskGraphError):
    """Raised when a result id is unknown to the result store."""

    def __init__(self, result_id: str, reason: str = "not found"):
        super().__init__(f"Result {result_id} {reason}")
        self.result_id = result_id


# ============== Regex Helpers ==============

def escape_regex(text: str) -> str:
    """Escape regex metacharacters so text matches literally."""
    return REGEX_SPECIAL_PATTERN.sub(r'\\\g<0>', text)


def looks_like_regex(term: str) -> bool:
    """Heuristic check for terms that already carry regex syntax."""
    return bool(REGEX_LIKE_PATTERN.search(term))


def smart_escape(term: str) -> str:
    """Escape a generated term unless it already looks like a regex."""
    if looks_like_regex(term):
        return term
    return escape_regex(term)


def sanitize_regex(pattern: str) -> tuple[str, bool]:
    """Normalize a user-supplied regex.

    Accepts `/pattern/flags` notation and a leading `(?i)` flag.

    Args:
        pattern: Raw pattern text

    Returns:
        Tuple of (bare pattern, case_insensitive)
    """
    case_insensitive = False
    match = JS_REGEX_PATTERN.match(pattern)
    if match:
        pattern, flags = match.group(1), match.group(2)
        case_insensitive = "i" in flags
    while pattern.startswith(CASE_FLAG_PREFIX):
        pattern = pattern[len(CASE_FLAG_PREFIX):]
        case_insensitive = True
    return pattern, case_insensitive


def _reference_pattern(titles: Sequence[str]) -> str:
    # Mirrors extract_references: exact titles, whole tags, attribute keys at
    # the start of the entry. Case-sensitive even under a (?i) prefix.
    brackets = [escape_regex(t) for t in titles if "[" not in t and "]" not in t]
    tags = [escape_regex(t) for t in titles if TAG_TITLE_PATTERN.match(t)]
    keys = [escape_regex(t) for t in titles if ATTRIBUTE_TITLE_PATTERN.match(t) and t == t.strip()]

    alternatives = []
    if brackets:
        alternatives.append(rf'\[\[(?:{"|".join(brackets)})\]\]')
    if tags:
        alternatives.append(rf'(?<![\w\[])#(?:{"|".join(tags)})(?![\w\-/])')
    if keys:
        alternatives.append(rf'^[^\S\n]*(?:{"|".join(keys)})[^\S\n]*::')
    if not alternatives:
        return r'(?!)'
    return "(?-i:" + "|".join(alternatives) + ")"


def node_ref_pattern(title: str) -> str:
    """Regex matching exactly the references to a node title.

    Matches `[[title]]` (also inside `#[[title]]`), `#title` when the title
    is a whole tag and `title::` as the entry's attribute key. The match is
    case-sensitive, as node titles are.
    """
    return _reference_pattern([title])


def multi_node_ref_pattern(titles: Sequence[str]) -> str:
    """Regex matching a reference to any of the given node titles."""
    return _reference_pattern(titles)


def entry_ref_pattern(uid: str) -> str:
    """Regex matching an embedded `((uid))` entry reference."""
    return rf'(?-i:\(\({escape_regex(uid)}\)\))'


def extract_references(text: str) -> tuple[list[str], list[str]]:
    """Extract referenced node titles and entry uids from entry text.

    Returns:
        Tuple of (node titles, entry uids), each de-duplicated in order
    """
    titles: list[str] = []
    for title in BRACKET_REF_PATTERN.findall(text):
        if title not in titles:
            titles.append(title)
    for tag in TAG_PATTERN.findall(text):
        if tag not in titles:
            titles.append(tag)
    attr = ATTRIBUTE_KEY_PATTERN.match(text)
    if attr and attr.group(1).strip() not in titles:
        titles.append(attr.group(1).strip())

    uids: list[str] = []
    for uid in ENTRY_REF_PATTERN.findall(text):
        if uid not in uids:
            uids.append(uid)
    return titles, uids


def is_daily_uid(uid: str | None) -> bool:
    """Check whether a node uid follows the MM-DD-YYYY daily-note form."""
    return bool(uid) and bool(DAILY_UID_PATTERN.match(uid))


def has_word_boundary_match(term: str, text: str) -> bool:
    """Check whether term occurs in text as whole words (case-insensitive)."""
    return re.search(rf'\b{re.escape(term)}\b', text, re.IGNORECASE) is not None


# ============== String Similarity ==============

def levenshtein_distance(a: str, b: str) -> int:
    """Compute the edit distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized similarity in [0, 1] based on edit distance."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def fuzzy_match(text: str, term: str, threshold: float = 0.8) -> bool:
    """Check whether text contains term or a word close enough to it."""
    text_lower = text.lower()
    term_lower = term.lower()
    if term_lower in text_lower:
        return True
    return any(
        similarity(word, term_lower) >= threshold
        for word in WORD_PATTERN.findall(text_lower)
    )


def truncate_content(text: str | None, length: int) -> str | None:
    """Truncate text to length characters, marking the cut with an ellipsis."""
    if text is None or len(text) <= length:
        return text
    return text[:length] + "..."


# ============== Seeded Sampling ==============

def seeded_random(seed: int) -> Callable[[], float]:
    """Linear congruential generator returning floats in [0, 1)."""
    state = seed % 2**32

    def next_value() -> float:
        nonlocal state
        state = (state * 1664525 + 1013904223) % 2**32
        return state / 2**32

    return next_value


def seeded_shuffle(items: Iterable[T], seed: int) -> list[T]:
    """Deterministically shuffle items for a given seed."""
    rng = seeded_random(seed)
    keyed = [(rng(), index, item) for index, item in enumerate(items)]
    keyed.sort(key=lambda entry: (entry[0], entry[1]))
    return [item for _, _, item in keyed]


def seeded_sample(items: Sequence[T], size: int, seed: int) -> list[T]:
    """Deterministically sample up to size items for a given seed."""
    if size >= len(items):
        return seeded_shuffle(items, seed)
    return seeded_shuffle(items, seed)[:size]


# ============== Concurrency ==============

class CancellationToken:
    """Cooperative cancellation signal shared by one search."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SearchCancelled("search cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await a coroutine, aborting it as soon as the token is cancelled.

        Raises:
            SearchCancelled: If the token fires before the coroutine completes
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise SearchCancelled("search cancelled")


async def gather_bounded(awaitables: Iterable[Awaitable[T]], limit: int) -> list[T]:
    """Run awaitables concurrently with at most limit in flight.

    Results are returned in input order. When one fails, the rest are
    cancelled before the error propagates.
    """
    semaphore = asyncio.Semaphore(max(1, limit))
    pending = list(awaitables)

    async def guarded(awaitable: Awaitable[T]) -> T:
        async with semaphore:
            return await awaitable

    tasks = [asyncio.ensure_future(guarded(a)) for a in pending]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for awaitable in pending:
            # Never started when cancelled while waiting on the semaphore
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
        raise
