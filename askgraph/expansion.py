"""
Semantic expansion engine.

Asks a pluggable TermGenerator for alternative terms (fuzzy variants,
synonyms, related concepts, broader terms), caches them per conversation
and merges them back into the condition tree as weighted OR siblings.
"""

import asyncio
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import structlog
from pydantic import ValidationError

from .config import CHAINED_EXPANSION_STRATEGIES, EXPANSION_STRATEGY_LABELS, settings
from .models import (
    AttributeCondition,
    AttributeValue,
    Condition,
    ConditionGroup,
    ExpansionRequest,
    ExpansionResult,
    ExpansionStrategy,
)
from .parser import parse_semantic_suffix
from .utils import CancellationToken, SearchCancelled, gather_bounded, looks_like_regex

logger = structlog.get_logger(__name__)

EXPANDABLE_KINDS = ("text", "node_ref")
MAX_TERMS_PER_STRATEGY = 8


@runtime_checkable
class TermGenerator(Protocol):
    """Produces alternative terms for a condition (typically backed by an LLM)."""

    async def generate(self, request: ExpansionRequest) -> list[str]:
        ...


def expansion_label(strategy: str) -> str:
    return EXPANSION_STRATEGY_LABELS.get(strategy, strategy or "unknown")


def _clean_terms(terms: Sequence[str], exclude: Sequence[str]) -> list[str]:
    seen = {t.strip().lower() for t in exclude}
    cleaned = []
    for term in terms:
        if not isinstance(term, str):
            continue
        term = term.strip()
        if term and term.lower() not in seen:
            seen.add(term.lower())
            cleaned.append(term)
    return cleaned[:MAX_TERMS_PER_STRATEGY]


class ExpansionEngine:
    """Generates, caches and merges expansion terms for one conversation.

    Term-generation calls run concurrently (bounded by max_concurrent) and
    each is capped by a timeout. A failed or timed-out call degrades to the
    unexpanded condition and is reported as a warning, never as an error.
    """

    def __init__(
        self,
        generator: TermGenerator | None,
        *,
        timeout: float | None = None,
        decay: float | None = None,
        max_concurrent: int | None = None,
    ):
        self.generator = generator
        self.timeout = timeout if timeout is not None else settings.expansion_timeout
        self.decay = decay if decay is not None else settings.expansion_decay
        self.max_concurrent = max_concurrent or settings.max_concurrent_queries
        self._cache: dict[tuple[str, str, str, str], list[str]] = {}

    def cache_size(self) -> int:
        return len(self._cache)

    async def _call_generator(self, request: ExpansionRequest, cancel: CancellationToken | None) -> list[str]:
        if request.strategy == "custom":
            return list(request.hints.get("custom_terms", []))
        if self.generator is None:
            raise RuntimeError("no term generator configured")

        call = asyncio.wait_for(self.generator.generate(request), timeout=self.timeout)
        if cancel is not None:
            return await cancel.run(call)
        return await call

    async def _generate_single(
        self,
        request: ExpansionRequest,
        cancel: CancellationToken | None,
        exclude: Sequence[str],
    ) -> list[str]:
        condition = request.condition
        key = (
            condition.kind,
            condition.value.lower(),
            request.strategy,
            str(request.hints.get("user_query", "")),
        )
        if key in self._cache:
            logger.debug("expansion_cache_hit", term=condition.value, strategy=request.strategy)
            return _clean_terms(self._cache[key], exclude)

        terms = await self._call_generator(request, cancel)
        terms = _clean_terms(terms, [condition.value])
        self._cache[key] = terms
        logger.info("expansion_generated", term=condition.value,
                    strategy=expansion_label(request.strategy), terms=terms)
        return _clean_terms(terms, exclude)

    async def generate_terms(
        self, request: ExpansionRequest, cancel: CancellationToken | None = None
    ) -> ExpansionResult:
        """Generate alternative terms for one request.

        The "all" strategy chains fuzzy, synonyms and related concepts,
        de-duplicating each step against earlier terms.

        Raises:
            SearchCancelled: If the cancellation token fires mid-call
        """
        strategies = CHAINED_EXPANSION_STRATEGIES if request.strategy == "all" else (request.strategy,)
        terms: list[str] = []
        try:
            for strategy in strategies:
                step = request.model_copy(update={
                    "strategy": strategy,
                    "hints": {**request.hints, "previous_terms": list(terms)},
                })
                terms.extend(await self._generate_single(step, cancel, [request.condition.value, *terms]))
        except SearchCancelled:
            raise
        except asyncio.TimeoutError:
            logger.warning("expansion_timeout", term=request.condition.value, strategy=request.strategy)
            return ExpansionResult(request=request, terms=terms, error=f"expansion of '{request.condition.value}' timed out")
        except Exception as e:
            logger.warning("expansion_failed", term=request.condition.value,
                           strategy=request.strategy, error=str(e))
            return ExpansionResult(request=request, terms=terms, error=f"expansion of '{request.condition.value}' failed: {e}")
        return ExpansionResult(request=request, terms=terms)

    async def generate_many(
        self, requests: Sequence[ExpansionRequest], cancel: CancellationToken | None = None
    ) -> list[ExpansionResult]:
        """Generate terms for independent requests concurrently."""
        return await gather_bounded(
            (self.generate_terms(r, cancel) for r in requests), self.max_concurrent
        )

    def merge(self, condition: Condition, terms: Sequence[str], level: int = 1) -> Condition | ConditionGroup:
        """Merge expansion terms into the tree as siblings of the original.

        Positive conditions become an OR group of the original plus expanded
        siblings. Negated conditions become an AND group so every variant is
        excluded. Expanded siblings carry a decayed weight and provenance.
        """
        if not terms or condition.kind not in EXPANDABLE_KINDS:
            return condition

        weight = condition.weight * (self.decay ** level)
        siblings: list[Condition] = [condition]
        for term in terms:
            regex_term = condition.kind == "text" and looks_like_regex(term)
            try:
                siblings.append(Condition(
                    kind=condition.kind,
                    value=term,
                    negated=condition.negated,
                    weight=weight,
                    match_mode="regex" if regex_term else "contains",
                    matched_term=term,
                    expansion_level=level,
                ))
            except ValidationError:
                logger.warning("expansion_term_rejected", term=term)

        if len(siblings) == 1:
            return condition
        return ConditionGroup(combinator="AND" if condition.negated else "OR", children=siblings)

    async def expand_attribute(
        self,
        condition: AttributeCondition,
        default_strategy: ExpansionStrategy | None = None,
        cancel: CancellationToken | None = None,
    ) -> tuple[AttributeCondition, list[str]]:
        """Expand attribute values carrying `*`, `~` or `~all` suffixes.

        Returns:
            Tuple of (condition with alternatives filled in, warnings)
        """
        requests: list[ExpansionRequest] = []
        positions: list[int] = []
        values = list(condition.values)
        for index, item in enumerate(values):
            base, strategy = parse_semantic_suffix(item.value, default_strategy)
            values[index] = AttributeValue(value=base, operator=item.operator)
            if strategy:
                kind = "node_ref" if condition.value_type == "node_ref" else "text"
                requests.append(ExpansionRequest(
                    condition=Condition(kind=kind, value=base), strategy=strategy,
                ))
                positions.append(index)

        warnings = []
        for index, result in zip(positions, await self.generate_many(requests, cancel)):
            if result.error:
                warnings.append(result.error)
            values[index] = values[index].model_copy(update={"alternatives": tuple(result.terms)})
        return condition.model_copy(update={"values": values}), warnings
