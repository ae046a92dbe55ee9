"""Query complexity classification.

A keyword/length/structure heuristic decides the tier by default. When the
caller opts in and the heuristic is unsure, the LLM is asked instead; any
failure there falls back to the heuristic result.
"""

from __future__ import annotations

from typing import Any, Optional

from researchflow import constants as c
from researchflow.errors import ResearchCancelledError, RetryAbortedError
from researchflow.models.research import ClassificationResult, QueryComplexity
from researchflow.services.cancellation import CancellationToken
from researchflow.services.json_parsing import extract_json_object
from researchflow.services.logger import logger

Scores = dict[QueryComplexity, float]

HEURISTIC_REASONING = "Heuristic classification based on keywords, length, and structure"


def _empty() -> Scores:
    return {tier: 0 for tier in QueryComplexity}


def score_by_keywords(query: str) -> Scores:
    text = query.lower()
    scores = _empty()
    scores[QueryComplexity.SIMPLE] += 2 * sum(1 for k in c.SIMPLE_INDICATORS if k in text)
    scores[QueryComplexity.MODERATE] += 2 * sum(1 for k in c.MODERATE_INDICATORS if k in text)
    scores[QueryComplexity.COMPLEX] += 3 * sum(1 for k in c.COMPLEX_INDICATORS if k in text)
    return scores


def score_by_length(query: str) -> Scores:
    length = len(query.strip())
    scores = _empty()
    if length < c.SIMPLE_LENGTH_THRESHOLD:
        scores[QueryComplexity.SIMPLE] += 3
    elif length < c.MODERATE_LENGTH_THRESHOLD:
        scores[QueryComplexity.MODERATE] += 2
    else:
        scores[QueryComplexity.COMPLEX] += 2
    return scores


def score_by_structure(query: str) -> Scores:
    text = query.lower()
    scores = _empty()
    if query.count("?") > 1:
        scores[QueryComplexity.COMPLEX] += 2
    scores[QueryComplexity.MODERATE] += sum(1 for w in c.CONJUNCTIONS if w in text)
    scores[QueryComplexity.COMPLEX] += 2 * sum(1 for w in c.TEMPORAL_WORDS if w in text)
    scores[QueryComplexity.MODERATE] += sum(1 for w in c.QUANTITATIVE_WORDS if w in text)
    return scores


def combine_scores(*score_sets: Scores) -> tuple[QueryComplexity, float]:
    totals = _empty()
    for scores in score_sets:
        for tier, value in scores.items():
            totals[tier] += value

    simple = totals[QueryComplexity.SIMPLE]
    moderate = totals[QueryComplexity.MODERATE]
    complex_ = totals[QueryComplexity.COMPLEX]
    total = simple + moderate + complex_

    # Ties resolve toward the more complex tier.
    if complex_ >= moderate and complex_ >= simple:
        tier, winning = QueryComplexity.COMPLEX, complex_
    elif moderate >= simple:
        tier, winning = QueryComplexity.MODERATE, moderate
    else:
        tier, winning = QueryComplexity.SIMPLE, simple

    confidence = min(0.95, 0.5 + (winning / total) * 0.45) if total > 0 else 0.5
    return tier, confidence


def _result(complexity: QueryComplexity, confidence: float, reasoning: str) -> ClassificationResult:
    return ClassificationResult(
        complexity=complexity,
        confidence=confidence,
        reasoning=reasoning,
        estimated_time=c.ESTIMATED_TIME_BY_COMPLEXITY[complexity],
        suggested_model=c.recommended_model(complexity),
    )


def classify_heuristic(query: str) -> ClassificationResult:
    complexity, confidence = combine_scores(
        score_by_keywords(query),
        score_by_length(query),
        score_by_structure(query),
    )
    return _result(complexity, confidence, HEURISTIC_REASONING)


def parse_llm_classification(raw_text: str) -> ClassificationResult:
    """Turn ``{complexity, confidence, reasoning}`` into a result, or raise ValueError."""
    parsed = extract_json_object(raw_text)
    try:
        complexity = QueryComplexity(str(parsed.get("complexity", "")).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Invalid complexity tier: {parsed.get('complexity')!r}") from exc

    try:
        confidence = float(parsed.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = max(0.0, min(1.0, confidence))

    reasoning = parsed.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = "LLM classification"
    return _result(complexity, confidence, reasoning.strip())


class QueryClassifier:
    def __init__(self, providers: Optional[Any] = None):
        self.providers = providers

    async def classify(
        self,
        query: str,
        *,
        force_complexity: Optional[QueryComplexity] = None,
        use_llm: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ClassificationResult:
        if force_complexity is not None:
            return _result(QueryComplexity(force_complexity), 1.0, "Forced complexity")

        heuristic = classify_heuristic(query)
        if not use_llm or heuristic.confidence >= c.LLM_CLASSIFICATION_THRESHOLD or self.providers is None:
            logger.debug(
                f"Heuristic classification: {heuristic.complexity.value} "
                f"(confidence={heuristic.confidence:.2f})"
            )
            return heuristic

        logger.info("Low-confidence heuristic classification, asking the LLM")
        try:
            call = self.providers.classify_complexity(query)
            raw_text = await (cancel_token.race(call) if cancel_token else call)
            return parse_llm_classification(raw_text)
        except (ResearchCancelledError, RetryAbortedError):
            raise
        except Exception as exc:
            logger.warning(f"LLM classification failed, using heuristic: {exc}")
            return heuristic
