"""Answer synthesis and gap analysis.

The LLM writes the answer followed by a JSON block listing knowledge gaps and
its own confidence. Helpers here build the prompt, split that block off, and
keep citation numbering consistent across rounds.
"""

from __future__ import annotations

import re
import time
from typing import Any, Callable, Optional

from researchflow import constants as c
from researchflow.errors import ResearchCancelledError, RetryAbortedError, SynthesisError
from researchflow.models.research import (
    Citation,
    Priority,
    ResearchGap,
    ResearchNote,
    SynthesisOutput,
)
from researchflow.services.cancellation import CancellationToken
from researchflow.services.json_parsing import find_json_value, iter_json_values
from researchflow.services.logger import logger
from researchflow.services.prompt_store import get_prompt, render_prompt

_CITATION_REF_RE = re.compile(r"\[(\d+)\]")
_FENCED_JSON_RE = re.compile(r"```(?:json|JSON)\s*(\{.*?\})\s*```", re.DOTALL)


def collect_citations(notes: list[ResearchNote]) -> list[Citation]:
    """All note citations, first occurrence per URL wins, ids ``citation-<n>``."""
    by_url: dict[str, Citation] = {}
    for note in notes:
        for citation in note.citations:
            if citation.url not in by_url:
                by_url[citation.url] = citation.model_copy(
                    update={"id": f"citation-{len(by_url) + 1}"}
                )
    return list(by_url.values())


def _reference_numbers(answer: str) -> list[int]:
    seen: list[int] = []
    for match in _CITATION_REF_RE.finditer(answer):
        number = int(match.group(1))
        if number not in seen:
            seen.append(number)
    return seen


def extract_used_citations(answer: str, citations: list[Citation]) -> list[Citation]:
    """Citations referenced as ``[n]`` in the answer, in order of first use."""
    return [
        citations[number - 1]
        for number in _reference_numbers(answer)
        if 1 <= number <= len(citations)
    ]


def renumber_citations(answer: str, citations: list[Citation]) -> tuple[str, list[Citation]]:
    """Renumber ``[n]`` references to 1..k by first use and reorder citations to match.

    References to numbers with no matching citation are left untouched.
    """
    mapping: dict[int, int] = {}
    ordered: list[Citation] = []
    for number in _reference_numbers(answer):
        if 1 <= number <= len(citations):
            mapping[number] = len(ordered) + 1
            ordered.append(citations[number - 1])

    def replace(match: re.Match[str]) -> str:
        new = mapping.get(int(match.group(1)))
        return f"[{new}]" if new is not None else match.group(0)

    renumbered = _CITATION_REF_RE.sub(replace, answer)
    return renumbered, [
        citation.model_copy(update={"id": f"citation-{index}"})
        for index, citation in enumerate(ordered, start=1)
    ]


def merge_citations(first: list[Citation], second: list[Citation]) -> list[Citation]:
    merged = list(first)
    urls = {citation.url for citation in first}
    for citation in second:
        if citation.url in urls:
            continue
        urls.add(citation.url)
        merged.append(citation.model_copy(update={"id": f"citation-{len(merged) + 1}"}))
    return merged


def _is_gap_analysis(value: Any) -> bool:
    return isinstance(value, dict) and "gaps" in value and "confidence" in value


def parse_synthesis_response(text: str) -> tuple[str, Optional[dict[str, Any]]]:
    """Split the trailing gap-analysis JSON off the answer text."""
    fenced = None
    for match in _FENCED_JSON_RE.finditer(text):
        fenced = match
    if fenced is not None:
        found = find_json_value(fenced.group(1), _is_gap_analysis)
        if found is not None:
            answer = (text[: fenced.start()] + text[fenced.end() :]).strip()
            return answer, found[2]

    last = None
    for start, end, value in iter_json_values(text):
        if _is_gap_analysis(value):
            last = (start, end, value)
    if last is not None:
        start, end, value = last
        return (text[:start] + text[end:]).strip(), value
    return text.strip(), None


def _priority(value: Any) -> Priority:
    try:
        return Priority(str(value).strip().lower())
    except ValueError:
        return Priority.MEDIUM


def transform_gaps(
    analysis: Optional[dict[str, Any]],
    session_id: str,
    round: int,
) -> list[ResearchGap]:
    if not analysis or not isinstance(analysis.get("gaps"), list):
        return []
    gaps: list[ResearchGap] = []
    for raw in analysis["gaps"]:
        if len(gaps) >= c.MAX_GAPS_TO_ADDRESS:
            break
        if not isinstance(raw, dict):
            continue
        description = str(raw.get("description") or "").strip()
        query = str(raw.get("suggestedQuery") or raw.get("suggested_query") or "").strip()
        if not description and not query:
            continue
        gaps.append(
            ResearchGap(
                id=f"gap-{session_id}-r{round}-{len(gaps)}",
                session_id=session_id,
                round=round,
                description=description or query,
                suggested_query=query or description,
                priority=_priority(raw.get("priority", "medium")),
            )
        )
    return gaps


def estimate_confidence(answer: str, citations: list[Citation], gaps: list[ResearchGap]) -> float:
    score = 0.6
    if len(answer) > 1000:
        score += 0.1
    if len(answer) > 2000:
        score += 0.05
    if len(citations) >= 3:
        score += 0.1
    if len(citations) >= 5:
        score += 0.05
    score -= sum(c.GAP_PRIORITY_WEIGHTS[gap.priority] * 0.05 for gap in gaps)
    return max(0.3, min(0.95, score))


def should_proceed_to_round2(output: SynthesisOutput) -> bool:
    if output.confidence >= c.MIN_CONFIDENCE_TO_COMPLETE:
        return False
    return any(gap.priority in (Priority.HIGH, Priority.MEDIUM) for gap in output.gaps)


def round2_queries(gaps: list[ResearchGap]) -> list[str]:
    ranked = sorted(gaps, key=lambda gap: c.GAP_PRIORITY_WEIGHTS[gap.priority], reverse=True)
    return [gap.suggested_query for gap in ranked[: c.MAX_GAPS_TO_ADDRESS]]


def build_synthesis_prompt(
    query: str,
    notes: list[ResearchNote],
    previous_answer: Optional[str] = None,
    gaps: Optional[list[ResearchGap]] = None,
    citations: Optional[list[Citation]] = None,
) -> str:
    """User prompt for synthesis.

    Sources are numbered once across all notes, so ``[n]`` in the answer maps
    straight onto ``collect_citations(notes)``.
    """
    citations = citations if citations is not None else collect_citations(notes)
    number_by_url = {citation.url: index for index, citation in enumerate(citations, start=1)}

    sources = "\n".join(
        f"[{index}] {citation.title} ({citation.url})"
        for index, citation in enumerate(citations, start=1)
    ) or "(no sources)"

    sections = []
    for index, note in enumerate(notes, start=1):
        refs = ", ".join(
            f"[{number_by_url[cit.url]}]" for cit in note.citations if cit.url in number_by_url
        )
        sections.append(
            f"## Research Note {index}\n"
            f"Question: {note.sub_question_id}\n"
            f"Content:\n{note.content}\n"
            f"Sources: {refs or 'none'}\n"
            f"Confidence: {round(note.confidence * 100)}%"
        )

    gap_context = ""
    if gaps:
        gap_context = "\n\n## Gaps to Address\n" + "\n".join(f"- {gap.description}" for gap in gaps)
    previous_context = ""
    if previous_answer:
        previous_context = (
            "\n\n## Previous Answer (Round 1)\n"
            f"{previous_answer}\n\n"
            "Please improve upon this answer by addressing the gaps and incorporating new research."
        )

    return render_prompt(
        "synthesis.user_prompt",
        query=query,
        sources=sources,
        notes="\n\n".join(sections),
        gap_context=gap_context,
        previous_context=previous_context,
    )


ProgressCallback = Callable[[float, str], Any]


class Synthesizer:
    def __init__(self, providers: Any):
        self.providers = providers

    async def synthesize(
        self,
        query: str,
        notes: list[ResearchNote],
        *,
        session_id: str,
        round: int = 1,
        previous_answer: Optional[str] = None,
        gaps: Optional[list[ResearchGap]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SynthesisOutput:
        started = time.monotonic()
        all_citations = collect_citations(notes)
        prompt = build_synthesis_prompt(query, notes, previous_answer, gaps, all_citations)

        buffer: list[str] = []
        last_update = 0.0

        def on_text(chunk: str) -> None:
            nonlocal last_update
            buffer.append(chunk)
            now = time.monotonic()
            if on_progress is not None and now - last_update > c.SYNTHESIS_PROGRESS_INTERVAL_S:
                text = "".join(buffer)
                on_progress(min(90.0, len(text) / c.SYNTHESIS_EXPECTED_CHARS * 100), text)
                last_update = now

        try:
            call = self.providers.synthesize(get_prompt("synthesis.system_prompt"), prompt, on_text)
            full_text = await (cancel_token.race(call) if cancel_token else call)
        except (ResearchCancelledError, RetryAbortedError):
            raise
        except Exception as exc:
            raise SynthesisError(f"Synthesis failed: {exc}") from exc

        if not full_text:
            full_text = "".join(buffer)
        if on_progress is not None:
            on_progress(100.0, full_text)

        answer, analysis = parse_synthesis_response(full_text)
        if not answer:
            raise SynthesisError("Synthesis returned an empty answer")

        gap_list = transform_gaps(analysis, session_id, round)
        used = extract_used_citations(answer, all_citations)
        confidence = _model_confidence(analysis)
        if confidence is None:
            confidence = estimate_confidence(answer, used, gap_list)

        logger.info(
            f"Synthesized round {round} answer ({len(answer)} chars, {len(used)} citations, "
            f"{len(gap_list)} gaps) in {int((time.monotonic() - started) * 1000)}ms"
        )
        # Citations stay in source-list order so [n] still lines up; renumbering
        # happens once at the end of the session.
        return SynthesisOutput(
            answer=answer,
            citations=all_citations,
            gaps=gap_list,
            confidence=confidence,
        )


def _model_confidence(analysis: Optional[dict[str, Any]]) -> float | None:
    if not analysis:
        return None
    value = analysis.get("confidence")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0.0, min(1.0, float(value)))
