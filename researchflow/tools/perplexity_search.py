from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx

from researchflow.config import settings
from researchflow.models.research import Citation, ResearchNote
from researchflow.services.env_safety import sanitize_ssl_keylogfile
from researchflow.services.logger import log_llm_call
from researchflow.services.prompt_store import render_prompt

_TITLE_SUFFIX_RE = re.compile(r"\.(html?|php|aspx?)$", re.IGNORECASE)
_NUMBER_RE = re.compile(r"\d+(\.\d+)?%?")
_QUOTE_RE = re.compile(r'"[^"]{10,}"')
_LIST_RE = re.compile(r"(\n[-•*]|\d+\.)")


@dataclass
class PerplexityAnswer:
    """Accumulated result of one streamed Perplexity completion."""
    content: str = ""
    citations: list[str] = field(default_factory=list)


def parse_sse_line(line: str) -> Optional[dict[str, Any]]:
    """Decode one ``data: {...}`` line; ``[DONE]``, comments and bad JSON yield None."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return chunk if isinstance(chunk, dict) else None


def _title_from_path(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if not parts:
        return ""
    last = _TITLE_SUFFIX_RE.sub("", parts[-1].replace("-", " ").replace("_", " "))
    return " ".join(word[:1].upper() + word[1:] for word in last.split(" "))


def transform_citations(urls: list[str]) -> list[Citation]:
    """Citation records from bare URLs: domain, a title guessed from the path, favicon."""
    citations: list[Citation] = []
    for index, url in enumerate(urls, start=1):
        domain = "Unknown"
        title = "Source"
        parsed = urlparse(url)
        if parsed.scheme and parsed.hostname:
            domain = parsed.hostname.removeprefix("www.")
            title = _title_from_path(parsed.path) or domain
        citations.append(
            Citation(
                id=f"citation-{index}",
                url=url,
                title=title,
                domain=domain,
                favicon=f"https://www.google.com/s2/favicons?domain={domain}&sz=32",
            )
        )
    return citations


def calculate_note_confidence(content: str, citations: list[Citation]) -> float:
    """Heuristic 0.5-0.95 score from answer length, source count and content signals."""
    score = 0.5
    length = len(content)
    if length > 500:
        score += 0.1
    if length > 1000:
        score += 0.1
    if length > 2000:
        score += 0.05

    count = len(citations)
    if count >= 2:
        score += 0.1
    if count >= 4:
        score += 0.1
    if count >= 6:
        score += 0.05

    if _NUMBER_RE.search(content):
        score += 0.05
    if _QUOTE_RE.search(content):
        score += 0.05
    if _LIST_RE.search(content):
        score += 0.03
    return min(0.95, score)


def _system_prompt(context: Optional[str]) -> str:
    context_block = f"\n\nContext from previous research:\n{context}" if context else ""
    return render_prompt("search.system_prompt", context_block=context_block)


async def stream_answer(
    question: str,
    *,
    model: str,
    context: Optional[str] = None,
    on_citations: Optional[Callable[[int], Any]] = None,
    timeout: Optional[float] = None,
) -> PerplexityAnswer:
    """Stream a chat completion from Perplexity and collect content and citation URLs.

    API: POST {perplexity_base_url}/chat/completions with ``stream: true``.
    Citations arrive on the final chunks as a list of URLs.
    """
    api_key = settings.perplexity_api_key
    if not api_key:
        raise ValueError("PERPLEXITY_API_KEY not configured")

    sanitize_ssl_keylogfile()
    url = f"{settings.perplexity_base_url.rstrip('/')}/chat/completions"
    body = {
        "model": model,
        "messages": [
            {"role": "system", "content": _system_prompt(context)},
            {"role": "user", "content": question},
        ],
        "stream": True,
    }
    answer = PerplexityAnswer()

    async with httpx.AsyncClient(timeout=timeout or settings.perplexity_timeout_s) as client:
        async with client.stream(
            "POST",
            url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json=body,
        ) as response:
            if response.is_error:
                await response.aread()
            response.raise_for_status()

            parts: list[str] = []
            async for line in response.aiter_lines():
                chunk = parse_sse_line(line)
                if chunk is None:
                    continue
                choices = chunk.get("choices") or []
                if choices:
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        parts.append(delta)
                urls = chunk.get("citations")
                if isinstance(urls, list) and urls and len(urls) != len(answer.citations):
                    answer.citations = [u for u in urls if isinstance(u, str)]
                    if on_citations is not None:
                        on_citations(len(answer.citations))
            answer.content = "".join(parts)
    return answer


async def answer_question(
    question: str,
    *,
    session_id: str,
    sub_question_id: str,
    model: str,
    context: Optional[str] = None,
    on_progress: Optional[Callable[[int], Any]] = None,
) -> ResearchNote:
    """Answer one sub-question and wrap it as a research note."""
    started = time.monotonic()
    try:
        result = await stream_answer(question, model=model, context=context, on_citations=on_progress)
    except Exception as exc:
        log_llm_call(
            model=model,
            caller=f"perplexity:{sub_question_id}",
            duration_ms=int((time.monotonic() - started) * 1000),
            status="failed",
            error=str(exc),
        )
        raise

    log_llm_call(
        model=model,
        caller=f"perplexity:{sub_question_id}",
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    if not result.content.strip():
        raise ValueError(f"Empty answer from {model} for {sub_question_id}")

    citations = transform_citations(result.citations)
    return ResearchNote(
        id=f"note-{session_id}-{sub_question_id}",
        session_id=session_id,
        sub_question_id=sub_question_id,
        content=result.content,
        citations=citations,
        confidence=calculate_note_confidence(result.content, citations),
    )
