"""OpenRouter chat client used for classification, planning and synthesis."""
from __future__ import annotations

import time
from typing import Any, Callable, Optional

from researchflow.config import settings
from researchflow.services.env_safety import sanitize_ssl_keylogfile
from researchflow.services.logger import log_llm_call


def _temperature_for_model(model: str) -> int:
    # Some OpenAI GPT-5-compatible gateways reject temperature=0.
    lowered = (model or "").lower()
    if "gpt-5" in lowered:
        return 1
    return 0


def _messages(system: str, prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]


def _usage(usage: Any) -> tuple[int, int]:
    if not usage:
        return 0, 0
    return (
        getattr(usage, "prompt_tokens", 0) or 0,
        getattr(usage, "completion_tokens", 0) or 0,
    )


def get_client() -> Any:
    """Get an OpenAI-compatible async client pointed at OpenRouter."""
    from openai import AsyncOpenAI

    sanitize_ssl_keylogfile()
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


def get_planner_model() -> str:
    return settings.planner_model or get_model()


_client: Any | None = None


def client() -> Any:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


async def complete(
    system: str,
    prompt: str,
    *,
    model: Optional[str] = None,
    max_tokens: int = 1000,
    caller: str = "llm",
) -> str:
    """Single non-streaming completion; returns the message text."""
    model = model or get_model()
    started = time.monotonic()
    try:
        response = await client().chat.completions.create(
            model=model,
            messages=_messages(system, prompt),
            max_tokens=max_tokens,
            temperature=_temperature_for_model(model),
        )
    except Exception as exc:
        log_llm_call(
            model=model,
            caller=caller,
            duration_ms=int((time.monotonic() - started) * 1000),
            status="failed",
            error=str(exc),
        )
        raise

    input_tokens, output_tokens = _usage(getattr(response, "usage", None))
    log_llm_call(
        model=model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    return getattr(choices[0].message, "content", None) or ""


async def stream_text(
    system: str,
    prompt: str,
    on_text: Optional[Callable[[str], Any]] = None,
    *,
    model: Optional[str] = None,
    max_tokens: int = 4000,
    caller: str = "llm_stream",
) -> str:
    """Stream a completion, calling ``on_text`` per delta; returns the full text."""
    model = model or get_model()
    started = time.monotonic()
    parts: list[str] = []
    input_tokens = output_tokens = 0
    try:
        stream = await client().chat.completions.create(
            model=model,
            messages=_messages(system, prompt),
            max_tokens=max_tokens,
            temperature=_temperature_for_model(model),
            stream=True,
            stream_options={"include_usage": True},
        )
        try:
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage:
                    input_tokens, output_tokens = _usage(usage)
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                text = getattr(delta, "content", None) if delta else None
                if text:
                    parts.append(text)
                    if on_text is not None:
                        on_text(text)
        finally:
            await stream.close()
    except Exception as exc:
        log_llm_call(
            model=model,
            caller=caller,
            duration_ms=int((time.monotonic() - started) * 1000),
            status="failed",
            error=str(exc),
        )
        raise

    log_llm_call(
        model=model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return "".join(parts)
