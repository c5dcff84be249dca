"""Async Claude API client for single-shot completions."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from chatmem.config import settings

logger = logging.getLogger(__name__)

_client: anthropic.AsyncAnthropic | None = None


def _get_client() -> anthropic.AsyncAnthropic:
    """Lazily initialize the Anthropic client."""
    global _client  # noqa: PLW0603
    if _client is None:
        _client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return _client


async def complete_text(
    messages: list[dict[str, Any]],
    *,
    system: str | list[dict[str, Any]] | None = None,
    model: str | None = None,
    max_tokens: int = 1024,
) -> str:
    """Single-shot Claude call: no tools, no streaming.

    Used for isolated tasks such as conversation summaries.
    """
    client = _get_client()
    kwargs: dict[str, Any] = {
        "model": model or settings.summary_model,
        "max_tokens": max_tokens,
        "messages": messages,
    }
    if system is not None:
        kwargs["system"] = system
    response = await client.messages.create(**kwargs)
    return response.content[0].text
