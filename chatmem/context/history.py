"""Seeding a new short-term buffer from platform history."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chatmem.context.models import ConversationMessage

logger = logging.getLogger(__name__)

# A bot reply this close to the preceding user message is the echo of the
# interaction currently being handled.
ECHO_WINDOW_SECONDS = 15.0


class HistorySource(Protocol):
    """Anything that can return recent messages for a platform channel, oldest first."""

    async def fetch_recent_messages(self, channel_ref: Any) -> list[ConversationMessage]: ...


def filter_seed_history(
    messages: Sequence[ConversationMessage],
    *,
    bot_id: str | None,
    command_prefix: str = "/",
    limit: int = 35,
) -> list[ConversationMessage]:
    """Drop commands, other bots and the trailing command/reply echo.

    Keeps the assistant's own messages (``author_id == bot_id``) and every
    non-bot author. Returns at most *limit* messages, newest last.
    """
    filtered = []
    for msg in messages:
        if msg.author_is_bot and msg.author_id != bot_id:
            continue
        text = msg.text.strip()
        if command_prefix and text.startswith(command_prefix):
            continue
        if not text:
            continue
        filtered.append(msg)

    if len(filtered) >= 2 and bot_id is not None:
        last, second_last = filtered[-1], filtered[-2]
        if last.author_id == bot_id and second_last.author_id != bot_id:
            gap = (last.timestamp - second_last.timestamp).total_seconds()
            if gap < ECHO_WINDOW_SECONDS:
                filtered = filtered[:-2]

    seeded = filtered[-limit:] if limit > 0 else []
    logger.debug("Seed history: %d fetched, %d kept", len(messages), len(seeded))
    return seeded
