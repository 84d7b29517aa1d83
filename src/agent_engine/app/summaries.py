"""Automatic conversation summaries.

Every `summary_every_messages` stored messages the recent history is condensed
through the text provider chain into a short summary, a few key topics, and
any user preferences the model noticed. Summaries feed long-term memory.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import TYPE_CHECKING, Any

from .models import Message
from .settings import Settings

if TYPE_CHECKING:
    from .conversation import ConversationStore
    from .tools import ToolDispatcher

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY_CHARS = 500
_JSON_OBJECT_RE = re.compile(r"\{.*\}", flags=re.S)

SUMMARY_PROMPT = """Analyze this conversation and return JSON only:
{{"summary": "2-3 sentences", "keyTopics": ["3 to 5 topics"], "userPreferences": {{}}}}
Put stable user preferences (language, style, favorite provider) in userPreferences.

Conversation:
{conversation}"""


def format_transcript(messages: list[Message]) -> str:
    lines = []
    for message in messages:
        speaker = "User" if message.role == "user" else "Bot"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines)


def parse_summary(raw: str) -> tuple[str, list[str], dict[str, Any]]:
    """Read summary, topics, and preferences; plain text becomes a truncated summary."""
    match = _JSON_OBJECT_RE.search(raw or "")
    if match is not None:
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and str(parsed.get("summary") or "").strip():
            topics = parsed.get("keyTopics") or []
            preferences = parsed.get("userPreferences") or {}
            return (
                str(parsed["summary"]).strip(),
                [str(topic) for topic in topics if str(topic).strip()]
                if isinstance(topics, list)
                else [],
                preferences if isinstance(preferences, dict) else {},
            )
    return (raw or "").strip()[:FALLBACK_SUMMARY_CHARS], [], {}


class ConversationSummarizer:
    def __init__(
        self, *, dispatcher: ToolDispatcher, store: ConversationStore, settings: Settings
    ) -> None:
        self.dispatcher = dispatcher
        self.store = store
        self.settings = settings

    def is_due(self, message_count: int) -> bool:
        every = self.settings.summary_every_messages
        return every > 0 and message_count > 0 and message_count % every == 0

    async def maybe_summarize(self, conversation_id: str) -> str | None:
        """Summarize when the conversation just crossed the interval; never raises."""
        if self.settings.summary_every_messages <= 0:
            return None
        try:
            count = await asyncio.to_thread(self.store.count_messages, conversation_id)
            if not self.is_due(count):
                return None
            return await self.summarize(conversation_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "summary event=degraded conversation_id=%s reason=%s", conversation_id, exc
            )
            return None

    async def summarize(self, conversation_id: str) -> str | None:
        limit = max(self.settings.summary_every_messages, self.settings.summary_min_messages)
        messages = await asyncio.to_thread(
            self.store.get_recent_history, conversation_id, limit
        )
        if len(messages) < self.settings.summary_min_messages:
            logger.info(
                "summary event=skipped conversation_id=%s messages=%d",
                conversation_id,
                len(messages),
            )
            return None

        prompt = SUMMARY_PROMPT.format(conversation=format_transcript(messages))
        result = await self.dispatcher.generate(
            "summarize_conversation", "text", {"prompt": prompt}
        )
        if not result.success:
            logger.warning(
                "summary event=failed conversation_id=%s error=%s", conversation_id, result.error
            )
            return None

        summary, topics, preferences = parse_summary(str(result.data.get("text") or ""))
        if not summary:
            return None
        await asyncio.to_thread(self.store.add_summary, conversation_id, summary, topics)
        for key, value in preferences.items():
            await asyncio.to_thread(
                self.store.save_user_preference, conversation_id, str(key), value
            )
        logger.info(
            "summary event=saved conversation_id=%s topics=%d preferences=%d",
            conversation_id,
            len(topics),
            len(preferences),
        )
        return summary
