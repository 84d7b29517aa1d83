"""Conversation store: message history, last command, and long-term memory.

Beginner terms:
- lastCommand: sanitized record of the most recent persistable tool call, used
  by retry_last_command and for multi-turn continuity.
- Sanitization: reducing a raw tool result to an allow-listed set of fields
  before it is persisted.
- History strategy: deciding whether a turn should pull recent messages at all.

The store only persists and reads. Deciding when to skip history is the
engine's job; skipping the store has no side effects here.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import (
    AgentResult,
    ConversationSummary,
    LastCommand,
    LongTermMemory,
    Message,
    NormalizedInput,
)
from .registry import get_tool
from .storage import load_psycopg, parse_datetime

logger = logging.getLogger(__name__)

# Fields allowed to survive into a persisted lastCommand result.
ALLOWED_RESULT_KEYS = frozenset(
    {
        "success",
        "data",
        "error",
        "imageUrl",
        "imageCaption",
        "videoUrl",
        "audioUrl",
        "translation",
        "translatedText",
        "provider",
        "strategy_used",
        "poll",
        "latitude",
        "longitude",
        "locationInfo",
        "text",
        "prompt",
    }
)
MAX_PERSISTED_TEXT = 2000

# Assistant messages that only acknowledge work in progress.
_ACK_PREFIXES: tuple[str, ...] = (
    "creating",
    "generating",
    "sending",
    "searching",
    "translating",
    "working on it",
    "on it",
)

_SELF_CONTAINED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"^#?\s*(create|generate|make|draw|imagine)\s+(an?\s+)?"
        r"(image|picture|drawing|video|song|poll)\b",
        re.I,
    ),
    re.compile(r"^#?\s*(image|picture|video)\s+of\s+", re.I),
    re.compile(r"^#?\s*(create|make)\s+(a\s+)?poll\b", re.I),
    re.compile(r"^#?\s*(translate|search|define)\b", re.I),
    re.compile(r"^#?\s*(schedule|remind me)\b", re.I),
    re.compile(r"^#?\s*send\s+(a\s+|an\s+|the\s+|me\s+)?(location|image|video)\b", re.I),
)
_NEEDS_HISTORY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^#?\s*(yes|no|ok|okay|sure|right|exactly)\.?$", re.I),
    re.compile(r"^#?\s*(continue|more|another|give me more)$", re.I),
    re.compile(r"^#?\s*(thanks|thank you|great|awesome)\.?$", re.I),
    re.compile(
        r"\b(what i said|earlier|before|previous|this one|the same|similar to|like the)\b",
        re.I,
    ),
    re.compile(r"\b(when|where|why|how)\b.*\b(said|mentioned|discussed)\b", re.I),
    re.compile(r"^#?\s*(again|try again|repeat)\s*[.!]?$", re.I),
    re.compile(r"\b(what do you mean|didn't understand|explain)\b", re.I),
)


class ConversationStore(Protocol):
    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    def get_recent_history(self, conversation_id: str, limit: int = 20) -> list[Message]: ...

    def count_messages(self, conversation_id: str) -> int: ...

    def get_last_command(self, conversation_id: str) -> LastCommand | None: ...

    def save_last_command(
        self,
        conversation_id: str,
        tool: str,
        sanitized_args_and_result: dict[str, Any],
        media_refs: dict[str, str | None] | None = None,
    ) -> None: ...

    def get_long_term_memory(self, conversation_id: str) -> LongTermMemory: ...

    def save_user_preference(self, conversation_id: str, key: str, value: Any) -> None: ...

    def add_summary(
        self, conversation_id: str, summary: str, key_topics: list[str] | None = None
    ) -> None: ...

    def clear(self, conversation_id: str) -> None: ...


class PostgresConversationStore:
    """Thread-safe PostgreSQL-backed conversation store."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = load_psycopg()
        self.migrate()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id BIGSERIAL PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversations_conversation_id
                ON conversations(conversation_id, id DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS last_commands (
                    conversation_id TEXT PRIMARY KEY,
                    tool TEXT NOT NULL,
                    payload JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_preferences (
                    conversation_id TEXT NOT NULL,
                    pref_key TEXT NOT NULL,
                    pref_value JSONB,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (conversation_id, pref_key)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversation_summaries (
                    id BIGSERIAL PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    key_topics JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.commit()

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations (conversation_id, role, content, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    conversation_id,
                    role,
                    content,
                    self._json_wrapper(metadata or {}),
                    datetime.now(tz=UTC),
                ),
            )
            conn.commit()

    def get_recent_history(self, conversation_id: str, limit: int = 20) -> list[Message]:
        """Return the newest `limit` messages in chronological order."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content, metadata, created_at FROM conversations
                WHERE conversation_id = %s
                ORDER BY id DESC
                LIMIT %s
                """,
                (conversation_id, limit),
            ).fetchall()
        messages = [
            Message(
                role=row["role"],
                content=row["content"],
                metadata=_parse_json(row["metadata"]) or {},
                timestamp=parse_datetime(row["created_at"]),
            )
            for row in rows
        ]
        messages.reverse()
        return messages

    def count_messages(self, conversation_id: str) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM conversations WHERE conversation_id = %s",
                (conversation_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def get_last_command(self, conversation_id: str) -> LastCommand | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload, updated_at FROM last_commands WHERE conversation_id = %s",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return None
        payload = _parse_json(row["payload"]) or {}
        payload.setdefault("saved_at", parse_datetime(row["updated_at"]))
        return LastCommand.model_validate(payload)

    def save_last_command(
        self,
        conversation_id: str,
        tool: str,
        sanitized_args_and_result: dict[str, Any],
        media_refs: dict[str, str | None] | None = None,
    ) -> None:
        payload = last_command_payload(tool, sanitized_args_and_result, media_refs)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO last_commands (conversation_id, tool, payload, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (conversation_id) DO UPDATE
                SET tool = EXCLUDED.tool,
                    payload = EXCLUDED.payload,
                    updated_at = EXCLUDED.updated_at
                """,
                (conversation_id, tool, self._json_wrapper(payload), datetime.now(tz=UTC)),
            )
            conn.commit()

    def get_long_term_memory(self, conversation_id: str) -> LongTermMemory:
        with self._lock, self._connect() as conn:
            pref_rows = conn.execute(
                "SELECT pref_key, pref_value FROM user_preferences WHERE conversation_id = %s",
                (conversation_id,),
            ).fetchall()
            summary_rows = conn.execute(
                """
                SELECT summary, key_topics, created_at FROM conversation_summaries
                WHERE conversation_id = %s
                ORDER BY id DESC
                LIMIT 5
                """,
                (conversation_id,),
            ).fetchall()
        preferences = {row["pref_key"]: _parse_json(row["pref_value"]) for row in pref_rows}
        summaries = [
            ConversationSummary(
                summary=row["summary"],
                key_topics=_parse_json(row["key_topics"]) or [],
                created_at=parse_datetime(row["created_at"]),
            )
            for row in reversed(summary_rows)
        ]
        return LongTermMemory(preferences=preferences, summaries=summaries)

    def save_user_preference(self, conversation_id: str, key: str, value: Any) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_preferences (conversation_id, pref_key, pref_value, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (conversation_id, pref_key) DO UPDATE
                SET pref_value = EXCLUDED.pref_value,
                    updated_at = EXCLUDED.updated_at
                """,
                (conversation_id, key, self._json_wrapper(value), datetime.now(tz=UTC)),
            )
            conn.commit()

    def add_summary(
        self, conversation_id: str, summary: str, key_topics: list[str] | None = None
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversation_summaries
                    (conversation_id, summary, key_topics, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (
                    conversation_id,
                    summary,
                    self._json_wrapper(key_topics or []),
                    datetime.now(tz=UTC),
                ),
            )
            conn.commit()

    def clear(self, conversation_id: str) -> None:
        with self._lock, self._connect() as conn:
            for table in (
                "conversations",
                "last_commands",
                "user_preferences",
                "conversation_summaries",
            ):
                conn.execute(f"DELETE FROM {table} WHERE conversation_id = %s", (conversation_id,))
            conn.commit()

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)


def sanitize_result(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Strip a tool result down to the persisted allow-list.

    Nested dict/list values are kept only for `data` and `poll`, and only if
    they are JSON-serializable; binary values are always dropped.
    """
    if not raw:
        return {}
    sanitized: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in ALLOWED_RESULT_KEYS or isinstance(value, (bytes, bytearray)):
            continue
        if isinstance(value, str):
            sanitized[key] = value[:MAX_PERSISTED_TEXT]
        elif value is None or isinstance(value, (bool, int, float)):
            sanitized[key] = value
        elif isinstance(value, (dict, list)):
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                continue
            sanitized[key] = value
    return sanitized


def build_last_command(
    result: AgentResult, prompt: str
) -> tuple[str, dict[str, Any], dict[str, str | None]] | None:
    """Pick what a finished turn should persist as lastCommand.

    Returns (tool, payload, media_refs) or None when nothing persistable ran.
    """
    if result.multi_step and result.plan is not None:
        payload = {
            "prompt": prompt,
            "is_multi_step": True,
            "plan": result.plan.model_dump(mode="json"),
            "steps_completed": result.steps_completed,
            "total_steps": result.total_steps,
            "failed": result.steps_completed == 0,
            "step_results": [step.model_dump(mode="json") for step in result.step_results],
        }
        return "multi_step", payload, _media_refs(result)

    for call in reversed(result.tool_calls):
        definition = get_tool(call.tool)
        if definition is None or not definition.persistable:
            continue
        payload = {
            "prompt": prompt,
            "arguments": call.arguments,
            "sanitized_result": sanitize_result(call.result),
            "failed": not call.success,
        }
        return call.tool, payload, _media_refs(result)
    return None


def should_load_history(normalized: NormalizedInput) -> bool:
    """Decide whether a single-step turn needs recent history.

    Attached media or a quoted payload makes the request self-contained.
    """
    if normalized.is_self_contained():
        return False
    text = normalized.text.strip()
    if any(pattern.search(text) for pattern in _NEEDS_HISTORY_PATTERNS):
        return True
    if any(pattern.search(text) for pattern in _SELF_CONTAINED_PATTERNS):
        return False
    return True


def prepare_history(messages: list[Message]) -> tuple[list[Message], str]:
    """Filter ack messages and move leading assistant messages into context text."""
    filtered = [message for message in messages if not _is_ack(message)]
    orphaned: list[str] = []
    while filtered and filtered[0].role == "assistant":
        orphaned.append(filtered.pop(0).content)
    context_addition = ""
    if orphaned:
        lines = "\n".join(f'- "{text}"' for text in orphaned)
        context_addition = (
            "IMPORTANT CONTEXT: The last thing(s) you said to the user were:\n"
            f"{lines}\nThe user is responding to this."
        )
    return filtered, context_addition


def describe_long_term(memory: LongTermMemory | None) -> str:
    """Render saved preferences and the newest summaries as system context."""
    if memory is None:
        return ""
    parts: list[str] = []
    if memory.preferences:
        pairs = ", ".join(f"{key}={value}" for key, value in sorted(memory.preferences.items()))
        parts.append(f"User preferences: {pairs}")
    if memory.summaries:
        lines = "\n".join(f"- {item.summary}" for item in memory.summaries[-3:])
        parts.append(f"Earlier in this conversation:\n{lines}")
    return "\n".join(parts)


def _is_ack(message: Message) -> bool:
    if message.role != "assistant":
        return False
    lowered = message.content.strip().lower()
    return lowered.startswith(_ACK_PREFIXES) or lowered.endswith("...")


def last_command_payload(
    tool: str,
    sanitized_args_and_result: dict[str, Any],
    media_refs: dict[str, str | None] | None,
) -> dict[str, Any]:
    payload = dict(sanitized_args_and_result)
    payload["tool"] = tool
    payload["sanitized_result"] = sanitize_result(payload.get("sanitized_result"))
    for key, value in (media_refs or {}).items():
        if key in {"image_url", "video_url", "audio_url"}:
            payload[key] = value
    # Validate through the model so only known fields are stored.
    return LastCommand.model_validate(payload).model_dump(mode="json", exclude={"saved_at"})


def _media_refs(result: AgentResult) -> dict[str, str | None]:
    return {
        "image_url": result.image_url,
        "video_url": result.video_url,
        "audio_url": result.audio_url,
    }


def _parse_json(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw
