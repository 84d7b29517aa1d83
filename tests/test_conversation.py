from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import InMemoryConversationStore

from agent_engine.app.conversation import (
    MAX_PERSISTED_TEXT,
    build_last_command,
    prepare_history,
    sanitize_result,
    should_load_history,
)
from agent_engine.app.models import (
    AgentResult,
    Message,
    NormalizedInput,
    Plan,
    PlanStep,
    StepResult,
    ToolCall,
)
from agent_engine.app.registry import TOOL_DEFINITIONS


def _message(role: str, content: str) -> Message:
    return Message(role=role, content=content, timestamp=datetime.now(tz=UTC))


def test_sanitize_result_keeps_only_allow_listed_fields() -> None:
    raw = {
        "success": True,
        "imageUrl": "https://cdn.example/a.png",
        "provider": "Gemini",
        "text": "x" * (MAX_PERSISTED_TEXT + 50),
        "raw_response": {"candidates": []},
        "api_key": "secret",
        "imageBuffer": b"\x89PNG",
        "attempts": [{"provider": "gemini"}],
    }

    sanitized = sanitize_result(raw)

    assert set(sanitized) == {"success", "imageUrl", "provider", "text"}
    assert len(sanitized["text"]) == MAX_PERSISTED_TEXT


def test_last_command_skips_non_persisted_tools() -> None:
    result = AgentResult(
        tool_calls=[
            ToolCall(
                tool="create_image",
                arguments={"prompt": "a cat"},
                success=True,
                result={"success": True, "imageUrl": "https://cdn/a.png", "debug": {"t": 1}},
            ),
            ToolCall(tool="get_chat_history", arguments={}, success=True),
        ],
        image_url="https://cdn/a.png",
    )

    tool, payload, media_refs = build_last_command(result, "draw a cat")

    assert tool == "create_image"
    assert payload["sanitized_result"] == {"success": True, "imageUrl": "https://cdn/a.png"}
    assert payload["failed"] is False
    assert media_refs["image_url"] == "https://cdn/a.png"


def test_turn_with_only_ephemeral_tools_saves_nothing() -> None:
    result = AgentResult(tool_calls=[ToolCall(tool="retry_last_command", success=False)])
    assert build_last_command(result, "again") is None


def test_multi_step_result_is_saved_with_its_plan() -> None:
    plan = Plan(
        is_multi_step=True,
        steps=[
            PlanStep(step_number=1, tool="send_location", action="send location"),
            PlanStep(step_number=2, tool="create_image", action="sunset"),
        ],
    )
    result = AgentResult(
        multi_step=True,
        plan=plan,
        steps_completed=1,
        total_steps=2,
        step_results=[
            StepResult(step_number=1, tool="send_location", success=True),
            StepResult(step_number=2, tool="create_image", success=False, error="boom"),
        ],
    )
    store = InMemoryConversationStore()

    tool, payload, media_refs = build_last_command(result, "send location and then a sunset")
    store.save_last_command("chat-1", tool, payload, media_refs)
    saved = store.get_last_command("chat-1")

    assert saved.tool == "multi_step"
    assert saved.is_multi_step is True
    assert [step.tool for step in saved.plan.steps] == ["send_location", "create_image"]
    assert saved.steps_completed == 1
    assert saved.failed is False
    assert saved.step_results[1].error == "boom"


def test_saved_last_command_drops_unknown_payload_keys() -> None:
    store = InMemoryConversationStore()
    store.save_last_command(
        "chat-1",
        "create_image",
        {
            "arguments": {"prompt": "a cat"},
            "sanitized_result": {"imageUrl": "https://cdn/a.png", "raw": "x"},
            "provider_payload": {"token": "secret"},
        },
        {"image_url": "https://cdn/a.png"},
    )

    stored = store.last_commands["chat-1"]
    assert "provider_payload" not in stored
    assert stored["sanitized_result"] == {"imageUrl": "https://cdn/a.png"}


def test_history_strategy() -> None:
    assert should_load_history(NormalizedInput(text="yes")) is True
    assert should_load_history(NormalizedInput(text="make it like the previous one")) is True
    assert should_load_history(NormalizedInput(text="create an image of a cat")) is False
    assert should_load_history(NormalizedInput(text="translate hello to Spanish")) is False
    assert (
        should_load_history(NormalizedInput(text="yes", image_url="https://in/p.jpg")) is False
    )
    assert should_load_history(NormalizedInput(text="yes", quoted_text="old message")) is False


def test_prepare_history_filters_acks_and_lifts_leading_assistant_messages() -> None:
    messages = [
        _message("assistant", "Should I make it darker?"),
        _message("user", "draw a castle"),
        _message("assistant", "Generating your image..."),
        _message("assistant", "Here is your castle."),
    ]

    filtered, context = prepare_history(messages)

    assert [message.content for message in filtered] == ["draw a castle", "Here is your castle."]
    assert context.startswith("IMPORTANT CONTEXT")
    assert '"Should I make it darker?"' in context


def test_store_keeps_latest_messages_in_order_and_clears() -> None:
    store = InMemoryConversationStore()
    for index in range(5):
        store.append_message("chat-1", "user", f"message {index}")
    store.save_user_preference("chat-1", "language", "he")
    store.add_summary("chat-1", "Talked about cats", ["cats"])

    recent = store.get_recent_history("chat-1", limit=2)
    memory = store.get_long_term_memory("chat-1")
    store.clear("chat-1")

    assert [message.content for message in recent] == ["message 3", "message 4"]
    assert memory.preferences == {"language": "he"}
    assert memory.summaries[0].key_topics == ["cats"]
    assert store.get_recent_history("chat-1") == []
    assert store.get_last_command("chat-1") is None


@pytest.mark.parametrize(
    "tool",
    sorted(name for name, definition in TOOL_DEFINITIONS.items() if not definition.persistable),
)
def test_tools_flagged_ephemeral_never_become_last_command(tool: str) -> None:
    result = AgentResult(
        tool_calls=[
            ToolCall(tool="create_image", arguments={"prompt": "a cat"}, success=True),
            ToolCall(tool=tool, arguments={}, success=True),
        ]
    )

    saved_tool, _, _ = build_last_command(result, "whatever")

    assert saved_tool == "create_image"


def test_ephemeral_flag_covers_history_and_retry_tools() -> None:
    ephemeral = {
        name for name, definition in TOOL_DEFINITIONS.items() if not definition.persistable
    }
    assert ephemeral == {
        "retry_last_command",
        "get_chat_history",
        "save_user_preference",
        "get_long_term_memory",
        "transcribe_audio",
    }
