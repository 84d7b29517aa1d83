from __future__ import annotations

import asyncio

from conftest import FakeProvider, InMemoryConversationStore, make_settings, media

from agent_engine.app.fallback import ProviderFallbackCoordinator
from agent_engine.app.models import NormalizedInput
from agent_engine.app.providers import ProviderRegistry
from agent_engine.app.tools import ToolDispatcher, TurnState


def _dispatcher(
    providers: dict[str, FakeProvider], store: InMemoryConversationStore | None = None
) -> ToolDispatcher:
    return ToolDispatcher(
        coordinator=ProviderFallbackCoordinator(
            providers=ProviderRegistry(providers), default_timeout_s=1.0
        ),
        store=store or InMemoryConversationStore(),
        settings=make_settings(),
    )


def _state(text: str = "", **input_fields) -> TurnState:
    return TurnState(
        conversation_id="chat-1",
        request_text=text,
        normalized_input=NormalizedInput(text=text, **input_fields),
    )


def test_dispatch_runs_media_tool_and_tracks_asset() -> None:
    gemini = FakeProvider("gemini", media("https://cdn.example/cat.png", "Gemini"))
    dispatcher = _dispatcher({"gemini": gemini})
    state = _state("draw a cat")

    call = asyncio.run(dispatcher.dispatch("create_image", {"prompt": "a cat"}, state))

    assert call.success is True
    assert call.provider == "gemini"
    assert call.attempts == 1
    assert call.result["imageUrl"] == "https://cdn.example/cat.png"
    assert call.result["prompt"] == "a cat"
    assert state.assets.images == [{"url": "https://cdn.example/cat.png", "caption": "a cat"}]
    assert gemini.calls == [("image", {"prompt": "a cat"})]


def test_explicit_provider_is_the_only_provider_tried() -> None:
    gemini = FakeProvider("gemini", media("https://cdn.example/g.png"))
    grok = FakeProvider("grok", media("https://cdn.example/x.png"))
    dispatcher = _dispatcher({"gemini": gemini, "grok": grok})

    call = asyncio.run(
        dispatcher.dispatch("create_image", {"prompt": "a cat", "provider": "Grok"}, _state())
    )

    assert call.provider == "grok"
    assert gemini.calls == []


def test_invalid_arguments_fail_validation_without_provider_calls() -> None:
    gemini = FakeProvider("gemini", media("https://cdn.example/cat.png"))
    dispatcher = _dispatcher({"gemini": gemini})

    call = asyncio.run(dispatcher.dispatch("create_image", {"size": "big"}, _state()))

    assert call.success is False
    assert call.error.startswith("Invalid arguments for create_image")
    assert gemini.calls == []


def test_unknown_tool_is_reported() -> None:
    call = asyncio.run(_dispatcher({}).dispatch("summon_dragon", {}, _state()))
    assert call.error == "Unknown tool: summon_dragon"


def test_tool_outside_current_step_is_blocked() -> None:
    dispatcher = _dispatcher({})
    state = _state()
    state.begin_step(1, "send_location")

    call = asyncio.run(dispatcher.dispatch("get_chat_history", {}, state))

    assert call.success is False
    assert call.error == (
        "This tool is not part of the current step. Please execute only: send_location"
    )
    assert state.tool_calls == []


def test_identical_non_stochastic_call_is_blocked() -> None:
    openai = FakeProvider("openai")
    dispatcher = _dispatcher({"openai": openai})
    state = _state()
    arguments = {"text": "hello", "target_language": "French"}

    first = asyncio.run(dispatcher.dispatch("translate_text", arguments, state))
    second = asyncio.run(dispatcher.dispatch("translate_text", arguments, state))

    assert first.success is True
    assert first.result["translatedText"] == "openai text"
    assert second.error.startswith("Duplicate call blocked")
    assert len(openai.calls) == 1


def test_successful_creation_is_not_repeated_in_the_same_turn() -> None:
    gemini = FakeProvider("gemini", media("https://cdn.example/1.png"))
    dispatcher = _dispatcher({"gemini": gemini})
    state = _state()

    asyncio.run(dispatcher.dispatch("create_image", {"prompt": "a cat"}, state))
    again = asyncio.run(dispatcher.dispatch("create_image", {"prompt": "a dog"}, state))

    assert again.error == "create_image already succeeded in this turn. Do not create it again."
    assert len(gemini.calls) == 1


def test_attached_image_fills_missing_image_url() -> None:
    gemini = FakeProvider("gemini", media("https://cdn.example/edited.png"))
    dispatcher = _dispatcher({"gemini": gemini})
    state = _state("make it blue", image_url="https://in.example/photo.jpg")

    call = asyncio.run(dispatcher.dispatch("edit_image", {"prompt": "make it blue"}, state))

    assert call.success is True
    assert gemini.calls[0] == (
        "image_edit",
        {"prompt": "make it blue", "image_url": "https://in.example/photo.jpg"},
    )


def test_self_contained_turn_never_reads_history() -> None:
    store = InMemoryConversationStore()
    dispatcher = _dispatcher({"veo3": FakeProvider("veo3", media("https://cdn/v.mp4"))}, store)
    state = _state("animate", image_url="https://in.example/photo.jpg")

    asyncio.run(dispatcher.dispatch("image_to_video", {"prompt": "animate"}, state))

    assert store.history_reads == 0


def test_history_dependent_tool_loads_history_once() -> None:
    store = InMemoryConversationStore()
    store.append_message("chat-1", "user", "I like jazz")
    dispatcher = _dispatcher({}, store)
    state = _state("what did I say before?")

    call = asyncio.run(dispatcher.dispatch("get_chat_history", {"limit": 5}, state))

    assert call.success is True
    assert call.result["text"] == "user: I like jazz"
    assert state.history_loaded is True
    # One read for injection, one for the tool itself.
    assert store.history_reads == 2


def test_preferences_round_trip_through_memory_tools() -> None:
    store = InMemoryConversationStore()
    dispatcher = _dispatcher({}, store)
    state = _state()

    saved = asyncio.run(
        dispatcher.dispatch("save_user_preference", {"key": "style", "value": "anime"}, state)
    )
    memory = asyncio.run(dispatcher.dispatch("get_long_term_memory", {}, state))

    assert saved.success is True
    assert memory.result["data"]["preferences"] == {"style": "anime"}


def test_send_location_stays_inside_region() -> None:
    state = _state()
    call = asyncio.run(_dispatcher({}).dispatch("send_location", {"region": "Israel"}, state))

    assert call.success is True
    assert 29.5 <= call.result["latitude"] <= 33.3
    assert 34.3 <= call.result["longitude"] <= 35.9


def test_poll_with_options_needs_no_provider() -> None:
    call = asyncio.run(
        _dispatcher({}).dispatch(
            "create_poll", {"topic": "Lunch?", "options": ["Pizza", "Sushi"]}, _state()
        )
    )

    assert call.success is True
    assert call.result["poll"] == {"question": "Lunch?", "options": ["Pizza", "Sushi"]}
