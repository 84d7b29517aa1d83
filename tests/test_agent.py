from __future__ import annotations

import asyncio

from conftest import FakeProvider, failure, media

from agent_engine.app.aggregator import MAX_ITERATIONS_TEXT, STEP_TIMED_OUT_ERROR, TIMED_OUT_NOTE
from agent_engine.app.decision import Decision
from agent_engine.app.models import NormalizedInput, Plan, PlanStep, ProviderResult


def test_sequenced_request_runs_steps_in_order(make_engine) -> None:
    gemini = FakeProvider("gemini", media("https://cdn.example/sunset.png"))
    engine = make_engine({"gemini": gemini})

    result = asyncio.run(
        engine.execute("send location and then create an image of a sunset", "chat-1")
    )

    assert result.multi_step is True
    assert [call.tool for call in result.tool_calls] == ["send_location", "create_image"]
    assert [call.step_number for call in result.tool_calls] == [1, 2]
    assert result.success is True
    assert result.steps_completed == 2
    assert result.total_steps == 2
    assert result.image_url == "https://cdn.example/sunset.png"
    assert result.latitude is not None
    assert gemini.calls[0][1]["prompt"] == "a sunset"


def test_failed_middle_step_does_not_stop_the_plan(make_engine) -> None:
    engine = make_engine(
        {
            "gemini": FakeProvider("gemini", media("https://cdn.example/a.png")),
            "suno": FakeProvider("suno", failure("Lyrics blocked by content policy")),
        }
    )
    plan = Plan(
        is_multi_step=True,
        steps=[
            PlanStep(step_number=1, tool="create_image", action="draw a cat",
                     parameters={"prompt": "a cat"}),
            PlanStep(step_number=2, tool="create_music", action="song about cats",
                     parameters={"prompt": "cats"}),
            PlanStep(step_number=3, tool="send_location", action="send a location"),
        ],
    )

    class FixedPlanner:
        async def plan(self, request_text, context_markers=None):
            return plan

    engine.planner = FixedPlanner()
    result = asyncio.run(engine.execute("draw, then sing, then send location", "chat-1"))

    assert result.success is True
    assert [(step.step_number, step.success) for step in result.step_results] == [
        (1, True),
        (2, False),
        (3, True),
    ]
    assert result.step_results[1].error == "Lyrics blocked by content policy"
    assert result.steps_completed == 2
    assert "Step 2 failed: Lyrics blocked by content policy" in result.text


def test_single_step_media_request(make_engine) -> None:
    engine = make_engine({"gemini": FakeProvider("gemini", media("https://cdn.example/c.png"))})

    result = asyncio.run(engine.execute("create an image of a cat", "chat-1"))

    assert result.multi_step is False
    assert result.success is True
    assert result.image_url == "https://cdn.example/c.png"
    assert result.image_caption == "a cat"
    assert result.tools_used == ["create_image"]
    assert result.iterations == 2


def test_single_step_failure_surfaces_provider_error(make_engine) -> None:
    engine = make_engine({}, image_providers=["gemini"])

    result = asyncio.run(engine.execute("create an image of a cat", "chat-1"))

    assert result.success is False
    assert result.error == "Gemini is not configured"
    assert result.text == "Gemini is not configured"


def test_loop_is_bounded_by_max_iterations(make_engine) -> None:
    engine = make_engine({})

    class AlwaysLocation:
        async def decide(self, request):
            return Decision(action="tool", tool="send_location", arguments={})

    engine.decision = AlwaysLocation()
    result = asyncio.run(engine.execute("send me somewhere", "chat-1", max_iterations=3))

    assert result.iterations == 3
    assert len(result.tool_calls) == 3
    assert result.success is True
    assert result.text == MAX_ITERATIONS_TEXT


def test_iteration_limit_keeps_last_text_result(make_engine) -> None:
    engine = make_engine(
        {"openai": FakeProvider("openai", ProviderResult(success=True, text="Hola mundo"))}
    )
    queries = iter(["hola", "hola mundo", "hola mundo translation"])

    class AlwaysSearch:
        async def decide(self, request):
            return Decision(action="tool", tool="search_web", arguments={"query": next(queries)})

    engine.decision = AlwaysSearch()
    result = asyncio.run(engine.execute("how do you say hello", "chat-1", max_iterations=2))

    assert [call.success for call in result.tool_calls] == [True, True]
    assert result.success is True
    assert result.text == "Hola mundo"


def test_explicit_iteration_limit_is_kept_with_sequencing_words(make_engine) -> None:
    engine = make_engine({})

    class AlwaysLocation:
        async def decide(self, request):
            return Decision(action="tool", tool="send_location", arguments={})

    engine.decision = AlwaysLocation()
    result = asyncio.run(
        engine.execute("send me somewhere and then", "chat-1", max_iterations=2)
    )

    assert result.multi_step is False
    assert result.iterations == 2


def test_turn_timeout_returns_partial_results(make_engine) -> None:
    engine = make_engine(
        {
            "gemini": FakeProvider("gemini", media("https://cdn.example/a.png")),
            "veo3": FakeProvider("veo3", media("https://cdn.example/v.mp4"), delay_s=5.0),
        },
        agent_timeout_s=1.0,
        multi_step_min_timeout_s=1.0,
    )
    engine.dispatcher.coordinator.timeouts_s["video"] = 10.0

    result = asyncio.run(
        engine.execute("create an image of a fox and then make a video of a fox", "chat-1")
    )

    assert result.timed_out is True
    assert result.image_url == "https://cdn.example/a.png"
    assert result.video_url is None
    assert result.total_steps == 2
    assert [(step.step_number, step.success) for step in result.step_results] == [
        (1, True),
        (2, False),
    ]
    assert result.step_results[1].error == STEP_TIMED_OUT_ERROR
    assert result.steps_completed == 1
    assert "All steps are done" not in result.text
    assert f"Step 2 failed: {STEP_TIMED_OUT_ERROR}" in result.text
    assert result.text.endswith(TIMED_OUT_NOTE)


def test_attached_media_skips_history_lookup(make_engine, store) -> None:
    store.append_message("chat-1", "user", "earlier message")
    engine = make_engine({"gemini": FakeProvider("gemini", media("https://cdn.example/e.png"))})

    result = asyncio.run(
        engine.execute(
            "remove the background",
            "chat-1",
            normalized_input=NormalizedInput(
                text="remove the background", image_url="https://in.example/p.jpg"
            ),
        )
    )

    assert result.tools_used == ["edit_image"]
    assert store.history_reads == 0


def test_plain_follow_up_loads_filtered_history(make_engine, store) -> None:
    store.append_message("chat-1", "assistant", "Want a poem about the sea?")
    store.append_message("chat-1", "user", "maybe")
    store.append_message("chat-1", "assistant", "Creating your image...")
    engine = make_engine({})
    seen = {}

    class Recording:
        async def decide(self, request):
            seen["history"] = [message.content for message in request.history]
            seen["system_context"] = request.system_context
            return Decision(action="final", text="Sure!")

    engine.decision = Recording()
    result = asyncio.run(engine.execute("yes", "chat-1"))

    assert result.text == "Sure!"
    assert seen["history"] == ["maybe"]
    assert "Want a poem about the sea?" in seen["system_context"]


def test_route_to_agent_persists_turn_and_last_command(make_engine, store) -> None:
    engine = make_engine({"gemini": FakeProvider("gemini", media("https://cdn.example/c.png"))})

    result = asyncio.run(
        engine.route_to_agent(NormalizedInput(text="create an image of a cat"), "chat-9")
    )

    assert result.success is True
    roles = [message.role for message in store.messages["chat-9"]]
    assert roles == ["user", "assistant"]
    assert store.messages["chat-9"][1].metadata["imageUrl"] == "https://cdn.example/c.png"
    last_command = store.get_last_command("chat-9")
    assert last_command.tool == "create_image"
    assert last_command.arguments == {"prompt": "a cat"}
    assert last_command.image_url == "https://cdn.example/c.png"


def test_persistence_failure_does_not_block_result(make_engine, store) -> None:
    engine = make_engine({"gemini": FakeProvider("gemini", media("https://cdn.example/c.png"))})

    def broken_append(*args, **kwargs):
        raise RuntimeError("database is down")

    store.append_message = broken_append
    result = asyncio.run(
        engine.route_to_agent(NormalizedInput(text="create an image of a cat"), "chat-9")
    )

    assert result.success is True
    assert result.image_url == "https://cdn.example/c.png"


def test_route_to_agent_saves_summary_at_interval(make_engine, store) -> None:
    store.append_message("chat-9", "user", "hi there")
    store.append_message("chat-9", "assistant", "Hello! What should I make?")
    summary_json = (
        '{"summary": "The user asked for cat pictures.", "keyTopics": ["cats", "images"],'
        ' "userPreferences": {"language": "en"}}'
    )
    openai = FakeProvider("openai", ProviderResult(success=True, text=summary_json))
    engine = make_engine(
        {"gemini": FakeProvider("gemini", media("https://cdn.example/c.png")), "openai": openai},
        summary_every_messages=4,
        summary_min_messages=4,
    )

    asyncio.run(engine.route_to_agent(NormalizedInput(text="create an image of a cat"), "chat-9"))

    assert len(openai.calls) == 1
    assert "User: hi there" in openai.calls[0][1]["prompt"]
    assert "Bot: Hello! What should I make?" in openai.calls[0][1]["prompt"]
    saved = store.summaries["chat-9"]
    assert [item.summary for item in saved] == ["The user asked for cat pictures."]
    assert saved[0].key_topics == ["cats", "images"]
    assert store.preferences["chat-9"] == {"language": "en"}


def test_summary_is_skipped_between_intervals(make_engine, store) -> None:
    openai = FakeProvider("openai")
    engine = make_engine(
        {"gemini": FakeProvider("gemini", media("https://cdn.example/c.png")), "openai": openai},
        summary_every_messages=4,
        summary_min_messages=2,
    )

    asyncio.run(engine.route_to_agent(NormalizedInput(text="create an image of a cat"), "chat-9"))

    assert openai.calls == []
    assert "chat-9" not in store.summaries


def test_failed_summary_does_not_block_result(make_engine, store) -> None:
    store.append_message("chat-9", "user", "hi there")
    store.append_message("chat-9", "assistant", "Hello!")
    engine = make_engine(
        {
            "gemini": FakeProvider("gemini", media("https://cdn.example/c.png")),
            "openai": FakeProvider("openai", failure("model overloaded")),
        },
        summary_every_messages=4,
        summary_min_messages=4,
    )

    result = asyncio.run(
        engine.route_to_agent(NormalizedInput(text="create an image of a cat"), "chat-9")
    )

    assert result.success is True
    assert "chat-9" not in store.summaries


def test_long_term_memory_reaches_the_decision_context(make_engine, store) -> None:
    store.save_user_preference("chat-3", "language", "es")
    store.add_summary("chat-3", "The user is planning a trip to Lisbon.", ["travel"])
    engine = make_engine({})
    seen = {}

    class Recording:
        async def decide(self, request):
            seen["system_context"] = request.system_context
            return Decision(action="final", text="Claro!")

    engine.decision = Recording()
    result = asyncio.run(engine.route_to_agent(NormalizedInput(text="yes"), "chat-3"))

    assert result.text == "Claro!"
    assert "User preferences: language=es" in seen["system_context"]
    assert "The user is planning a trip to Lisbon." in seen["system_context"]
