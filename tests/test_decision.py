from __future__ import annotations

import asyncio

from agent_engine.app.decision import (
    HELP_TEXT,
    Decision,
    DecisionFunction,
    DecisionRequest,
    DeterministicDecisionFunction,
)
from agent_engine.app.models import PlanStep, ToolCall
from agent_engine.app.registry import TOOL_DEFINITIONS

ALL_TOOLS = list(TOOL_DEFINITIONS)


def test_retry_phrase_calls_retry_with_provider_override() -> None:
    decision = DeterministicDecisionFunction().decide(
        DecisionRequest(request_text="try again with Sora", tool_names=ALL_TOOLS)
    )

    assert decision.action == "tool"
    assert decision.tool == "retry_last_command"
    assert decision.arguments["provider_override"].lower() == "sora"


def test_unmatched_request_answers_with_help() -> None:
    decision = DeterministicDecisionFunction().decide(
        DecisionRequest(request_text="hmm", tool_names=ALL_TOOLS)
    )

    assert decision == Decision(action="final", text=HELP_TEXT)


def test_observation_finalizes_the_loop() -> None:
    ok = ToolCall(tool="translate_text", success=True, result={"translatedText": "Hola"})
    bad = ToolCall(tool="create_image", success=False, error="blocked")
    function = DeterministicDecisionFunction()

    assert function.decide(
        DecisionRequest(request_text="x", tool_names=ALL_TOOLS, observations=[ok])
    ).text == "Hola"
    assert function.decide(
        DecisionRequest(request_text="x", tool_names=ALL_TOOLS, observations=[bad])
    ).text == "blocked"


def test_step_decision_uses_step_tool_and_parameters() -> None:
    step = PlanStep(
        step_number=2, tool="create_image", action="a cat", parameters={"prompt": "cat"}
    )

    decision = DeterministicDecisionFunction().decide(
        DecisionRequest(request_text="full request", tool_names=["create_image"], step=step)
    )

    assert (decision.tool, decision.arguments) == ("create_image", {"prompt": "cat"})


def test_llm_failure_falls_back_to_keywords() -> None:
    class BrokenAdapter:
        def generate_structured(self, **kwargs):
            raise RuntimeError("model unavailable")

    function = DecisionFunction(mode="llm", llm_adapter=BrokenAdapter())

    decision = asyncio.run(
        function.decide(
            DecisionRequest(request_text="create an image of a cat", tool_names=ALL_TOOLS)
        )
    )

    assert decision.tool == "create_image"
