"""Execution loop for one conversational turn.

Turn flow (a langgraph StateGraph):
1) plan: single- vs multi-step.
2a) single-step: optional history load, then a bounded decide -> dispatch loop.
2b) multi-step: steps strictly in ascending order, each in a scoped sub-loop.
3) finalize: aggregate everything into one AgentResult.

The whole flow runs under an outer turn timeout. Running state lives on a
mutable TurnState, so a timeout still finalizes with partial results.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, TypedDict

from langgraph.graph import END, StateGraph

from .aggregator import build_agent_result
from .conversation import (
    ConversationStore,
    build_last_command,
    describe_long_term,
    prepare_history,
    should_load_history,
)
from .decision import DecisionFunction, DecisionRequest
from .errors import PersistenceError, StepExecutionError
from .models import (
    AgentResult,
    ConversationContext,
    LastCommand,
    LongTermMemory,
    NormalizedInput,
    Plan,
    PlanStep,
    StepResult,
    ToolCall,
)
from .planner import IntentPlanner, has_sequencing_language
from .registry import TOOL_DEFINITIONS
from .retry import LastCommandRetrier
from .settings import Settings
from .summaries import ConversationSummarizer
from .tools import ToolDispatcher, TurnState

logger = logging.getLogger(__name__)


class TurnGraphState(TypedDict, total=False):
    turn: TurnState
    max_iterations: int | None
    result: AgentResult


class AgentEngine:
    def __init__(
        self,
        *,
        planner: IntentPlanner,
        decision: DecisionFunction,
        dispatcher: ToolDispatcher,
        store: ConversationStore,
        settings: Settings,
    ) -> None:
        self.planner = planner
        self.decision = decision
        self.dispatcher = dispatcher
        self.store = store
        self.settings = settings
        self.retrier = LastCommandRetrier(dispatcher=dispatcher, run_steps=self.run_steps)
        dispatcher.retry_handler = self.retrier.retry_last_command
        self.summarizer = ConversationSummarizer(
            dispatcher=dispatcher, store=store, settings=settings
        )
        self.graph = self._build_graph()

    def _build_graph(self) -> Any:
        def _route_plan(state: TurnGraphState) -> str:
            plan = state["turn"].plan
            return "multi" if plan is not None and plan.is_multi_step else "single"

        graph = StateGraph(TurnGraphState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("load_history", self._load_history_node)
        graph.add_node("single_step", self._single_step_node)
        graph.add_node("multi_step", self._multi_step_node)
        graph.add_node("finalize", self._finalize_node)

        graph.set_entry_point("plan")
        graph.add_conditional_edges(
            "plan", _route_plan, {"single": "load_history", "multi": "multi_step"}
        )
        graph.add_edge("load_history", "single_step")
        graph.add_edge("single_step", "finalize")
        graph.add_edge("multi_step", "finalize")
        graph.add_edge("finalize", END)
        return graph.compile()

    async def execute(
        self,
        request_text: str,
        conversation_id: str,
        *,
        max_iterations: int | None = None,
        last_command: LastCommand | None = None,
        long_term: LongTermMemory | None = None,
        normalized_input: NormalizedInput | None = None,
    ) -> AgentResult:
        normalized = normalized_input or NormalizedInput(text=request_text)
        turn = TurnState(
            conversation_id=conversation_id,
            request_text=request_text,
            normalized_input=normalized,
            last_command=last_command,
            system_context=describe_long_term(long_term),
        )
        timeout_s = self.settings.agent_timeout_s
        if has_sequencing_language(request_text):
            timeout_s = max(timeout_s, self.settings.multi_step_min_timeout_s)

        logger.info(
            "agent_turn event=start conversation_id=%s timeout_s=%s media=%s",
            conversation_id,
            timeout_s,
            normalized.has_media(),
        )
        try:
            final_state = await asyncio.wait_for(
                self.graph.ainvoke({"turn": turn, "max_iterations": max_iterations}),
                timeout=timeout_s,
            )
        except TimeoutError:
            turn.timed_out = True
            logger.warning(
                "agent_turn event=timeout conversation_id=%s timeout_s=%s tool_calls=%d",
                conversation_id,
                timeout_s,
                len(turn.tool_calls),
            )
            return build_agent_result(turn)
        return final_state["result"]

    async def route_to_agent(
        self, normalized_input: NormalizedInput, conversation_id: str
    ) -> AgentResult:
        """Run one persisted turn for a channel adapter."""
        await self._persist(
            "append_message",
            conversation_id,
            "user",
            normalized_input.text,
            _input_metadata(normalized_input),
        )
        context = await self._load_context(conversation_id)

        result = await self.execute(
            normalized_input.text,
            conversation_id,
            last_command=context.last_command,
            long_term=context.long_term,
            normalized_input=normalized_input,
        )

        saved = build_last_command(result, normalized_input.text)
        if saved is not None:
            tool, payload, media_refs = saved
            await self._persist("save_last_command", conversation_id, tool, payload, media_refs)
        await self._persist(
            "append_message",
            conversation_id,
            "assistant",
            result.text,
            _result_metadata(result),
        )
        await self.summarizer.maybe_summarize(conversation_id)
        return result

    async def _load_context(self, conversation_id: str) -> ConversationContext:
        context = ConversationContext(
            conversation_id=conversation_id,
            last_command=await self._persist("get_last_command", conversation_id),
        )
        long_term = await self._persist("get_long_term_memory", conversation_id)
        if long_term is not None:
            context.long_term = long_term
        return context

    async def _persist(self, operation: str, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(getattr(self.store, operation), *args)
        except Exception as exc:  # noqa: BLE001
            error = PersistenceError(f"{operation} failed: {exc}")
            logger.warning(
                "persistence event=degraded op=%s conversation_id=%s reason=%s",
                operation,
                args[0] if args else None,
                error,
            )
            return None

    async def _plan_node(self, state: TurnGraphState) -> TurnGraphState:
        turn = state["turn"]
        turn.plan = await self.planner.plan(
            turn.request_text, turn.normalized_input.context_markers()
        )
        logger.info(
            "agent_turn event=planned conversation_id=%s multi_step=%s steps=%d fallback=%s",
            turn.conversation_id,
            turn.plan.is_multi_step,
            len(turn.plan.steps),
            turn.plan.fallback,
        )
        return {"turn": turn}

    async def _load_history_node(self, state: TurnGraphState) -> TurnGraphState:
        turn = state["turn"]
        if not should_load_history(turn.normalized_input):
            logger.info(
                "agent_turn event=history_skipped conversation_id=%s", turn.conversation_id
            )
            return {"turn": turn}
        turn.history_loaded = True
        try:
            messages = await asyncio.to_thread(
                self.store.get_recent_history,
                turn.conversation_id,
                self.settings.history_limit,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "persistence event=degraded op=get_recent_history conversation_id=%s reason=%s",
                turn.conversation_id,
                PersistenceError(str(exc)),
            )
            return {"turn": turn}
        turn.history, history_context = prepare_history(messages)
        turn.system_context = "\n\n".join(
            part for part in (turn.system_context, history_context) if part
        )
        return {"turn": turn}

    async def _single_step_node(self, state: TurnGraphState) -> TurnGraphState:
        turn = state["turn"]
        limit = state.get("max_iterations")
        if not limit:
            limit = self.settings.agent_max_iterations
            if has_sequencing_language(turn.request_text):
                limit = max(limit, self.settings.agent_multi_step_max_iterations)

        system_context = turn.system_context
        if turn.normalized_input.quoted_text:
            quoted = f"The user is replying to: \"{turn.normalized_input.quoted_text}\""
            system_context = f"{system_context}\n{quoted}".strip()

        observations: list[ToolCall] = []
        tool_names = list(TOOL_DEFINITIONS)
        while turn.iterations < limit:
            turn.iterations += 1
            decision = await self.decision.decide(
                DecisionRequest(
                    request_text=turn.request_text,
                    tool_names=tool_names,
                    context_markers=turn.normalized_input.context_markers(),
                    system_context=system_context,
                    history=turn.history,
                    observations=observations,
                )
            )
            if decision.action == "final" or not decision.tool:
                turn.final_text = decision.text
                break
            observations.append(
                await self.dispatcher.dispatch(decision.tool, decision.arguments, turn)
            )
        else:
            turn.iteration_limit_hit = True
            logger.warning(
                "agent_turn event=max_iterations conversation_id=%s limit=%d",
                turn.conversation_id,
                limit,
            )
        return {"turn": turn}

    async def _multi_step_node(self, state: TurnGraphState) -> TurnGraphState:
        turn = state["turn"]
        if turn.plan is not None:
            await self.run_steps(turn.plan, turn)
        return {"turn": turn}

    async def _finalize_node(self, state: TurnGraphState) -> TurnGraphState:
        return {"result": build_agent_result(state["turn"])}

    async def run_steps(self, plan: Plan, turn: TurnState) -> list[StepResult]:
        """Execute plan steps in ascending order; a failed step never stops the plan."""
        results: list[StepResult] = []
        for step in sorted(plan.steps, key=lambda item: item.step_number):
            turn.begin_step(step.step_number, step.tool)
            try:
                step_result = await self._run_step(step, turn, results)
            except Exception as exc:  # noqa: BLE001
                error = StepExecutionError(
                    str(exc) or exc.__class__.__name__,
                    step_number=step.step_number,
                    tool=step.tool,
                )
                step_result = StepResult(
                    step_number=step.step_number,
                    tool=step.tool,
                    action=step.action,
                    success=False,
                    error=str(error),
                )
            finally:
                turn.end_step()
            if not step_result.success:
                logger.warning(
                    "multi_step event=step_failed conversation_id=%s step=%d tool=%s error=%s",
                    turn.conversation_id,
                    step.step_number,
                    step.tool,
                    step_result.error,
                )
            results.append(step_result)
            turn.step_results.append(step_result)
        logger.info(
            "multi_step event=done conversation_id=%s completed=%d total=%d",
            turn.conversation_id,
            sum(1 for result in results if result.success),
            len(plan.steps),
        )
        return results

    async def _run_step(
        self, step: PlanStep, turn: TurnState, previous: list[StepResult]
    ) -> StepResult:
        context = _previous_steps_context(previous)
        tool_names = [step.tool] if step.tool else []
        observations: list[ToolCall] = []
        text = ""
        for _ in range(self.settings.agent_step_max_iterations):
            turn.iterations += 1
            decision = await self.decision.decide(
                DecisionRequest(
                    request_text=step.action,
                    tool_names=tool_names,
                    context_markers=turn.normalized_input.context_markers(),
                    observations=observations,
                    step=step,
                    previous_steps_context=context,
                )
            )
            if decision.action == "final" or not decision.tool:
                text = decision.text
                break
            observations.append(
                await self.dispatcher.dispatch(decision.tool, decision.arguments, turn)
            )

        if step.tool is None:
            if not text:
                text = await self._answer_text(step.action, context)
            if not text:
                raise StepExecutionError(
                    "No answer was produced for this step.", step_number=step.step_number
                )
            return StepResult(
                step_number=step.step_number,
                tool=None,
                action=step.action,
                success=True,
                text=text,
            )

        own_calls = [call for call in observations if call.tool == step.tool]
        succeeded = [call for call in own_calls if call.success]
        if not succeeded:
            error = next(
                (call.error for call in reversed(observations) if call.error),
                f"{step.tool} was not executed.",
            )
            return StepResult(
                step_number=step.step_number,
                tool=step.tool,
                action=step.action,
                success=False,
                error=error,
            )
        envelope = succeeded[-1].result
        return StepResult(
            step_number=step.step_number,
            tool=step.tool,
            action=step.action,
            success=True,
            text=text or envelope.get("translatedText") or envelope.get("text"),
            image_url=envelope.get("imageUrl"),
            video_url=envelope.get("videoUrl"),
            audio_url=envelope.get("audioUrl"),
        )

    async def _answer_text(self, prompt: str, context: str) -> str:
        """Answer a text-only step through the text provider chain."""
        full_prompt = f"{context}\n\nCURRENT TASK: {prompt}" if context else prompt
        result = await self.dispatcher.generate("answer_text", "text", {"prompt": full_prompt})
        if not result.success:
            raise StepExecutionError(result.error or "Text answer failed.", step_number=0)
        return str(result.data.get("text") or "")


def _previous_steps_context(previous: list[StepResult]) -> str:
    if not previous:
        return ""
    lines: list[str] = []
    for result in previous:
        summary = f"Step {result.step_number}:"
        if result.text:
            summary += f" {result.text[:200]}"
        if result.image_url:
            summary += " [Created image]"
        if result.video_url:
            summary += " [Created video]"
        if result.audio_url:
            summary += " [Created audio]"
        if result.tool == "create_poll" and result.success:
            summary += " [Created poll]"
        if result.tool == "send_location" and result.success:
            summary += " [Sent location]"
        if not result.success:
            summary += f" [Failed: {result.error}]"
        lines.append(summary)
    return "CONTEXT from previous steps:\n" + "\n".join(lines)


def _input_metadata(normalized: NormalizedInput) -> dict[str, Any]:
    metadata = {
        "imageUrl": normalized.image_url,
        "videoUrl": normalized.video_url,
        "audioUrl": normalized.audio_url,
        "quotedText": normalized.quoted_text,
    }
    return {key: value for key, value in metadata.items() if value}


def _result_metadata(result: AgentResult) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "imageUrl": result.image_url,
        "videoUrl": result.video_url,
        "audioUrl": result.audio_url,
        "toolsUsed": result.tools_used,
        "multiStep": result.multi_step or None,
    }
    return {key: value for key, value in metadata.items() if value}
