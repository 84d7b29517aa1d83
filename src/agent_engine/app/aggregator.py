"""Result aggregation: one AgentResult envelope per turn."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .models import AgentResult, StepResult, ToolCall
from .tools import TurnState

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>", flags=re.IGNORECASE | re.S)
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", flags=re.S)

EMPTY_RESPONSE_TEXT = "I could not put together a clear answer. Please try again."
MULTI_STEP_DONE_TEXT = "All steps are done."
TIMED_OUT_NOTE = "The request took too long; these are the results so far."
MAX_ITERATIONS_TEXT = (
    "I reached the maximum number of attempts. Please try rephrasing the request."
)
STEP_TIMED_OUT_ERROR = "Timed out before this step finished."
STEP_NOT_RUN_ERROR = "This step was not run."


def clean_text(raw: str | None) -> str:
    """Strip reasoning blocks and JSON wrappers a model may leave around its answer."""
    text = _THINK_RE.sub("", raw or "").strip()
    fence = _FENCE_RE.match(text)
    if fence is not None:
        text = fence.group(1).strip()
    if text.startswith("{") and text.endswith("}"):
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        if isinstance(parsed, dict):
            for key in ("text", "answer", "response", "message"):
                if isinstance(parsed.get(key), str):
                    return parsed[key].strip()
    return text


def build_agent_result(state: TurnState) -> AgentResult:
    if state.plan is not None and state.plan.is_multi_step:
        result = _multi_step_result(state)
    else:
        result = _single_step_result(state)
    _attach_assets(result, state)
    if state.timed_out:
        result.timed_out = True
        result.text = f"{result.text}\n\n{TIMED_OUT_NOTE}".strip()
    logger.info(
        "aggregate event=done conversation_id=%s success=%s multi_step=%s tools=%s",
        state.conversation_id,
        result.success,
        result.multi_step,
        ",".join(result.tools_used),
    )
    return result


def _single_step_result(state: TurnState) -> AgentResult:
    calls = state.tool_calls
    succeeded = any(call.success for call in calls)
    nothing_to_retry = any(call.result.get("nothing_to_retry") for call in calls)
    failed = [call for call in calls if not call.success]
    success = (not calls or succeeded) and not nothing_to_retry
    error = None
    if not success and failed:
        error = failed[-1].error

    text = clean_text(state.final_text)
    if not text and state.iteration_limit_hit:
        text = _last_call_text(calls)
        if not text and not _has_assets(state):
            text = MAX_ITERATIONS_TEXT
            if not succeeded:
                success = False
                error = error or MAX_ITERATIONS_TEXT
    if not text and not success and error:
        text = error
    if not text and not calls and not _has_assets(state):
        text = EMPTY_RESPONSE_TEXT
    return AgentResult(
        success=success,
        text=text,
        iterations=state.iterations,
        tool_calls=list(calls),
        error=error,
        nothing_to_retry=nothing_to_retry,
    )


def _multi_step_result(state: TurnState) -> AgentResult:
    plan = state.plan
    step_results = sorted(
        [*state.step_results, *_missing_steps(state)], key=lambda step: step.step_number
    )
    completed = sum(1 for step in step_results if step.success)
    lines: list[str] = []
    for step in step_results:
        if step.success and step.text:
            lines.append(f"Step {step.step_number}: {clean_text(step.text)}")
        elif not step.success:
            lines.append(f"Step {step.step_number} failed: {step.error or 'unknown error'}")
    failures = [step for step in step_results if not step.success]
    return AgentResult(
        success=completed > 0,
        text="\n\n".join(lines) or MULTI_STEP_DONE_TEXT,
        iterations=state.iterations,
        tool_calls=list(state.tool_calls),
        multi_step=True,
        plan=plan,
        steps_completed=completed,
        total_steps=len(plan.steps) if plan else len(step_results),
        step_results=step_results,
        error=failures[-1].error if failures and completed == 0 else None,
    )


def _attach_assets(result: AgentResult, state: TurnState) -> None:
    assets = state.assets
    if assets.images:
        result.image_url = assets.images[-1]["url"]
        result.image_caption = assets.images[-1].get("caption", "")
    if assets.videos:
        result.video_url = assets.videos[-1]["url"]
        result.video_caption = assets.videos[-1].get("caption", "")
    if assets.audio:
        result.audio_url = assets.audio[-1]["url"]
    if assets.polls:
        result.poll = assets.polls[-1]

    location: dict[str, Any] | None = state.results_by_tool.get("send_location")
    if location and location.get("success"):
        result.latitude = location.get("latitude")
        result.longitude = location.get("longitude")
        info = location.get("locationInfo")
        result.location_info = clean_text(info) if isinstance(info, str) else None
    result.tools_used = list(state.results_by_tool)


def _has_assets(state: TurnState) -> bool:
    assets = state.assets
    return bool(assets.images or assets.videos or assets.audio or assets.polls)


def _last_call_text(calls: list[ToolCall]) -> str:
    for call in reversed(calls):
        if call.success:
            text = call.result.get("translatedText") or call.result.get("text")
            if isinstance(text, str) and text.strip():
                return clean_text(text)
    return ""


def _missing_steps(state: TurnState) -> list[StepResult]:
    """Failed entries for plan steps that never produced a result."""
    if state.plan is None:
        return []
    finished = {step.step_number for step in state.step_results}
    error = STEP_TIMED_OUT_ERROR if state.timed_out else STEP_NOT_RUN_ERROR
    return [
        StepResult(
            step_number=step.step_number,
            tool=step.tool,
            action=step.action,
            success=False,
            error=error,
        )
        for step in state.plan.steps
        if step.step_number not in finished
    ]
