"""User-invoked retry of the previous command (`retry_last_command`)."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .models import LastCommand, Plan, PlanStep, StepResult, ToolResult
from .providers import normalize_provider
from .registry import RetryLastCommandInput
from .tools import ToolDispatcher, TurnState

logger = logging.getLogger(__name__)

NOTHING_TO_RETRY_ERROR = "There is no previous command to retry."

# Single-step tools that can be re-dispatched as-is.
RETRYABLE_TOOLS = frozenset(
    {
        "create_image",
        "edit_image",
        "create_video",
        "image_to_video",
        "edit_video",
        "create_music",
        "text_to_speech",
        "translate_text",
        "create_poll",
    }
)
# Multi-step steps that accept a provider override.
_PROVIDER_STEP_TOOLS = frozenset(
    {"create_image", "edit_image", "create_video", "image_to_video", "edit_video"}
)

StepRunner = Callable[[Plan, TurnState], Awaitable[list[StepResult]]]


class LastCommandRetrier:
    def __init__(self, *, dispatcher: ToolDispatcher, run_steps: StepRunner) -> None:
        self.dispatcher = dispatcher
        self.run_steps = run_steps

    async def retry_last_command(
        self, payload: RetryLastCommandInput, state: TurnState
    ) -> ToolResult:
        last_command = state.last_command
        if last_command is None:
            logger.info("retry event=nothing_to_retry conversation_id=%s", state.conversation_id)
            return ToolResult(
                success=False,
                data={"nothing_to_retry": True},
                error=NOTHING_TO_RETRY_ERROR,
            )
        if last_command.is_multi_step or last_command.tool == "multi_step":
            return await self._retry_multi_step(payload, last_command, state)
        return await self._retry_single_step(payload, last_command, state)

    async def _retry_single_step(
        self,
        payload: RetryLastCommandInput,
        last_command: LastCommand,
        state: TurnState,
    ) -> ToolResult:
        tool = last_command.tool
        if tool not in RETRYABLE_TOOLS:
            return ToolResult(
                success=False,
                error=f"The last command ({tool}) cannot be repeated automatically.",
            )

        arguments = dict(last_command.arguments)
        provider = normalize_provider(
            payload.provider_override
            or arguments.get("provider")
            or last_command.sanitized_result.get("provider")
        )
        if provider:
            arguments["provider"] = provider
        else:
            arguments.pop("provider", None)
        if payload.modifications:
            _apply_modifications(arguments, payload.modifications)

        logger.info(
            "retry event=single_step conversation_id=%s tool=%s provider=%s",
            state.conversation_id,
            tool,
            provider,
        )
        call = await self.dispatcher.dispatch(tool, arguments, state)
        return ToolResult(
            success=call.success,
            data={key: value for key, value in call.result.items() if key != "error"},
            error=call.error,
            provider=call.provider,
        )

    async def _retry_multi_step(
        self,
        payload: RetryLastCommandInput,
        last_command: LastCommand,
        state: TurnState,
    ) -> ToolResult:
        plan = last_command.plan
        if plan is None or not plan.steps:
            return ToolResult(
                success=False,
                error="Could not restore the plan of the previous multi-step command.",
            )

        steps = sorted(plan.steps, key=lambda step: step.step_number)
        selected = _select_steps(steps, payload)
        if not selected:
            available = ", ".join(
                f"{index}. {step.tool or step.action[:30]}"
                for index, step in enumerate(steps, start=1)
            )
            return ToolResult(
                success=False,
                error=f"No matching steps found. Available steps: {available}",
            )

        provider = normalize_provider(payload.provider_override)
        retry_steps: list[PlanStep] = []
        for index, step in enumerate(selected, start=1):
            parameters = dict(step.parameters)
            action = step.action
            if index == 1 and payload.modifications:
                action = f"{action} {payload.modifications}".strip()
                _apply_modifications(parameters, payload.modifications)
            if provider and step.tool in _PROVIDER_STEP_TOOLS:
                parameters["provider"] = provider
            retry_steps.append(
                PlanStep(step_number=index, tool=step.tool, action=action, parameters=parameters)
            )

        retry_plan = Plan(
            is_multi_step=True,
            steps=retry_steps,
            reasoning=f"retry of {len(retry_steps)} of {len(steps)} steps",
        )
        logger.info(
            "retry event=multi_step conversation_id=%s steps=%d of=%d provider=%s",
            state.conversation_id,
            len(retry_steps),
            len(steps),
            provider,
        )
        # The turn becomes a multi-step turn from here on.
        state.plan = retry_plan
        step_results = await self.run_steps(retry_plan, state)
        completed = sum(1 for step in step_results if step.success)
        failures = [step for step in step_results if not step.success]
        return ToolResult(
            success=completed > 0,
            data={"data": {"steps_completed": completed, "total_steps": len(retry_steps)}},
            error=failures[-1].error if failures and completed == 0 else None,
        )


def _select_steps(steps: list[PlanStep], payload: RetryLastCommandInput) -> list[PlanStep]:
    if payload.step_numbers:
        wanted = set(payload.step_numbers)
        return [step for index, step in enumerate(steps, start=1) if index in wanted]
    if payload.step_tools:
        return [
            step
            for step in steps
            if step.tool
            and any(
                requested in step.tool or step.tool in requested
                for requested in payload.step_tools
            )
        ]
    return list(steps)


def _apply_modifications(arguments: dict[str, Any], modifications: str) -> None:
    for key in ("prompt", "text"):
        if isinstance(arguments.get(key), str) and arguments[key]:
            arguments[key] = f"{arguments[key]}, {modifications}"
            return
    arguments["prompt"] = modifications
