"""Decision functions for the execution loop.

A decision function looks at the request, the offered tools, and what has
happened so far in the turn, then returns exactly one of:
- a tool call (`action="tool"`), or
- final text (`action="final"`).

The LLM-backed function is fallible; the facade falls back to the
deterministic keyword function whenever it raises.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from .llm import LLMAdapter
from .models import Message, PlanStep, ToolCall
from .planner import PROVIDER_RE, detect_capability, extract_parameters
from .registry import render_catalog

logger = logging.getLogger(__name__)

_RETRY_RE = re.compile(
    r"\b(?:try (?:it |that )?again|again|retry|redo|one more time|try (?:it |that )?with)\b",
    flags=re.IGNORECASE,
)

HELP_TEXT = (
    "I can create images, videos and music, edit images and videos, speak or "
    "transcribe audio, translate, search the web, make polls, and send a location. "
    "What would you like me to do?"
)


class Decision(BaseModel):
    """One decision step: call a tool or answer with final text."""

    action: Literal["tool", "final"]
    tool: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    text: str = ""


@dataclass
class DecisionRequest:
    request_text: str
    # Tools the decision may call; empty means text only.
    tool_names: list[str]
    context_markers: list[str] = field(default_factory=list)
    system_context: str = ""
    history: list[Message] = field(default_factory=list)
    # Calls made so far in this loop (or step), blocked calls included.
    observations: list[ToolCall] = field(default_factory=list)
    step: PlanStep | None = None
    previous_steps_context: str = ""


class DeterministicDecisionFunction:
    """Keyword-driven decisions; needs no model and always returns."""

    def decide(self, request: DecisionRequest) -> Decision:
        if request.observations:
            return _finalize_from(request.observations[-1])

        if request.step is not None:
            return self._decide_step(request, request.step)

        text = request.request_text
        if "retry_last_command" in request.tool_names and _RETRY_RE.search(text):
            arguments: dict[str, Any] = {}
            provider_match = PROVIDER_RE.search(text)
            if provider_match is not None:
                arguments["provider_override"] = provider_match.group(1)
            return Decision(action="tool", tool="retry_last_command", arguments=arguments)

        tool = detect_capability(text, request.context_markers)
        if tool is None or tool not in request.tool_names:
            return Decision(action="final", text=HELP_TEXT)
        return Decision(action="tool", tool=tool, arguments=_arguments_for(tool, text))

    @staticmethod
    def _decide_step(request: DecisionRequest, step: PlanStep) -> Decision:
        if step.tool is None or step.tool not in request.tool_names:
            # Text steps are answered by the text provider chain.
            return Decision(action="final", text="")
        arguments = dict(step.parameters) or _arguments_for(step.tool, step.action)
        return Decision(action="tool", tool=step.tool, arguments=arguments)


class LLMDecisionFunction:
    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 20.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def decide(self, request: DecisionRequest) -> Decision:
        catalog = render_catalog(request.tool_names) if request.tool_names else "(none)"
        system_prompt = (
            "You are a chat assistant that fulfils requests by calling tools. "
            "Return JSON with action 'tool' (plus tool and arguments) or action "
            "'final' (plus text). Call at most one tool per decision. When a tool "
            "result is already available, answer with action 'final'.\n"
            f"Available tools:\n{catalog}"
        )
        if request.system_context:
            system_prompt += f"\n\n{request.system_context}"
        sections = []
        if request.history:
            lines = [f"{message.role}: {message.content}" for message in request.history]
            sections.append("Recent conversation:\n" + "\n".join(lines))
        if request.previous_steps_context:
            sections.append(request.previous_steps_context)
        if request.step is not None:
            sections.append(
                f"Execute ONLY step {request.step.step_number}: {request.step.action}"
            )
        markers = " ".join(request.context_markers)
        sections.append(f"User request: {markers} {request.request_text}".strip())
        if request.observations:
            observed = [
                {"tool": call.tool, "success": call.success, "result": call.result}
                for call in request.observations
            ]
            sections.append("Tool results so far:\n" + json.dumps(observed, default=str))
        return self.llm_adapter.generate_structured(
            system_prompt=system_prompt,
            user_prompt="\n\n".join(sections),
            response_model=Decision,
            timeout_s=self.timeout_s,
        )


class DecisionFunction:
    """Public decision entrypoint used by the execution loop."""

    def __init__(
        self,
        *,
        mode: str = "deterministic",
        llm_adapter: LLMAdapter | None = None,
        timeout_s: float = 20.0,
    ) -> None:
        self.mode = mode.lower().strip()
        self.deterministic = DeterministicDecisionFunction()
        self.llm = (
            LLMDecisionFunction(llm_adapter=llm_adapter, timeout_s=timeout_s)
            if llm_adapter
            else None
        )

    async def decide(self, request: DecisionRequest) -> Decision:
        if self.mode == "llm" and self.llm is not None:
            try:
                return await asyncio.to_thread(self.llm.decide, request)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "decision event=llm_failed fallback=deterministic reason=%s",
                    exc,
                )
        return self.deterministic.decide(request)


def _arguments_for(tool: str, text: str) -> dict[str, Any]:
    arguments = extract_parameters(tool, text)
    if tool == "analyze_image":
        arguments.setdefault("question", text)
    elif tool == "edit_video":
        arguments.setdefault("prompt", text)
    return arguments


def _finalize_from(call: ToolCall) -> Decision:
    if call.success:
        text = call.result.get("translatedText") or call.result.get("text") or ""
        return Decision(action="final", text=str(text))
    return Decision(action="final", text=call.error or "The request could not be completed.")
