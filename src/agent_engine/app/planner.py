"""Intent planning for the agent engine.

The planner decides whether a request is single-step or multi-step and, for
multi-step requests, emits the ordered steps. There are two planning styles:
1) Deterministic planning: sequencing words + capability keywords.
2) LLM-backed planning: one classification call, then code repairs/validates.

Beginner terms:
- Sequencing language: words such as "then" or "after that" that order actions.
- Context markers: "[image attached]"-style prefixes describing attached media.
- Fail open: when planner output is unusable, default to single-step instead
  of failing the turn.

The planner never runs tools; it only decides what should run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from .errors import PlanningParseError
from .llm import LLMAdapter
from .models import Plan, PlanStep
from .registry import TOOL_DEFINITIONS, render_catalog

logger = logging.getLogger(__name__)

SEQUENCING_RE = re.compile(
    r"\b(?:and then|then|after that|afterwards|followed by)\b",
    flags=re.IGNORECASE,
)
# Tool-less fragments shorter than this are leftovers of the split, not actions.
MIN_TEXT_STEP_WORDS = 3

PROVIDER_RE = re.compile(
    r"\b(?:with|using|via|by|on)\s+"
    r"(gemini|openai|grok|veo\s?3|sora(?:[\s-]?pro)?|kling|runway|suno)\b",
    flags=re.IGNORECASE,
)

# Ordered: the first matching capability wins for a segment.
_CAPABILITY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("send_location", re.compile(r"\blocation\b", re.I)),
    ("create_poll", re.compile(r"\bpoll\b", re.I)),
    ("translate_text", re.compile(r"\btranslat", re.I)),
    ("transcribe_audio", re.compile(r"\btranscri", re.I)),
    ("create_music", re.compile(r"\b(?:song|music|melody)\b", re.I)),
    ("text_to_speech", re.compile(r"\b(?:say|speak|read (?:it )?aloud|voice note)\b", re.I)),
    ("create_video", re.compile(r"\b(?:video|clip|animate)\b", re.I)),
    ("create_image", re.compile(r"\b(?:image|picture|photo|drawing|draw|illustration)\b", re.I)),
    ("search_web", re.compile(r"\b(?:search|look up|google)\b", re.I)),
)

_LEADING_COMMAND_RE = re.compile(
    r"^(?:please\s+)?(?:create|generate|make|draw|send|compose|write|produce|give)\s+"
    r"(?:me\s+)?(?:an?\s+|the\s+)?"
    r"(?:image|picture|photo|drawing|illustration|video|clip|song|music|melody)?\s*"
    r"(?:of|about|with|for|showing)?\s*",
    flags=re.IGNORECASE,
)


def has_sequencing_language(text: str) -> bool:
    return SEQUENCING_RE.search(text) is not None


def detect_capability(segment: str, context_markers: list[str] | None = None) -> str | None:
    """Map one request segment to at most one tool name by keyword."""
    markers = context_markers or []
    lowered = segment.lower()
    if "[image attached]" in markers:
        if re.search(r"\b(?:video|animate)\b", lowered):
            return "image_to_video"
        if re.search(r"\b(?:edit|change|replace|remove|add)\b", lowered):
            return "edit_image"
        if re.search(r"\b(?:what|describe|analy[sz]e|who|explain)\b", lowered):
            return "analyze_image"
    if "[audio attached]" in markers and re.search(r"\b(?:transcri|what does)", lowered):
        return "transcribe_audio"
    for tool, pattern in _CAPABILITY_PATTERNS:
        if pattern.search(segment):
            return tool
    return None


def extract_parameters(tool: str | None, segment: str) -> dict[str, Any]:
    """Best-effort parameter extraction; missing fields fail later at validation."""
    text = segment.strip().rstrip(".!?")
    params: dict[str, Any] = {}
    provider_match = PROVIDER_RE.search(text)
    if provider_match is not None:
        text = (text[: provider_match.start()] + text[provider_match.end() :]).strip()

    if tool in {"create_image", "create_video", "create_music", "edit_image", "image_to_video"}:
        prompt = _LEADING_COMMAND_RE.sub("", text).strip()
        params["prompt"] = prompt or text
        if provider_match is not None:
            params["provider"] = re.sub(r"\s+", "", provider_match.group(1).lower())
    elif tool == "send_location":
        region = re.search(r"\bin\s+([A-Za-z][A-Za-z\s]+)$", text)
        if region is not None:
            params["region"] = region.group(1).strip()
    elif tool == "translate_text":
        match = re.search(r"translate\s+(.+?)\s+(?:to|into)\s+([A-Za-z]+)$", text, re.I)
        if match is not None:
            params["text"] = match.group(1).strip().strip("'\"")
            params["target_language"] = match.group(2)
    elif tool == "create_poll":
        match = re.search(r"\bpoll\s+(?:about|on|for|regarding)\s+(.+)$", text, re.I)
        params["topic"] = match.group(1).strip() if match else text
    elif tool == "text_to_speech":
        match = re.search(r"\b(?:say|speak)\s+(.+)$", text, re.I)
        params["text"] = match.group(1).strip().strip("'\"") if match else text
    elif tool == "search_web":
        match = re.search(r"\b(?:search(?: for)?|look up|google)\s+(.+)$", text, re.I)
        params["query"] = match.group(1).strip() if match else text
    return params


def build_plan(request_text: str, *, context_markers: list[str] | None = None) -> Plan:
    """Deterministic plan from sequencing words and capability keywords.

    Multi-step needs sequencing language AND at least two resulting steps.
    Short tool-less fragments such as "since" in "since then" are dropped.
    """
    if not has_sequencing_language(request_text):
        return Plan(is_multi_step=False, reasoning="no sequencing language")

    segments = [
        segment.strip(" ,.;")
        for segment in SEQUENCING_RE.split(request_text)
        if segment and segment.strip(" ,.;")
    ]
    segments = [re.sub(r"\s+and$", "", segment, flags=re.I).strip() for segment in segments]
    steps: list[PlanStep] = []
    for segment in segments:
        tool = detect_capability(segment, context_markers)
        if tool is None and len(segment.split()) < MIN_TEXT_STEP_WORDS:
            continue
        steps.append(
            PlanStep(
                step_number=len(steps) + 1,
                tool=tool,
                action=segment,
                parameters=extract_parameters(tool, segment),
            )
        )
    if len(steps) < 2:
        return Plan(is_multi_step=False, reasoning="sequencing language but a single action")
    return Plan(
        is_multi_step=True,
        steps=steps,
        reasoning=f"sequencing language with {len(steps)} actions",
    )


class LLMPlanner:
    """Planner that asks an LLM to classify and plan a request.

    Model output is never trusted directly: the raw text is repaired, parsed,
    and every step is normalized against the tool registry.
    """

    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 20.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    async def plan(self, request_text: str, context_markers: list[str]) -> Plan:
        system_prompt = (
            "You are a planning module for a chat assistant. Decide whether the user's "
            "request needs ONE action or SEVERAL ordered actions. Return JSON only: "
            '{"isMultiStep": bool, "reasoning": str, "steps": [{"stepNumber": int, '
            '"tool": str|null, "action": str, "parameters": object}]}.\n'
            "Rules:\n"
            "- Multi-step ONLY with sequencing words ('then', 'and then', 'after that') "
            "or two or more distinct capabilities.\n"
            "- A single media request is ALWAYS single-step, even if it names a provider.\n"
            "- Use tool null for steps that only need a text answer.\n"
            f"Available tools:\n{render_catalog()}"
        )
        prefix = " ".join(context_markers)
        user_prompt = f"{prefix} {request_text}".strip()
        raw = await asyncio.to_thread(
            self.llm_adapter.generate_text,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            timeout_s=self.timeout_s,
        )
        return normalize_plan(parse_plan_response(raw))


class IntentPlanner:
    """Public planner entrypoint used by the agent engine."""

    def __init__(
        self,
        *,
        mode: str = "deterministic",
        llm_adapter: LLMAdapter | None = None,
        timeout_s: float = 20.0,
    ) -> None:
        self.mode = mode.lower().strip()
        self.llm_planner = (
            LLMPlanner(llm_adapter=llm_adapter, timeout_s=timeout_s) if llm_adapter else None
        )

    async def plan(self, request_text: str, context_markers: list[str] | None = None) -> Plan:
        markers = list(context_markers or [])
        # Without sequencing language the request is single-step whatever a model says.
        if not has_sequencing_language(request_text):
            return Plan(is_multi_step=False, reasoning="no sequencing language")

        if self.mode == "llm" and self.llm_planner is not None:
            try:
                return await self.llm_planner.plan(request_text, markers)
            except PlanningParseError as exc:
                logger.warning("planner event=parse_failed fallback=single_step reason=%s", exc)
                return Plan(is_multi_step=False, fallback=True, reasoning="unparseable plan")
            except Exception as exc:  # noqa: BLE001
                # Reliability rule: never fail planning just because the LLM failed.
                logger.warning(
                    "LLM planner failed; falling back to deterministic planner. reason=%s",
                    exc,
                )
                return build_plan(request_text, context_markers=markers)
        if self.mode == "llm" and self.llm_planner is None:
            logger.warning(
                "Planner mode is 'llm' but no LLM adapter was available; using deterministic plan."
            )
        return build_plan(request_text, context_markers=markers)


def parse_plan_response(raw: str) -> dict[str, Any]:
    """Extract a JSON object from raw model text, repairing common damage."""
    text = re.sub(r"```(?:json)?", "", raw or "", flags=re.IGNORECASE).strip()
    start = text.find("{")
    if start == -1:
        raise PlanningParseError("planner output contained no JSON object")
    end = text.rfind("}")
    candidate = text[start : end + 1] if end > start else text[start:]
    for attempt in (candidate, repair_json(text[start:]), repair_json(candidate)):
        try:
            parsed = json.loads(attempt)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise PlanningParseError(f"planner output is not valid JSON: {candidate[:120]!r}")


def repair_json(candidate: str) -> str:
    """Repair truncated or sloppy JSON emitted by a model."""
    repaired = candidate.replace("...", "")
    repaired = _wrap_bare_steps(repaired)
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)
    repaired = _close_brackets(repaired)
    # Closing may expose a trailing comma before the appended closers.
    return re.sub(r",\s*([}\]])", r"\1", repaired)


def normalize_plan(payload: dict[str, Any]) -> Plan:
    """Turn parsed planner JSON into a validated Plan."""
    raw_steps = payload.get("steps")
    steps: list[PlanStep] = []
    if isinstance(raw_steps, list):
        for index, raw_step in enumerate(raw_steps):
            if not isinstance(raw_step, dict):
                continue
            steps.append(_normalize_step(raw_step, index))
    steps.sort(key=lambda step: step.step_number)

    wants_multi = bool(payload.get("isMultiStep", payload.get("is_multi_step", False)))
    reasoning = str(payload.get("reasoning") or "")
    if not wants_multi or len(steps) < 2:
        # A "multi-step" plan with zero or one steps is treated as single-step.
        return Plan(is_multi_step=False, reasoning=reasoning)
    return Plan(is_multi_step=True, steps=steps, reasoning=reasoning)


def _normalize_step(raw_step: dict[str, Any], index: int) -> PlanStep:
    step_number = raw_step.get("stepNumber", raw_step.get("step_number"))
    if not isinstance(step_number, int) or isinstance(step_number, bool):
        step_number = index + 1
    tool = raw_step.get("tool")
    if not isinstance(tool, str) or not tool.strip():
        tool = None
    elif tool not in TOOL_DEFINITIONS:
        logger.warning("planner event=unknown_tool tool=%s step=%s degrade=text", tool, step_number)
        tool = None
    action = raw_step.get("action")
    parameters = raw_step.get("parameters")
    return PlanStep(
        step_number=step_number,
        tool=tool,
        action=action if isinstance(action, str) and action.strip() else f"Step {step_number}",
        parameters=parameters if isinstance(parameters, dict) else {},
    )


def _wrap_bare_steps(text: str) -> str:
    """Fix `"steps": ["stepNumber": 1, ...]` arrays whose objects lost their braces."""
    match = re.search(r'("steps"\s*:\s*\[)(\s*"stepNumber".*?)(\]\s*[,}]|\]?\s*$)', text, re.S)
    if match is None:
        return text
    body = match.group(2)
    parts = [
        part.strip().strip(",").strip()
        for part in re.split(r'(?="stepNumber")', body)
        if part.strip().strip(",").strip()
    ]
    wrapped = ", ".join("{" + part.rstrip("}").rstrip() + "}" for part in parts)
    return text[: match.start(2)] + wrapped + text[match.end(2) :]


def _close_brackets(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    suffix = '"' if in_string else ""
    return text + suffix + "".join(reversed(stack))
