"""Tool dispatch for one agent turn.

The dispatcher is the single place where a tool call is guarded, repaired,
schema-validated, and executed:
1) guards: step scoping, duplicate identical calls, repeated creations;
2) argument repair: attached media / earlier assets fill missing media URLs;
3) validation against the tool's pydantic schema (never retried on failure);
4) execution: provider-backed tools go through the fallback coordinator,
   built-in tools run against the conversation store.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .conversation import ConversationStore
from .errors import PersistenceError
from .fallback import ProviderFallbackCoordinator
from .models import (
    LastCommand,
    Message,
    NormalizedInput,
    Plan,
    StepResult,
    ToolCall,
    ToolResult,
)
from .providers import normalize_provider
from .registry import (
    AnalyzeImageInput,
    CreatePollInput,
    GetChatHistoryInput,
    RetryLastCommandInput,
    SaveUserPreferenceInput,
    SearchWebInput,
    SendLocationInput,
    TOOL_DEFINITIONS,
    ToolDefinition,
    TranslateTextInput,
    get_tool,
)
from .settings import Settings

logger = logging.getLogger(__name__)

# Rough bounding boxes (lat_min, lat_max, lon_min, lon_max) for send_location.
_REGION_BOUNDS: dict[str, tuple[float, float, float, float]] = {
    "europe": (36.0, 70.0, -10.0, 40.0),
    "asia": (5.0, 55.0, 60.0, 140.0),
    "africa": (-34.0, 35.0, -17.0, 51.0),
    "north america": (15.0, 70.0, -165.0, -55.0),
    "south america": (-55.0, 12.0, -81.0, -35.0),
    "australia": (-39.0, -11.0, 113.0, 153.0),
    "israel": (29.5, 33.3, 34.3, 35.9),
    "usa": (25.0, 49.0, -124.0, -67.0),
}
_WORLD_BOUNDS = (-55.0, 70.0, -180.0, 180.0)

ToolHandler = Callable[[BaseModel, "TurnState"], Awaitable[ToolResult]]
RetryHandler = Callable[[RetryLastCommandInput, "TurnState"], Awaitable[ToolResult]]


@dataclass
class GeneratedAssets:
    images: list[dict[str, Any]] = field(default_factory=list)
    videos: list[dict[str, Any]] = field(default_factory=list)
    audio: list[dict[str, Any]] = field(default_factory=list)
    polls: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class TurnState:
    """Mutable running context of one turn; partial results survive timeouts."""

    conversation_id: str
    request_text: str
    normalized_input: NormalizedInput
    last_command: LastCommand | None = None
    history: list[Message] = field(default_factory=list)
    history_loaded: bool = False
    system_context: str = ""
    plan: Plan | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    results_by_tool: dict[str, dict[str, Any]] = field(default_factory=dict)
    assets: GeneratedAssets = field(default_factory=GeneratedAssets)
    step_results: list[StepResult] = field(default_factory=list)
    iterations: int = 0
    final_text: str = ""
    timed_out: bool = False
    iteration_limit_hit: bool = False
    # Step scoping for multi-step turns; None means every tool is allowed.
    allowed_tools: set[str] | None = None
    current_step: int | None = None
    seen_calls: set[str] = field(default_factory=set)
    succeeded_creations: set[str] = field(default_factory=set)

    def begin_step(self, step_number: int, tool: str | None) -> None:
        self.current_step = step_number
        self.allowed_tools = {tool} if tool else set()
        self.seen_calls = set()
        self.succeeded_creations = set()

    def end_step(self) -> None:
        self.current_step = None
        self.allowed_tools = None


class ToolDispatcher:
    def __init__(
        self,
        *,
        coordinator: ProviderFallbackCoordinator,
        store: ConversationStore,
        settings: Settings,
    ) -> None:
        self.coordinator = coordinator
        self.store = store
        self.settings = settings
        # Wired by the engine; retry needs the engine's own step runner.
        self.retry_handler: RetryHandler | None = None
        self._handlers: dict[str, ToolHandler] = {
            "create_image": self._generate_media,
            "edit_image": self._generate_media,
            "create_video": self._generate_media,
            "image_to_video": self._generate_media,
            "edit_video": self._generate_media,
            "create_music": self._generate_media,
            "text_to_speech": self._generate_media,
            "transcribe_audio": self._generate_media,
            "translate_text": self._translate_text,
            "search_web": self._search_web,
            "analyze_image": self._analyze_image,
            "create_poll": self._create_poll,
            "send_location": self._send_location,
            "get_chat_history": self._get_chat_history,
            "get_long_term_memory": self._get_long_term_memory,
            "save_user_preference": self._save_user_preference,
            "retry_last_command": self._retry_last_command,
        }

    async def dispatch(
        self, tool_name: str, arguments: dict[str, Any], state: TurnState
    ) -> ToolCall:
        """Run one tool call and record it on the turn state.

        Blocked calls are returned to the caller but not recorded as invocations.
        """
        definition = get_tool(tool_name)
        if definition is None:
            return ToolCall(tool=tool_name, arguments=arguments, error=f"Unknown tool: {tool_name}")

        blocked = self._guard(definition, arguments, state)
        if blocked is not None:
            logger.info(
                "tool_dispatch event=blocked tool=%s step=%s reason=%s",
                tool_name,
                state.current_step,
                blocked,
            )
            return ToolCall(tool=tool_name, arguments=arguments, error=blocked)

        await self._maybe_inject_history(definition, state)
        effective_args = self._repair_arguments(definition, arguments, state)
        state.seen_calls.add(_call_key(tool_name, arguments))

        try:
            payload = definition.parameter_schema.model_validate(effective_args)
        except PydanticValidationError as exc:
            result = ToolResult(
                success=False,
                error=f"Invalid arguments for {tool_name}: {_short_validation_error(exc)}",
            )
        else:
            handler = self._handlers[tool_name]
            try:
                result = await handler(payload, state)
            except Exception as exc:  # noqa: BLE001
                logger.warning("tool_dispatch event=error tool=%s reason=%s", tool_name, exc)
                result = ToolResult(success=False, error=str(exc) or exc.__class__.__name__)

        call = _to_tool_call(definition, effective_args, result, step_number=state.current_step)
        self._record(definition, call, state)
        logger.info(
            "tool_dispatch event=done tool=%s success=%s provider=%s attempts=%d step=%s",
            tool_name,
            call.success,
            call.provider,
            call.attempts,
            state.current_step,
        )
        return call

    def _guard(
        self, definition: ToolDefinition, arguments: dict[str, Any], state: TurnState
    ) -> str | None:
        if state.allowed_tools is not None and definition.name not in state.allowed_tools:
            allowed = ", ".join(sorted(state.allowed_tools)) or "no tool (answer with text)"
            return f"This tool is not part of the current step. Please execute only: {allowed}"
        if not definition.stochastic and _call_key(definition.name, arguments) in state.seen_calls:
            return (
                f"Duplicate call blocked: {definition.name} was already called with the same "
                "arguments. Use the previous result."
            )
        if definition.creation and definition.name in state.succeeded_creations:
            return f"{definition.name} already succeeded in this turn. Do not create it again."
        return None

    async def _maybe_inject_history(self, definition: ToolDefinition, state: TurnState) -> None:
        """Pull recent history for history-dependent tools unless the turn is self-contained."""
        if state.history_loaded or definition.history_dependency != "use":
            return
        # Mid-step lookups are out of scope; attached/quoted context supersedes history.
        if state.current_step is not None or state.normalized_input.is_self_contained():
            return
        state.history_loaded = True
        try:
            state.history = await asyncio.to_thread(
                self.store.get_recent_history,
                state.conversation_id,
                self.settings.history_limit,
            )
        except Exception as exc:  # noqa: BLE001
            error = PersistenceError(f"history read failed: {exc}")
            logger.warning(
                "persistence event=degraded op=get_recent_history conversation_id=%s reason=%s",
                state.conversation_id,
                error,
            )

    def _repair_arguments(
        self, definition: ToolDefinition, original_args: dict[str, Any], state: TurnState
    ) -> dict[str, Any]:
        """Fill missing media URLs from attached media, earlier assets, or lastCommand."""
        repaired = dict(original_args)
        fields = definition.parameter_schema.model_fields
        if "image_url" in fields and not repaired.get("image_url"):
            image_url = state.normalized_input.image_url or _latest_url(state.assets.images)
            if image_url is None and state.history_loaded and state.last_command is not None:
                image_url = state.last_command.image_url or _history_media(
                    state.history, "imageUrl"
                )
            if image_url:
                repaired["image_url"] = image_url
        if "video_url" in fields and not repaired.get("video_url"):
            video_url = state.normalized_input.video_url or _latest_url(state.assets.videos)
            if video_url:
                repaired["video_url"] = video_url
        if "audio_url" in fields and not repaired.get("audio_url"):
            audio_url = state.normalized_input.audio_url or _latest_url(state.assets.audio)
            if audio_url is None and state.history_loaded and state.last_command is not None:
                audio_url = state.last_command.audio_url
            if audio_url:
                repaired["audio_url"] = audio_url
        if "prompt" in fields and not repaired.get("prompt"):
            for fallback_key in ("text", "description", "query"):
                fallback = original_args.get(fallback_key)
                if isinstance(fallback, str) and fallback.strip():
                    repaired["prompt"] = fallback
                    repaired.pop(fallback_key, None)
                    break
        return repaired

    def _record(self, definition: ToolDefinition, call: ToolCall, state: TurnState) -> None:
        state.tool_calls.append(call)
        state.results_by_tool[definition.name] = call.result
        # A retry's nested call already tracked its own assets.
        if not call.success or definition.name == "retry_last_command":
            return
        if definition.creation:
            state.succeeded_creations.add(definition.name)
        caption = str(call.arguments.get("prompt") or "")
        if call.result.get("imageUrl"):
            state.assets.images.append({"url": call.result["imageUrl"], "caption": caption})
        if call.result.get("videoUrl"):
            state.assets.videos.append({"url": call.result["videoUrl"], "caption": caption})
        if call.result.get("audioUrl"):
            state.assets.audio.append({"url": call.result["audioUrl"], "caption": caption})
        if isinstance(call.result.get("poll"), dict):
            state.assets.polls.append(call.result["poll"])

    async def generate(
        self,
        tool_name: str,
        kind: str,
        parameters: dict[str, Any],
        *,
        provider: str | None = None,
    ) -> ToolResult:
        requested = normalize_provider(provider)
        chain = [requested] if requested else self.settings.default_chain(kind)
        return await self.coordinator.invoke_with_fallback(
            tool_name,
            parameters,
            chain,
            kind=kind,
            requested_provider=requested,
        )

    async def _generate_media(self, payload: BaseModel, state: TurnState) -> ToolResult:
        definition = get_tool(_tool_name_for(payload))
        if definition is None or definition.provider_kind is None:
            raise ValueError(f"No generation kind for {type(payload).__name__}")
        parameters = payload.model_dump(exclude={"provider"}, exclude_none=True)
        result = await self.generate(
            definition.name,
            definition.provider_kind,
            parameters,
            provider=getattr(payload, "provider", None),
        )
        if result.success and "prompt" in parameters:
            result.data["prompt"] = parameters["prompt"]
        return result

    async def _translate_text(self, payload: TranslateTextInput, state: TurnState) -> ToolResult:
        prompt = (
            f"Translate the following text into {payload.target_language}. "
            f"Reply with the translation only.\n\n{payload.text}"
        )
        result = await self.generate("translate_text", "text", {"prompt": prompt})
        if result.success:
            result.data["translatedText"] = result.data.get("text", "")
        return result

    async def _search_web(self, payload: SearchWebInput, state: TurnState) -> ToolResult:
        prompt = (
            "Search the web for the query below and answer with a short summary "
            f"and the most relevant links.\n\nQuery: {payload.query}"
        )
        return await self.generate("search_web", "text", {"prompt": prompt, "search": True})

    async def _analyze_image(self, payload: AnalyzeImageInput, state: TurnState) -> ToolResult:
        return await self.generate(
            "analyze_image",
            "text",
            {"prompt": payload.question, "image_url": payload.image_url},
        )

    async def _create_poll(self, payload: CreatePollInput, state: TurnState) -> ToolResult:
        options = [option.strip() for option in payload.options if option.strip()]
        question = payload.topic
        if len(options) < 2:
            prompt = (
                "Write a short poll question and 2 to 6 answer options about the topic "
                'below. Reply with JSON only: {"question": str, "options": [str]}.\n\n'
                f"Topic: {payload.topic}"
            )
            result = await self.generate("create_poll", "text", {"prompt": prompt})
            if not result.success:
                return result
            question, options = _parse_poll(result.data.get("text", ""), fallback=payload.topic)
        poll = {"question": question, "options": options[:12]}
        return ToolResult(success=True, data={"success": True, "poll": poll})

    async def _send_location(self, payload: SendLocationInput, state: TurnState) -> ToolResult:
        region_key = (payload.region or "").strip().lower()
        bounds = _REGION_BOUNDS.get(region_key, _WORLD_BOUNDS)
        latitude = round(random.uniform(bounds[0], bounds[1]), 6)
        longitude = round(random.uniform(bounds[2], bounds[3]), 6)
        region_label = payload.region if region_key in _REGION_BOUNDS else "the world"
        return ToolResult(
            success=True,
            data={
                "success": True,
                "latitude": latitude,
                "longitude": longitude,
                "locationInfo": f"Random location in {region_label}: {latitude}, {longitude}",
            },
        )

    async def _get_chat_history(self, payload: GetChatHistoryInput, state: TurnState) -> ToolResult:
        try:
            messages = await asyncio.to_thread(
                self.store.get_recent_history, state.conversation_id, payload.limit
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("persistence event=degraded op=get_chat_history reason=%s", exc)
            return ToolResult(success=False, error="Could not read the chat history right now.")
        lines = [f"{message.role}: {message.content}" for message in messages]
        return ToolResult(
            success=True,
            data={"success": True, "text": "\n".join(lines), "data": {"count": len(lines)}},
        )

    async def _get_long_term_memory(self, payload: BaseModel, state: TurnState) -> ToolResult:
        try:
            memory = await asyncio.to_thread(self.store.get_long_term_memory, state.conversation_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("persistence event=degraded op=get_long_term_memory reason=%s", exc)
            return ToolResult(success=False, error="Could not read saved preferences right now.")
        summaries = [summary.summary for summary in memory.summaries]
        return ToolResult(
            success=True,
            data={
                "success": True,
                "data": {"preferences": memory.preferences, "summaries": summaries},
                "text": json.dumps(memory.preferences, ensure_ascii=False),
            },
        )

    async def _save_user_preference(
        self, payload: SaveUserPreferenceInput, state: TurnState
    ) -> ToolResult:
        try:
            await asyncio.to_thread(
                self.store.save_user_preference, state.conversation_id, payload.key, payload.value
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("persistence event=degraded op=save_user_preference reason=%s", exc)
            return ToolResult(success=False, error="Could not save the preference right now.")
        return ToolResult(
            success=True,
            data={"success": True, "text": f"Saved preference {payload.key}={payload.value}"},
        )

    async def _retry_last_command(
        self, payload: RetryLastCommandInput, state: TurnState
    ) -> ToolResult:
        if self.retry_handler is None:
            raise RuntimeError("retry_last_command is not wired to an engine")
        return await self.retry_handler(payload, state)


def _to_tool_call(
    definition: ToolDefinition,
    arguments: dict[str, Any],
    result: ToolResult,
    *,
    step_number: int | None,
) -> ToolCall:
    envelope = dict(result.data)
    envelope["success"] = result.success
    if result.error:
        envelope["error"] = result.error
    return ToolCall(
        tool=definition.name,
        arguments=_jsonable_arguments(arguments),
        success=result.success,
        result=envelope,
        error=result.error,
        provider=result.provider,
        attempts=len(result.attempts),
        step_number=step_number,
    )


def _call_key(tool_name: str, arguments: dict[str, Any]) -> str:
    return f"{tool_name}:{json.dumps(arguments, sort_keys=True, default=str)}"


def _jsonable_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value for key, value in arguments.items() if not isinstance(value, (bytes, bytearray))
    }


def _short_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "arguments"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def _latest_url(assets: list[dict[str, Any]]) -> str | None:
    return assets[-1]["url"] if assets else None


def _history_media(history: list[Message], key: str) -> str | None:
    for message in reversed(history):
        value = message.metadata.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _tool_name_for(payload: BaseModel) -> str:
    """Map an input model instance back to its tool name."""
    # Schemas are unique per media tool, so the first match is the tool.
    for definition in TOOL_DEFINITIONS.values():
        if type(payload) is definition.parameter_schema:
            return definition.name
    return ""


def _parse_poll(raw: str, *, fallback: str) -> tuple[str, list[str]]:
    match = re.search(r"\{.*\}", raw, flags=re.S)
    if match is not None:
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            options = [str(option) for option in parsed.get("options", []) if str(option).strip()]
            if len(options) >= 2:
                return str(parsed.get("question") or fallback), options
    lines = [line.strip(" -*•\t") for line in raw.splitlines() if line.strip(" -*•\t")]
    if len(lines) >= 3:
        return lines[0], lines[1:]
    return fallback, ["Yes", "No"]
