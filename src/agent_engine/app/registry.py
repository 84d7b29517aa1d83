"""Static tool catalog.

Every tool has a strict pydantic parameter schema, a category, and a history
dependency flag. Provider-backed tools name the generation kind they route to;
built-in tools (history, memory, location, retry) have no provider kind.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field

from .models import HistoryDependency


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateImageInput(StrictModel):
    prompt: str = Field(min_length=1)
    provider: str | None = None


class EditImageInput(StrictModel):
    prompt: str = Field(min_length=1)
    image_url: str = Field(min_length=1)
    provider: str | None = None


class CreateVideoInput(StrictModel):
    prompt: str = Field(min_length=1)
    provider: str | None = None


class ImageToVideoInput(StrictModel):
    prompt: str = Field(min_length=1)
    image_url: str = Field(min_length=1)
    provider: str | None = None


class EditVideoInput(StrictModel):
    prompt: str = Field(min_length=1)
    video_url: str = Field(min_length=1)
    provider: str | None = None


class CreateMusicInput(StrictModel):
    prompt: str = Field(min_length=1)
    provider: str | None = None


class TextToSpeechInput(StrictModel):
    text: str = Field(min_length=1)
    voice: str | None = None
    provider: str | None = None


class TranscribeAudioInput(StrictModel):
    audio_url: str = Field(min_length=1)
    provider: str | None = None


class TranslateTextInput(StrictModel):
    text: str = Field(min_length=1)
    target_language: str = Field(min_length=1)


class SearchWebInput(StrictModel):
    query: str = Field(min_length=1)


class AnalyzeImageInput(StrictModel):
    image_url: str = Field(min_length=1)
    question: str = "Describe this image."


class CreatePollInput(StrictModel):
    topic: str = Field(min_length=1)
    options: list[str] = Field(default_factory=list)


class SendLocationInput(StrictModel):
    region: str | None = None


class GetChatHistoryInput(StrictModel):
    limit: int = Field(default=20, ge=1, le=100)


class GetLongTermMemoryInput(StrictModel):
    pass


class SaveUserPreferenceInput(StrictModel):
    key: str = Field(min_length=1)
    value: str


class RetryLastCommandInput(StrictModel):
    provider_override: str | None = None
    step_numbers: list[int] | None = None
    step_tools: list[str] | None = None
    modifications: str | None = None


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    category: str
    description: str
    parameter_schema: type[BaseModel]
    history_dependency: HistoryDependency = "ignore"
    critical_usage_note: str = ""
    # Generation kind for provider-backed tools; None for built-ins.
    provider_kind: str | None = None
    # False for ephemeral/history-only tools that never become lastCommand.
    persistable: bool = True
    # Repeating an identical call is legitimate (new sample each time).
    stochastic: bool = False
    # Creates a new asset; not re-run within a turn after it succeeded.
    creation: bool = False


TOOL_DEFINITIONS: dict[str, ToolDefinition] = {
    definition.name: definition
    for definition in (
        ToolDefinition(
            name="create_image",
            category="creation",
            description="Generate a new image from a text prompt.",
            parameter_schema=CreateImageInput,
            critical_usage_note=(
                "Use only for NEW images; use edit_image to change an existing one."
            ),
            provider_kind="image",
            stochastic=True,
            creation=True,
        ),
        ToolDefinition(
            name="edit_image",
            category="editing",
            description="Edit an attached or referenced image according to a prompt.",
            parameter_schema=EditImageInput,
            critical_usage_note="Requires image_url of the image to edit.",
            provider_kind="image_edit",
        ),
        ToolDefinition(
            name="create_video",
            category="creation",
            description="Generate a new video from a text prompt.",
            parameter_schema=CreateVideoInput,
            provider_kind="video",
            stochastic=True,
            creation=True,
        ),
        ToolDefinition(
            name="image_to_video",
            category="creation",
            description="Animate an image into a short video.",
            parameter_schema=ImageToVideoInput,
            history_dependency="use",
            critical_usage_note="If no image is attached, the image may come from recent history.",
            provider_kind="video",
            creation=True,
        ),
        ToolDefinition(
            name="edit_video",
            category="editing",
            description="Edit an attached video according to a prompt.",
            parameter_schema=EditVideoInput,
            provider_kind="video_edit",
        ),
        ToolDefinition(
            name="create_music",
            category="creation",
            description="Compose a song or music clip from a description.",
            parameter_schema=CreateMusicInput,
            provider_kind="music",
            stochastic=True,
            creation=True,
        ),
        ToolDefinition(
            name="text_to_speech",
            category="audio",
            description="Speak the given text aloud as an audio clip.",
            parameter_schema=TextToSpeechInput,
            provider_kind="speech",
            stochastic=True,
        ),
        ToolDefinition(
            name="transcribe_audio",
            category="audio",
            description="Transcribe an attached audio clip to text.",
            parameter_schema=TranscribeAudioInput,
            history_dependency="use",
            provider_kind="transcription",
            persistable=False,
        ),
        ToolDefinition(
            name="translate_text",
            category="text",
            description="Translate text into a target language.",
            parameter_schema=TranslateTextInput,
            provider_kind="text",
        ),
        ToolDefinition(
            name="search_web",
            category="search",
            description="Search the web and answer with a short summary.",
            parameter_schema=SearchWebInput,
            provider_kind="text",
        ),
        ToolDefinition(
            name="analyze_image",
            category="analysis",
            description="Answer a question about an attached image.",
            parameter_schema=AnalyzeImageInput,
            history_dependency="use",
            provider_kind="text",
        ),
        ToolDefinition(
            name="create_poll",
            category="creation",
            description="Create a poll with a question and 2-12 options.",
            parameter_schema=CreatePollInput,
            provider_kind="text",
            stochastic=True,
            creation=True,
        ),
        ToolDefinition(
            name="send_location",
            category="location",
            description="Send a random location, optionally within a named region.",
            parameter_schema=SendLocationInput,
            stochastic=True,
        ),
        ToolDefinition(
            name="get_chat_history",
            category="context",
            description="Read recent messages of this conversation.",
            parameter_schema=GetChatHistoryInput,
            history_dependency="use",
            persistable=False,
        ),
        ToolDefinition(
            name="get_long_term_memory",
            category="context",
            description="Read saved user preferences and conversation summaries.",
            parameter_schema=GetLongTermMemoryInput,
            history_dependency="use",
            persistable=False,
        ),
        ToolDefinition(
            name="save_user_preference",
            category="context",
            description="Remember a user preference as a key/value pair.",
            parameter_schema=SaveUserPreferenceInput,
            history_dependency="use",
            persistable=False,
        ),
        ToolDefinition(
            name="retry_last_command",
            category="meta",
            description=(
                "Re-run the previous command, optionally with another provider, "
                "only some steps of a multi-step command, or modifications."
            ),
            parameter_schema=RetryLastCommandInput,
            history_dependency="use",
            critical_usage_note=(
                "Use when the user says 'again', 'retry', or 'try with <provider>'."
            ),
            persistable=False,
            stochastic=True,
        ),
    )
}


def get_tool(name: str | None) -> ToolDefinition | None:
    if not name:
        return None
    return TOOL_DEFINITIONS.get(name)


def render_catalog(names: list[str] | None = None) -> str:
    """Render tool definitions as prompt text for planner/decision calls."""
    selected = [
        TOOL_DEFINITIONS[name] for name in (names or TOOL_DEFINITIONS) if name in TOOL_DEFINITIONS
    ]
    lines: list[str] = []
    for definition in selected:
        params = ", ".join(
            f"{field_name}{'' if field.is_required() else '?'}"
            for field_name, field in definition.parameter_schema.model_fields.items()
        )
        line = f"- {definition.name}({params}): {definition.description}"
        if definition.critical_usage_note:
            line += f" NOTE: {definition.critical_usage_note}"
        lines.append(line)
    return "\n".join(lines)
