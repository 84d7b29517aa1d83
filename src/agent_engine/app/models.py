"""Pydantic models shared across the HTTP API, engine, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Field(default_factory=...): creates a fresh default object per instance.
- Turn: one request/response cycle handled by the agent engine.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Task lifecycle states used by the ledger + task-status responses.
TaskStatus = Literal["pending", "done", "failed"]

# Whether a tool needs recent conversation history to work correctly.
HistoryDependency = Literal["ignore", "use"]


class Task(BaseModel):
    """Canonical task record shape returned by the ledger."""

    task_id: str
    status: TaskStatus = "pending"
    # Terminal payload, e.g. {"result": "<url>", "text": "...", "cost": 0.04}.
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class StartTaskRequest(BaseModel):
    """Request body for POST /start-task."""

    type: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    provider: str | None = None


class StartTaskResponse(BaseModel):
    """Response body for POST /start-task and the upload endpoints."""

    taskId: str


class TaskStatusResponse(BaseModel):
    """Response body for GET /task-status/{taskId}."""

    status: str
    result: Any = None
    text: str | None = None
    cost: float | None = None
    error: str | None = None


class PlanStep(BaseModel):
    """One ordered step of a multi-step plan."""

    step_number: int
    # None means "answer with text only" for this step.
    tool: str | None = None
    action: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class Plan(BaseModel):
    """Planner output: single- vs multi-step and the ordered steps."""

    is_multi_step: bool = False
    steps: list[PlanStep] = Field(default_factory=list)
    reasoning: str = ""
    # True when planning failed open and defaulted to single-step.
    fallback: bool = False


class ProviderAttempt(BaseModel):
    """One provider attempt inside a fallback chain."""

    provider: str
    success: bool
    error: str | None = None
    retryable: bool = False
    duration_ms: float = 0.0


class ProviderResult(BaseModel):
    """Uniform output of Provider.generate()."""

    success: bool
    media_ref: str | None = None
    text: str | None = None
    provider_label: str | None = None
    error: str | None = None
    cost: float | None = None


class ToolResult(BaseModel):
    """Normalized output of one tool invocation."""

    success: bool
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    provider: str | None = None
    attempts: list[ProviderAttempt] = Field(default_factory=list)


class ToolCall(BaseModel):
    """Execution record of one tool call inside a turn."""

    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    success: bool = False
    result: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    provider: str | None = None
    attempts: int = 0
    step_number: int | None = None


class StepResult(BaseModel):
    """Outcome of one multi-step plan step."""

    step_number: int
    tool: str | None = None
    action: str = ""
    success: bool = False
    text: str | None = None
    error: str | None = None
    image_url: str | None = None
    video_url: str | None = None
    audio_url: str | None = None


class AgentResult(BaseModel):
    """Result envelope produced by the result aggregator for one turn."""

    success: bool = True
    text: str = ""
    image_url: str | None = None
    image_caption: str = ""
    video_url: str | None = None
    video_caption: str = ""
    audio_url: str | None = None
    poll: dict[str, Any] | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_info: str | None = None
    tools_used: list[str] = Field(default_factory=list)
    iterations: int = 0
    tool_calls: list[ToolCall] = Field(default_factory=list)
    multi_step: bool = False
    plan: Plan | None = None
    steps_completed: int = 0
    total_steps: int = 0
    step_results: list[StepResult] = Field(default_factory=list)
    timed_out: bool = False
    error: str | None = None
    # Set by retry_last_command when there was no previous command.
    nothing_to_retry: bool = False


class LastCommand(BaseModel):
    """Sanitized record of the most recent persistable tool call."""

    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    sanitized_result: dict[str, Any] = Field(default_factory=dict)
    prompt: str | None = None
    failed: bool = False
    is_multi_step: bool = False
    plan: Plan | None = None
    steps_completed: int = 0
    total_steps: int = 0
    step_results: list[StepResult] = Field(default_factory=list)
    image_url: str | None = None
    video_url: str | None = None
    audio_url: str | None = None
    saved_at: datetime | None = None


class Message(BaseModel):
    """One stored conversation message."""

    role: str
    content: str
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConversationSummary(BaseModel):
    summary: str
    key_topics: list[str] = Field(default_factory=list)
    created_at: datetime


class LongTermMemory(BaseModel):
    """User preferences plus rolling conversation summaries."""

    preferences: dict[str, Any] = Field(default_factory=dict)
    summaries: list[ConversationSummary] = Field(default_factory=list)


class ConversationContext(BaseModel):
    """Everything the engine loads about a conversation before a turn."""

    conversation_id: str
    recent_messages: list[Message] = Field(default_factory=list)
    last_command: LastCommand | None = None
    long_term: LongTermMemory = Field(default_factory=LongTermMemory)


class NormalizedInput(BaseModel):
    """Inbound request as handed over by a channel adapter."""

    text: str = ""
    image_url: str | None = None
    video_url: str | None = None
    audio_url: str | None = None
    # Text of a quoted message, when the user replied to one.
    quoted_text: str | None = None

    def has_media(self) -> bool:
        return bool(self.image_url or self.video_url or self.audio_url)

    def is_self_contained(self) -> bool:
        """Attached media or a quoted payload supersede history lookup."""
        return self.has_media() or bool(self.quoted_text)

    def context_markers(self) -> list[str]:
        markers: list[str] = []
        if self.image_url:
            markers.append("[image attached]")
        if self.video_url:
            markers.append("[video attached]")
        if self.audio_url:
            markers.append("[audio attached]")
        return markers
