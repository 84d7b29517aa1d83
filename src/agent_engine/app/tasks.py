"""Async generation tasks behind the HTTP task API.

A task is admitted as `pending`, processed in the background through the
provider fallback chain, and finished with exactly one terminal write.
Provider errors only ever reach the caller through the task's `error` field.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError
from .fallback import ProviderFallbackCoordinator
from .models import TaskStatusResponse
from .providers import normalize_provider
from .settings import Settings
from .storage import TaskLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskKind:
    tool_name: str
    kind: str
    # Fixed provider for provider-specific task types (e.g. "gemini-chat").
    provider: str | None = None
    # The prompt is echoed back as the task text for media results.
    echo_prompt: bool = True


TASK_TYPES: dict[str, TaskKind] = {
    "text-to-image": TaskKind("create_image", "image"),
    "text-to-video": TaskKind("create_video", "video"),
    "text-to-music": TaskKind("create_music", "music"),
    "text-to-speech": TaskKind("text_to_speech", "speech"),
    "gemini-chat": TaskKind("chat", "text", provider="gemini", echo_prompt=False),
    "openai-chat": TaskKind("chat", "text", provider="openai", echo_prompt=False),
}

UPLOAD_KINDS: dict[str, TaskKind] = {
    "edit": TaskKind("edit_image", "image_edit"),
    "video": TaskKind("image_to_video", "video"),
    "video-edit": TaskKind("edit_video", "video_edit"),
    "transcribe": TaskKind("transcribe_audio", "transcription", echo_prompt=False),
    "speech-to-song": TaskKind("create_music", "music"),
}


@dataclass(frozen=True)
class UploadedFile:
    content: bytes
    content_type: str
    filename: str = ""


def validate_upload(
    *,
    prompt: str,
    content: bytes | None,
    content_type: str,
    allowed_types: frozenset[str],
    min_bytes: int,
    max_bytes: int,
    prompt_required: bool = True,
) -> None:
    """Reject a bad upload before any task exists; `content` is None when no file was sent."""
    if prompt_required and not prompt.strip():
        raise ValidationError("Missing prompt")
    if content is None:
        raise ValidationError("Missing file")
    if content_type not in allowed_types:
        raise ValidationError(f"Unsupported file type: {content_type or 'unknown'}")
    if len(content) < min_bytes:
        raise ValidationError("File is empty or too small")
    if len(content) > max_bytes:
        raise ValidationError("File is too large")


class TaskService:
    def __init__(
        self,
        *,
        ledger: TaskLedger,
        coordinator: ProviderFallbackCoordinator,
        settings: Settings,
    ) -> None:
        self.ledger = ledger
        self.coordinator = coordinator
        self.settings = settings

    def start_task(self) -> str:
        task_id = self.ledger.create()
        logger.info("task_run event=admitted task_id=%s status=pending", task_id)
        return task_id

    async def run_generation(
        self,
        task_id: str,
        task_type: str,
        prompt: str,
        provider: str | None = None,
    ) -> None:
        task_kind = TASK_TYPES.get(task_type)
        if task_kind is None:
            await self._fail(task_id, f"Unsupported task type: {task_type}")
            return
        parameters: dict[str, Any] = {"prompt": prompt}
        if task_kind.kind == "speech":
            parameters = {"text": prompt}
        await self._run(task_id, task_type, task_kind, parameters, prompt, provider)

    async def run_upload(
        self,
        task_id: str,
        upload_kind: str,
        upload: UploadedFile,
        prompt: str = "",
        provider: str | None = None,
    ) -> None:
        task_kind = UPLOAD_KINDS[upload_kind]
        media_key = {
            "image_edit": "image",
            "video": "image",
            "video_edit": "video",
            "transcription": "audio",
            "music": "audio",
        }[task_kind.kind]
        parameters: dict[str, Any] = {
            media_key: upload.content,
            "mime_type": upload.content_type,
            "filename": upload.filename,
        }
        if prompt:
            parameters["prompt"] = prompt
        await self._run(task_id, upload_kind, task_kind, parameters, prompt, provider)

    def status(self, task_id: str) -> TaskStatusResponse:
        task = self.ledger.get(task_id)
        if task is None:
            return TaskStatusResponse(status="not_found")
        result = task.result or {}
        return TaskStatusResponse(
            status=task.status,
            result=result.get("result"),
            text=result.get("text"),
            cost=result.get("cost"),
            error=task.error,
        )

    async def _run(
        self,
        task_id: str,
        task_type: str,
        task_kind: TaskKind,
        parameters: dict[str, Any],
        prompt: str,
        provider: str | None,
    ) -> None:
        requested = normalize_provider(provider) or task_kind.provider
        chain = [requested] if requested else self.settings.default_chain(task_kind.kind)
        logger.info(
            "task_run event=start task_id=%s type=%s chain=%s",
            task_id,
            task_type,
            ",".join(chain),
        )
        try:
            tool_result = await self.coordinator.invoke_with_fallback(
                task_kind.tool_name,
                parameters,
                chain,
                kind=task_kind.kind,
                requested_provider=requested,
            )
        except Exception as exc:  # noqa: BLE001
            await self._fail(task_id, f"Unexpected task failure: {exc}")
            return

        if not tool_result.success:
            await self._fail(task_id, tool_result.error or "Generation failed.")
            return

        data = tool_result.data
        media_ref = data.get("imageUrl") or data.get("videoUrl") or data.get("audioUrl")
        text = prompt if task_kind.echo_prompt and media_ref else data.get("text", "")
        payload = {
            "result": media_ref or data.get("text", ""),
            "text": text,
            "cost": data.get("cost"),
            "provider": data.get("provider"),
        }
        await asyncio.to_thread(self.ledger.complete, task_id, payload)
        logger.info(
            "task_run event=completed task_id=%s type=%s status=done provider=%s",
            task_id,
            task_type,
            tool_result.provider,
        )

    async def _fail(self, task_id: str, error: str) -> None:
        await asyncio.to_thread(self.ledger.fail, task_id, error)
        logger.warning("task_run event=failed task_id=%s error=%s", task_id, error)
