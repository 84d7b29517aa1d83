"""FastAPI application wiring for the agent engine.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- BackgroundTasks: work FastAPI runs after the response has been sent.
- UploadFile/Form: multipart form parsing for the upload endpoints.
- app.state: a place to store shared runtime objects (ledger, store, engine).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, Request, UploadFile

from .app.agent import AgentEngine
from .app.conversation import PostgresConversationStore
from .app.decision import DecisionFunction
from .app.errors import ValidationError
from .app.fallback import CircuitBreaker, ProviderFallbackCoordinator
from .app.llm import build_llm_adapter
from .app.models import (
    AgentResult,
    NormalizedInput,
    StartTaskRequest,
    StartTaskResponse,
    TaskStatusResponse,
)
from .app.planner import IntentPlanner
from .app.providers import GENERATION_KINDS, build_provider_registry
from .app.registry import TOOL_DEFINITIONS
from .app.settings import Settings, get_settings
from .app.storage import PostgresTaskLedger
from .app.tasks import TaskService, UploadedFile, validate_upload
from .app.tools import ToolDispatcher

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})
VIDEO_CONTENT_TYPES = frozenset({"video/mp4", "video/quicktime", "video/webm", "video/x-msvideo"})
AUDIO_CONTENT_TYPES = frozenset(
    {
        "audio/mpeg",
        "audio/mp3",
        "audio/mp4",
        "audio/ogg",
        "audio/wav",
        "audio/x-wav",
        "audio/webm",
        "audio/aac",
    }
)


def create_app(*, settings_override: Settings | None = None) -> FastAPI:
    """Application factory.

    Builds the ledger, conversation store, provider chain, and agent engine,
    then exposes them through the HTTP routes below.
    """
    settings = settings_override or get_settings()

    # Fail fast if required configuration is missing.
    if not settings.database_url.strip():
        raise RuntimeError("AGENT_ENGINE_DATABASE_URL is required.")
    ledger = PostgresTaskLedger(database_url=settings.database_url)
    store = PostgresConversationStore(database_url=settings.database_url)

    llm_adapter = build_llm_adapter(settings)
    wants_llm = "llm" in {settings.planner_mode.lower(), settings.decision_mode.lower()}
    if wants_llm and llm_adapter is None:
        raise RuntimeError(
            "LLM mode requested but no adapter is configured. "
            "Set AGENT_ENGINE_OPENAI_API_KEY and AGENT_ENGINE_LLM_PROVIDER=openai."
        )

    providers = build_provider_registry(settings, llm_adapter=llm_adapter)
    coordinator = ProviderFallbackCoordinator(
        providers=providers,
        timeouts_s={kind: settings.timeout_for(kind) for kind in GENERATION_KINDS},
        default_timeout_s=settings.text_timeout_s,
        circuit_breaker=CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            reset_s=settings.circuit_reset_s,
        ),
    )
    dispatcher = ToolDispatcher(coordinator=coordinator, store=store, settings=settings)
    engine = AgentEngine(
        planner=IntentPlanner(
            mode=settings.planner_mode,
            llm_adapter=llm_adapter,
            timeout_s=settings.llm_timeout_s,
        ),
        decision=DecisionFunction(
            mode=settings.decision_mode,
            llm_adapter=llm_adapter,
            timeout_s=settings.llm_timeout_s,
        ),
        dispatcher=dispatcher,
        store=store,
        settings=settings,
    )
    task_service = TaskService(ledger=ledger, coordinator=coordinator, settings=settings)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    # Shared objects live in app.state so route handlers and tests can reach them.
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.store = store
    app.state.providers = providers
    app.state.engine = engine
    app.state.task_service = task_service

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/tools")
    def list_tools() -> dict[str, list[dict[str, str]]]:
        return {
            "tools": [
                {
                    "name": definition.name,
                    "category": definition.category,
                    "description": definition.description,
                    "history_dependency": definition.history_dependency,
                }
                for definition in TOOL_DEFINITIONS.values()
            ]
        }

    @app.post("/start-task", response_model=StartTaskResponse)
    def start_task(
        payload: StartTaskRequest, background_tasks: BackgroundTasks
    ) -> StartTaskResponse:
        task_id = task_service.start_task()
        background_tasks.add_task(
            task_service.run_generation,
            task_id,
            payload.type,
            payload.prompt,
            payload.provider,
        )
        return StartTaskResponse(taskId=task_id)

    async def _start_upload(
        background_tasks: BackgroundTasks,
        *,
        upload_kind: str,
        file: UploadFile | None,
        prompt: str,
        provider: str | None,
        allowed_types: frozenset[str],
        min_bytes: int = 1,
        prompt_required: bool = True,
    ) -> StartTaskResponse:
        content_type = filename = ""
        content: bytes | None = None
        if file is not None:
            content_type = (file.content_type or "").split(";")[0].strip().lower()
            filename = file.filename or ""
            content = await file.read()
        try:
            validate_upload(
                prompt=prompt,
                content=content,
                content_type=content_type,
                allowed_types=allowed_types,
                min_bytes=min_bytes,
                max_bytes=settings.upload_max_bytes,
                prompt_required=prompt_required,
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        task_id = await asyncio.to_thread(task_service.start_task)
        background_tasks.add_task(
            task_service.run_upload,
            task_id,
            upload_kind,
            UploadedFile(content=content or b"", content_type=content_type, filename=filename),
            prompt.strip(),
            provider,
        )
        return StartTaskResponse(taskId=task_id)

    @app.post("/upload-edit", response_model=StartTaskResponse)
    async def upload_edit(
        background_tasks: BackgroundTasks,
        file: UploadFile | None = File(None),
        prompt: str = Form(""),
        provider: str | None = Form(None),
    ) -> StartTaskResponse:
        return await _start_upload(
            background_tasks,
            upload_kind="edit",
            file=file,
            prompt=prompt,
            provider=provider,
            allowed_types=IMAGE_CONTENT_TYPES,
        )

    @app.post("/upload-video", response_model=StartTaskResponse)
    async def upload_video(
        background_tasks: BackgroundTasks,
        file: UploadFile | None = File(None),
        prompt: str = Form(""),
        provider: str | None = Form(None),
    ) -> StartTaskResponse:
        return await _start_upload(
            background_tasks,
            upload_kind="video",
            file=file,
            prompt=prompt,
            provider=provider,
            allowed_types=IMAGE_CONTENT_TYPES,
        )

    @app.post("/upload-video-edit", response_model=StartTaskResponse)
    async def upload_video_edit(
        background_tasks: BackgroundTasks,
        file: UploadFile | None = File(None),
        prompt: str = Form(""),
        provider: str | None = Form(None),
    ) -> StartTaskResponse:
        return await _start_upload(
            background_tasks,
            upload_kind="video-edit",
            file=file,
            prompt=prompt,
            provider=provider,
            allowed_types=VIDEO_CONTENT_TYPES,
        )

    @app.post("/upload-transcribe", response_model=StartTaskResponse)
    async def upload_transcribe(
        background_tasks: BackgroundTasks,
        file: UploadFile | None = File(None),
        provider: str | None = Form(None),
    ) -> StartTaskResponse:
        return await _start_upload(
            background_tasks,
            upload_kind="transcribe",
            file=file,
            prompt="",
            provider=provider,
            allowed_types=AUDIO_CONTENT_TYPES,
            prompt_required=False,
        )

    @app.post("/speech-to-song", response_model=StartTaskResponse)
    async def speech_to_song(
        background_tasks: BackgroundTasks,
        file: UploadFile | None = File(None),
        prompt: str = Form(""),
        provider: str | None = Form(None),
    ) -> StartTaskResponse:
        return await _start_upload(
            background_tasks,
            upload_kind="speech-to-song",
            file=file,
            prompt=prompt,
            provider=provider,
            allowed_types=AUDIO_CONTENT_TYPES,
            min_bytes=settings.speech_min_bytes,
        )

    @app.get(
        "/task-status/{task_id}",
        response_model=TaskStatusResponse,
        response_model_exclude_none=True,
    )
    def task_status(task_id: str) -> TaskStatusResponse:
        return task_service.status(task_id)

    @app.post("/{source}/callback")
    async def provider_callback(source: str, request: Request) -> dict[str, str]:
        # Passive acknowledgment only; the body is logged and never trusted.
        body = await request.body()
        logger.info(
            "provider_callback event=received source=%s body=%s",
            source,
            _preview(body),
        )
        return {"status": "received"}

    @app.post("/conversations/{conversation_id}/messages", response_model=AgentResult)
    async def post_message(conversation_id: str, payload: NormalizedInput) -> AgentResult:
        return await engine.route_to_agent(payload, conversation_id)

    return app


def _preview(body: bytes, limit: int = 500) -> str:
    text = body.decode("utf-8", errors="replace")
    try:
        parsed: Any = json.loads(text)
    except ValueError:
        return text[:limit]
    return json.dumps(parsed, ensure_ascii=False)[:limit]


# Module-level app for `uvicorn agent_engine.main:app`.
app = create_app()
