"""Provider interface and registry.

A provider is one external generation backend (Gemini, OpenAI, Veo 3, ...).
The engine only depends on the uniform `generate(kind, parameters)` contract
plus an ordered list of provider ids per generation kind.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any, Protocol
from urllib import error, request

from .llm import LLMAdapter
from .models import ProviderResult
from .settings import Settings

logger = logging.getLogger(__name__)

# Generation kinds understood by providers.
GENERATION_KINDS = (
    "text",
    "image",
    "image_edit",
    "video",
    "video_edit",
    "music",
    "speech",
    "transcription",
)

_PROVIDER_LABELS = {
    "gemini": "Gemini",
    "openai": "OpenAI",
    "grok": "Grok",
    "veo3": "Veo 3",
    "sora": "Sora 2",
    "sora-pro": "Sora 2 Pro",
    "kling": "Kling",
    "runway": "Runway",
    "suno": "Suno",
    "elevenlabs": "ElevenLabs",
    "replicate": "Replicate",
    "kie": "Kie",
}


class Provider(Protocol):
    name: str

    async def generate(self, kind: str, parameters: dict[str, Any]) -> ProviderResult: ...


def format_provider_name(provider: str | None) -> str:
    """Human-readable provider label, e.g. 'veo3' -> 'Veo 3'."""
    if not provider:
        return "Unknown"
    key = provider.strip().lower()
    return _PROVIDER_LABELS.get(key, provider.strip().capitalize())


def normalize_provider(provider: str | None) -> str | None:
    """Map free-form provider names ('Veo 3', 'Sora 2') back to ids."""
    if not provider:
        return None
    cleaned = provider.strip().lower()
    compact = re.sub(r"[\s-]", "", cleaned)
    for key, label in _PROVIDER_LABELS.items():
        if compact in {key.replace("-", ""), label.lower().replace(" ", "")}:
            return key
    return cleaned


class ProviderRegistry:
    """Provider id -> Provider instance."""

    def __init__(self, providers: dict[str, Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = dict(providers or {})

    def register(self, provider_id: str, provider: Provider) -> None:
        self._providers[provider_id] = provider

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers


class HttpProvider:
    """Generic JSON-over-HTTP provider.

    POSTs {"kind": ..., "parameters": ...} to a configured endpoint and expects
    {"success": bool, "mediaRef"/"media_ref": str, "text": str, "error": str, "cost": float}.
    Binary parameters are sent base64-encoded.
    """

    def __init__(self, *, name: str, endpoint: str, timeout_s: float = 600.0) -> None:
        self.name = name
        self.endpoint = endpoint
        self.timeout_s = timeout_s

    async def generate(self, kind: str, parameters: dict[str, Any]) -> ProviderResult:
        body = await asyncio.to_thread(self._post, kind, parameters)
        success = bool(body.get("success"))
        return ProviderResult(
            success=success,
            media_ref=body.get("mediaRef") or body.get("media_ref"),
            text=body.get("text"),
            provider_label=format_provider_name(self.name),
            error=None if success else str(body.get("error") or "Unknown provider error"),
            cost=body.get("cost"),
        )

    def _post(self, kind: str, parameters: dict[str, Any]) -> dict[str, Any]:
        payload = {"kind": kind, "parameters": _encode_parameters(parameters)}
        req = request.Request(
            url=self.endpoint,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"{format_provider_name(self.name)} request failed ({exc.code}): {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError(f"{self.name} returned a non-object response")
        return parsed


class LLMTextProvider:
    """Answers `text` generation through the configured LLM adapter."""

    def __init__(self, *, name: str, llm_adapter: LLMAdapter, timeout_s: float = 30.0) -> None:
        self.name = name
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    async def generate(self, kind: str, parameters: dict[str, Any]) -> ProviderResult:
        if kind != "text":
            return ProviderResult(
                success=False,
                provider_label=format_provider_name(self.name),
                error=f"Unsupported generation kind for {self.name}: {kind}",
            )
        system_prompt = str(
            parameters.get("system_prompt")
            or "You are a helpful assistant in a chat. Answer concisely in plain text."
        )
        user_prompt = str(parameters.get("prompt") or "")
        text = await asyncio.to_thread(
            self.llm_adapter.generate_text,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            timeout_s=self.timeout_s,
        )
        return ProviderResult(
            success=True,
            text=text.strip(),
            provider_label=format_provider_name(self.name),
        )


def build_provider_registry(
    settings: Settings, *, llm_adapter: LLMAdapter | None = None
) -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider_id, endpoint in settings.provider_endpoints.items():
        registry.register(
            provider_id,
            HttpProvider(name=provider_id, endpoint=endpoint, timeout_s=settings.video_timeout_s),
        )
    if llm_adapter is not None and settings.llm_provider.lower() not in registry:
        registry.register(
            settings.llm_provider.lower(),
            LLMTextProvider(
                name=settings.llm_provider.lower(),
                llm_adapter=llm_adapter,
                timeout_s=settings.text_timeout_s,
            ),
        )
    logger.info("provider_registry event=built providers=%s", registry.names())
    return registry


def _encode_parameters(parameters: dict[str, Any]) -> dict[str, Any]:
    encoded: dict[str, Any] = {}
    for key, value in parameters.items():
        if isinstance(value, (bytes, bytearray)):
            encoded[key] = base64.b64encode(bytes(value)).decode("ascii")
        else:
            encoded[key] = value
    return encoded
