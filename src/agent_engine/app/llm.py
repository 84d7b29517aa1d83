"""LLM adapter used by the planner, the decision function, and text answers.

Only the OpenAI chat-completions REST API is wired. Calls are blocking; the
engine runs them through `asyncio.to_thread`.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel

from .failure_classifier import classify_provider_failure
from .settings import Settings

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)


class LLMAdapter(Protocol):
    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel: ...

    def generate_text(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        timeout_s: float,
    ) -> str: ...


class OpenAIChatCompletionsAdapter:
    """Chat completions over urllib, retrying only transient failures."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
        trace: bool = False,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.trace = trace

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel:
        response_format = {
            "type": "json_schema",
            "json_schema": {
                "name": response_model.__name__.lower(),
                # Tool arguments are free-form maps, which strict mode rejects.
                "strict": False,
                "schema": response_model.model_json_schema(),
            },
        }
        content = self._complete(
            system_prompt, user_prompt, timeout_s=timeout_s, response_format=response_format
        )
        return response_model.model_validate_json(content)

    def generate_text(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        timeout_s: float,
    ) -> str:
        """Plain completion; callers parse or repair the text themselves."""
        return self._complete(system_prompt, user_prompt, timeout_s=timeout_s)

    def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        timeout_s: float,
        response_format: dict[str, Any] | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if response_format is not None:
            payload["response_format"] = response_format

        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return _extract_content(self._post(payload, timeout_s=timeout_s))
            except (TimeoutError, error.URLError) as exc:
                status_code = exc.code if isinstance(exc, error.HTTPError) else None
                classification = classify_provider_failure(
                    provider="openai", exc=exc, status_code=status_code
                )
                logger.warning(
                    "llm_request event=failed attempt=%d/%d model=%s retryable=%s reason=%s",
                    attempt,
                    attempts,
                    self.model,
                    classification.retryable,
                    exc,
                )
                if not classification.retryable or attempt == attempts:
                    raise
                if self.backoff_s > 0:
                    time.sleep(self.backoff_s * attempt)
        raise RuntimeError("LLM request loop exited without a result")

    def _post(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if self.trace:
            logger.info(
                "llm_trace event=request model=%s url=%s timeout_s=%s", self.model, url, timeout_s
            )
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            message = f"OpenAI request failed ({exc.code}): {detail}"
            raise error.HTTPError(exc.url, exc.code, message, exc.headers, None) from exc
        if self.trace:
            logger.info("llm_trace event=response model=%s bytes=%d", self.model, len(body))
        return json.loads(body)


def _extract_content(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices") or []
    if not choices:
        raise ValueError("OpenAI response did not contain choices")
    content = (choices[0].get("message") or {}).get("content", "")
    if isinstance(content, list):
        # Content parts: keep the text segments only.
        content = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        ).strip()
    if isinstance(content, str) and content:
        return content
    raise ValueError("OpenAI response content could not be parsed as text")


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    """Adapter for the configured LLM provider, or None when it is not usable."""
    if settings.llm_provider.lower() != "openai" or not settings.openai_api_key:
        return None
    return OpenAIChatCompletionsAdapter(
        api_key=settings.openai_api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        trace=settings.llm_trace,
    )
