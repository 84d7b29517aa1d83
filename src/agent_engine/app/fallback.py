"""Provider fallback coordinator.

One combinator, `invoke_with_fallback`, wraps every provider-backed tool call
with an ordered provider chain:
- retryable failures (timeout, rate limit, 5xx) advance the chain;
- terminal failures advance the chain while providers remain and abort on
  the last provider;
- on exhaustion the error lists every provider's message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .failure_classifier import ProviderFailureClassification, classify_provider_failure
from .models import ProviderAttempt, ProviderResult, ToolResult
from .providers import ProviderRegistry, format_provider_name

logger = logging.getLogger(__name__)

# Which result key carries the provider's media reference per generation kind.
MEDIA_RESULT_KEYS = {
    "image": "imageUrl",
    "image_edit": "imageUrl",
    "video": "videoUrl",
    "video_edit": "videoUrl",
    "music": "audioUrl",
    "speech": "audioUrl",
}


@dataclass
class _CircuitState:
    consecutive_failures: int = 0
    opened_at: float | None = None


@dataclass
class CircuitBreaker:
    """Skip a provider after repeated consecutive failures until a cool-down passes.

    State is per process; it only saves wasted calls and is never authoritative.
    """

    failure_threshold: int = 5
    reset_s: float = 60.0
    _states: dict[str, _CircuitState] = field(default_factory=dict)

    def allow(self, provider: str) -> bool:
        state = self._states.get(provider)
        if state is None or state.opened_at is None:
            return True
        if time.monotonic() - state.opened_at >= self.reset_s:
            # Half-open: let one call through; a failure re-opens immediately.
            state.opened_at = None
            state.consecutive_failures = self.failure_threshold - 1
            return True
        return False

    def record_success(self, provider: str) -> None:
        self._states.pop(provider, None)

    def record_failure(self, provider: str) -> None:
        state = self._states.setdefault(provider, _CircuitState())
        state.consecutive_failures += 1
        if state.consecutive_failures >= self.failure_threshold and state.opened_at is None:
            state.opened_at = time.monotonic()
            logger.warning(
                "circuit_breaker event=open provider=%s failures=%d",
                provider,
                state.consecutive_failures,
            )


class ProviderFallbackCoordinator:
    def __init__(
        self,
        *,
        providers: ProviderRegistry,
        timeouts_s: dict[str, float] | None = None,
        default_timeout_s: float = 30.0,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self.providers = providers
        self.timeouts_s = dict(timeouts_s or {})
        self.default_timeout_s = default_timeout_s
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    async def invoke_with_fallback(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        provider_chain: list[str],
        *,
        kind: str,
        requested_provider: str | None = None,
    ) -> ToolResult:
        """Run `kind` generation through `provider_chain` until one provider succeeds."""
        attempts: list[ProviderAttempt] = []
        if not provider_chain:
            return ToolResult(success=False, error=f"No providers configured for {tool_name}.")

        timeout_s = self.timeouts_s.get(kind, self.default_timeout_s)
        for index, provider_id in enumerate(provider_chain):
            is_last = index == len(provider_chain) - 1
            started = time.perf_counter()
            attempt, result = await self._attempt(
                provider_id, kind, arguments, timeout_s=timeout_s
            )
            attempt.duration_ms = round((time.perf_counter() - started) * 1000.0, 2)
            attempts.append(attempt)

            if result is not None:
                self.circuit_breaker.record_success(provider_id)
                logger.info(
                    "provider_fallback event=success tool=%s provider=%s attempt=%d/%d",
                    tool_name,
                    provider_id,
                    index + 1,
                    len(provider_chain),
                )
                return ToolResult(
                    success=True,
                    data=_result_data(kind, result, provider_id),
                    provider=provider_id,
                    attempts=attempts,
                )

            if attempt.retryable:
                # Input rejections say nothing about provider health.
                self.circuit_breaker.record_failure(provider_id)
            logger.warning(
                "provider_fallback event=failure tool=%s provider=%s retryable=%s last=%s error=%s",
                tool_name,
                provider_id,
                attempt.retryable,
                is_last,
                attempt.error,
            )
            if is_last:
                break

        return ToolResult(
            success=False,
            error=_exhausted_error(attempts, requested_provider=requested_provider),
            attempts=attempts,
        )

    async def _attempt(
        self,
        provider_id: str,
        kind: str,
        arguments: dict[str, Any],
        *,
        timeout_s: float,
    ) -> tuple[ProviderAttempt, ProviderResult | None]:
        provider = self.providers.get(provider_id)
        if provider is None:
            return _failed(
                provider_id,
                f"{format_provider_name(provider_id)} is not configured",
                retryable=False,
            )
        if not self.circuit_breaker.allow(provider_id):
            return _failed(
                provider_id,
                "circuit open: provider temporarily skipped after repeated failures",
                retryable=True,
            )

        try:
            result = await asyncio.wait_for(provider.generate(kind, arguments), timeout=timeout_s)
        except TimeoutError as exc:
            classification = classify_provider_failure(provider=provider_id, exc=exc)
            return _classified(provider_id, f"Timed out after {timeout_s:g}s", classification)
        except Exception as exc:  # noqa: BLE001
            status_code = getattr(exc, "code", None)
            classification = classify_provider_failure(
                provider=provider_id,
                exc=exc,
                status_code=status_code if isinstance(status_code, int) else None,
            )
            return _classified(provider_id, str(exc) or exc.__class__.__name__, classification)

        if result.success:
            return ProviderAttempt(provider=provider_id, success=True), result
        message = result.error or "Unknown provider error"
        classification = classify_provider_failure(provider=provider_id, message=message)
        return _classified(provider_id, message, classification)


def _failed(
    provider_id: str, error: str, *, retryable: bool
) -> tuple[ProviderAttempt, ProviderResult | None]:
    attempt = ProviderAttempt(provider=provider_id, success=False, error=error, retryable=retryable)
    return attempt, None


def _classified(
    provider_id: str, error: str, classification: ProviderFailureClassification
) -> tuple[ProviderAttempt, ProviderResult | None]:
    logger.info(
        "provider_attempt event=classified details=%s",
        classification.to_details(provider=provider_id),
    )
    return _failed(provider_id, error, retryable=classification.retryable)


def _result_data(kind: str, result: ProviderResult, provider_id: str) -> dict[str, Any]:
    data: dict[str, Any] = {
        "success": True,
        "provider": result.provider_label or format_provider_name(provider_id),
    }
    media_key = MEDIA_RESULT_KEYS.get(kind)
    if media_key and result.media_ref:
        data[media_key] = result.media_ref
    if result.text:
        data["text"] = result.text
    if result.cost is not None:
        data["cost"] = result.cost
    return data


def _exhausted_error(attempts: list[ProviderAttempt], *, requested_provider: str | None) -> str:
    failed = [attempt for attempt in attempts if not attempt.success]
    if not failed:
        return "All providers failed."
    if requested_provider:
        for attempt in failed:
            if attempt.provider == requested_provider:
                return attempt.error or "Unknown provider error"
    if len(failed) == 1:
        return failed[0].error or "Unknown provider error"
    lines = [
        f"• {format_provider_name(attempt.provider)}: {attempt.error or 'Unknown error'}"
        for attempt in failed
    ]
    return "All providers failed:\n" + "\n".join(lines)
