"""Deterministic provider failure classification for the fallback chain."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import ProviderTerminalError, ProviderTransientError, ValidationError

FAILURE_CLASSIFIER_VERSION = 1

_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "quota exceeded",
    "resource_exhausted",
    "try again later",
)
_SERVER_ERROR_PATTERNS: tuple[str, ...] = (
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "temporarily unavailable",
    "overloaded",
    "connection reset",
    "connection refused",
    "network error",
    "econnreset",
    "circuit open",
)
_POLICY_PATTERNS: tuple[str, ...] = (
    "safety",
    "content policy",
    "policy violation",
    "blocked",
    "moderation",
    "not allowed",
    "prohibited",
)
_INVALID_INPUT_PATTERNS: tuple[str, ...] = (
    "invalid",
    "unsupported",
    "bad request",
    "missing required",
    "400",
)
# Standalone 5xx status codes, e.g. "HTTP 503" or "status=502".
_SERVER_STATUS_RE = re.compile(r"\b5\d\d\b")


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_details(self, *, provider: str) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and attempt traces."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(
    *,
    provider: str,
    message: str | None = None,
    exc: BaseException | None = None,
    status_code: int | None = None,
) -> ProviderFailureClassification:
    """Classify one provider failure as retryable or terminal.

    Typed exceptions win over status codes, and status codes win over text
    patterns. Unrecognized failures are terminal.
    """

    if isinstance(exc, TimeoutError):
        return _retryable(provider, "timeout")
    if isinstance(exc, ProviderTransientError):
        return _retryable(provider, "typed_transient")
    if isinstance(exc, (ProviderTerminalError, ValidationError)):
        return _terminal(provider, "typed_terminal")

    if status_code is not None:
        if status_code == 429:
            return _retryable(provider, "rate_limit_status")
        if status_code == 408 or status_code >= 500:
            return _retryable(provider, "server_status")
        if 400 <= status_code < 500:
            return _terminal(provider, "client_status")

    haystack = _normalize_text(message=message, exc=exc)

    for rule, patterns in (
        ("timeout", _TIMEOUT_PATTERNS),
        ("rate_limit", _RATE_LIMIT_PATTERNS),
        ("server_error", _SERVER_ERROR_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _retryable(provider, rule, pattern)

    for rule, patterns in (
        ("policy_block", _POLICY_PATTERNS),
        ("invalid_input", _INVALID_INPUT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _terminal(provider, rule, pattern)

    match = _SERVER_STATUS_RE.search(haystack)
    if match is not None:
        return _retryable(provider, "server_status_text", match.group(0))

    return ProviderFailureClassification(
        retryable=False,
        reason_code=f"{provider}_terminal",
        matched_rule="fallback_terminal",
        matched_pattern=None,
    )


def _retryable(
    provider: str, rule: str, pattern: str | None = None
) -> ProviderFailureClassification:
    return ProviderFailureClassification(
        retryable=True,
        reason_code=f"{provider}_{rule}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _terminal(
    provider: str, rule: str, pattern: str | None = None
) -> ProviderFailureClassification:
    return ProviderFailureClassification(
        retryable=False,
        reason_code=f"{provider}_{rule}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _normalize_text(*, message: str | None, exc: BaseException | None) -> str:
    parts = [message or ""]
    if exc is not None:
        parts.append(str(exc))
    return "\n".join(parts).lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
