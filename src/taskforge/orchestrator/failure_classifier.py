"""Deterministic reasoning-service failure classification for the client retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from taskforge.orchestrator.models import ReasoningFailureClass

REASONING_FAILURE_CLASSIFIER_VERSION = 1

_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429, 529})

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "credit balance",
    "quota",
    "billing",
    "payment",
    "insufficient",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "authentication_error",
    "permission_error",
    "invalid x-api-key",
    "invalid api key",
    "unauthorized",
    "forbidden",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "not_found_error",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "rate_limit",
    "rate limit",
    "too many requests",
    "try again later",
    "temporarily unavailable",
)


@dataclass(slots=True)
class ReasoningFailureClassification:
    """Normalized failure classification result."""

    failure_class: ReasoningFailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class is ReasoningFailureClass.TRANSIENT

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": REASONING_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_reasoning_failure(
    *,
    status_code: int | None,
    body: str,
) -> ReasoningFailureClassification:
    """Classify one failed reasoning call; ``status_code=None`` means a transport error."""

    if status_code is None:
        return ReasoningFailureClassification(
            failure_class=ReasoningFailureClass.TRANSIENT,
            reason_code="transport_error",
            matched_rule="transport_error",
            matched_pattern=None,
        )

    if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
        return ReasoningFailureClassification(
            failure_class=ReasoningFailureClass.TRANSIENT,
            reason_code=f"http_{status_code}_transient",
            matched_rule="transient_status",
            matched_pattern=None,
        )

    haystack = body.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None or status_code == 402:
        return ReasoningFailureClassification(
            failure_class=ReasoningFailureClass.BILLING_OR_QUOTA,
            reason_code="billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in {401, 403}:
        return ReasoningFailureClassification(
            failure_class=ReasoningFailureClass.ACCESS_OR_AUTH,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None or status_code == 404:
        return ReasoningFailureClassification(
            failure_class=ReasoningFailureClass.MODEL_NOT_AVAILABLE,
            reason_code="model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return ReasoningFailureClassification(
            failure_class=ReasoningFailureClass.TRANSIENT,
            reason_code="transient_message",
            matched_rule="transient_pattern",
            matched_pattern=pattern,
        )

    return ReasoningFailureClassification(
        failure_class=ReasoningFailureClass.INVALID_REQUEST,
        reason_code=f"http_{status_code}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
