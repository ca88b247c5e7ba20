"""Deterministic classification of generation failures for user-facing notices.

Retry policy is uniform across classes; the classification only picks the
wording of a notification.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

GENERATION_FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Normalized failure classes shown to users."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    GATEWAY = "gateway"
    RATE_LIMIT = "rate_limit"
    SERVICE_BUSY = "service_busy"
    ACCESS_OR_AUTH = "access_or_auth"
    BAD_REQUEST = "bad_request"
    UNKNOWN = "unknown"


_TITLES: dict[FailureClass, str] = {
    FailureClass.TIMEOUT: "Generation timed out",
    FailureClass.NETWORK: "Network connection failed",
    FailureClass.GATEWAY: "Service temporarily unavailable",
    FailureClass.RATE_LIMIT: "Too many requests",
    FailureClass.SERVICE_BUSY: "Generation service busy",
    FailureClass.ACCESS_OR_AUTH: "Authentication failed",
    FailureClass.BAD_REQUEST: "Request rejected",
    FailureClass.UNKNOWN: "Generation failed",
}

# Order matters: the first matching rule wins.
_RULES: tuple[tuple[FailureClass, tuple[str, ...]], ...] = (
    (FailureClass.TIMEOUT, ("timeout", "timed out", "abort")),
    (
        FailureClass.NETWORK,
        ("network", "failed to fetch", "fetch", "connection", "net::", "dns"),
    ),
    (FailureClass.GATEWAY, ("504", "502", "gateway")),
    (FailureClass.RATE_LIMIT, ("429", "rate limit", "too many")),
    (FailureClass.SERVICE_BUSY, ("503", "service unavailable", "overloaded")),
    (
        FailureClass.ACCESS_OR_AUTH,
        ("401", "403", "unauthorized", "forbidden", "api key"),
    ),
    (FailureClass.BAD_REQUEST, ("400", "bad request", "invalid")),
)


@dataclass(slots=True)
class GenerationFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None
    title: str

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for notifications and logs."""

        return {
            "classifier_version": GENERATION_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_generation_failure(
    error: BaseException | str | None,
) -> GenerationFailureClassification:
    """Classify raw error text into a deterministic failure class."""

    haystack = str(error or "").lower()
    for failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return GenerationFailureClassification(
                failure_class=failure_class,
                matched_rule=failure_class.value,
                matched_pattern=pattern,
                title=_TITLES[failure_class],
            )
    return GenerationFailureClassification(
        failure_class=FailureClass.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
        title=_TITLES[FailureClass.UNKNOWN],
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
