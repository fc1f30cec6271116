"""Provider failure classification and retry decisions.

Provider errors arrive untyped over the wire, so classification works on a
normalized view of the failure (status code, headers, body text, message)
rather than on exception classes.
"""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from .client import ProviderTarget

CONNECTION_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"socket.*closed",
        r"ECONNRESET",
        r"ECONNREFUSED",
        r"ETIMEDOUT",
        r"network.*error",
        r"fetch.*failed",
        r"aborted",
        r"connection.*(error|reset|refused|closed)",
        r"timed?\s*out",
    )
)

QUOTA_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"quota",
        r"limit.*exceeded",
        r"usage.*limit",
        r"premium.*request",
        r"insufficient.*quota",
        r"billing",
    )
)

# A 429 also carries "rate limit exceeded" for plain throttling; only billing
# wording turns it into a quota failure.
QUOTA_PATTERNS_429 = tuple(p for p in QUOTA_PATTERNS if p.pattern != r"limit.*exceeded")

QUOTA_STATUS = frozenset({402, 403, 429})
CONNECTION_STATUS = frozenset({408, 502, 503, 504})


class FailureKind(str, Enum):
    CONNECTION = "connection"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class ProviderFailure:
    status_code: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body_text: str = ""
    message: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> ProviderFailure:
        """Normalize any provider exception (openai SDK, ProviderError, plain)."""

        response = getattr(exc, "response", None)

        status = getattr(exc, "status_code", None)
        if status is None and response is not None:
            status = getattr(response, "status_code", None)
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None

        raw_headers = getattr(exc, "headers", None)
        if raw_headers is None and response is not None:
            raw_headers = getattr(response, "headers", None)
        headers: dict[str, str] = {}
        if raw_headers is not None:
            try:
                headers = {str(k).lower(): str(v) for k, v in dict(raw_headers).items()}
            except (TypeError, ValueError):
                headers = {}

        message = getattr(exc, "message", None)
        if not isinstance(message, str) or not message:
            message = str(exc)

        return cls(
            status_code=status,
            headers=headers,
            body_text=_body_text(getattr(exc, "body", None)),
            message=message,
        )


def _body_text(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, (bytes, bytearray)):
        return body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        return body
    if isinstance(body, Mapping):
        err = body.get("error", body)
        if isinstance(err, Mapping):
            for key in ("message", "code", "type"):
                v = err.get(key)
                if isinstance(v, str) and v:
                    return v
        if isinstance(err, str):
            return err
    return str(body)


def classify(failure: ProviderFailure) -> FailureKind:
    status = failure.status_code
    text = failure.body_text or failure.message

    if status in QUOTA_STATUS:
        patterns = QUOTA_PATTERNS_429 if status == 429 else QUOTA_PATTERNS
        if any(p.search(text) for p in patterns):
            return FailureKind.QUOTA_EXCEEDED

    if status == 429:
        return FailureKind.RATE_LIMITED

    if status in CONNECTION_STATUS:
        return FailureKind.CONNECTION

    if status is None and any(p.search(failure.message) for p in CONNECTION_PATTERNS):
        return FailureKind.CONNECTION

    return FailureKind.FATAL


def _finite_ms(value: str, scale: float) -> int | None:
    try:
        number = float(value) * scale
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return max(0, int(number))


def _retry_after_header_ms(value: str, now: float | None) -> int | None:
    value = value.strip()
    try:
        float(value)
    except ValueError:
        pass
    else:
        return _finite_ms(value, 1000)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    current = time.time() if now is None else now
    return max(0, int((when.timestamp() - current) * 1000))


def retry_after_ms(headers: Mapping[str, str], *, now: float | None = None) -> int | None:
    """Delay advertised by the provider, in milliseconds.

    When both `retry-after-ms` and `retry-after` are present the longer one
    wins. Values that are not finite numbers are ignored.
    """

    candidates: list[int] = []
    ms = headers.get("retry-after-ms")
    if ms:
        parsed = _finite_ms(ms, 1)
        if parsed is not None:
            candidates.append(parsed)

    value = headers.get("retry-after")
    if value:
        parsed = _retry_after_header_ms(value, now)
        if parsed is not None:
            candidates.append(parsed)

    return max(candidates) if candidates else None


@dataclass(frozen=True, slots=True)
class RetryDecision:
    action: Literal["retry", "switch_provider", "fail"]
    kind: FailureKind
    delay_ms: int | None = None
    next_provider: ProviderTarget | None = None
    reason: str = ""


class RetryPolicy:
    def __init__(self, *, max_attempts: int = 3, base_delay_ms: int = 1000, max_delay_ms: int = 30_000) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_ms = max(0, int(base_delay_ms))
        self.max_delay_ms = max(self.base_delay_ms, int(max_delay_ms))

    def backoff_ms(self, attempt: int) -> int:
        return min(self.max_delay_ms, self.base_delay_ms * (2 ** max(0, attempt)))

    def decide(
        self,
        failure: ProviderFailure,
        *,
        attempt: int,
        fallbacks: Sequence[ProviderTarget] = (),
    ) -> RetryDecision:
        """Decide what to do after a failed call.

        `attempt` is the zero-based index of the call that just failed on the
        current provider.
        """

        kind = classify(failure)

        if kind is FailureKind.QUOTA_EXCEEDED:
            if fallbacks:
                nxt = fallbacks[0]
                return RetryDecision(
                    action="switch_provider",
                    kind=kind,
                    next_provider=nxt,
                    reason=f"quota exceeded, switching to {nxt.label}",
                )
            return RetryDecision(action="fail", kind=kind, reason="quota exceeded and no fallback configured")

        if kind is FailureKind.FATAL:
            return RetryDecision(action="fail", kind=kind, reason=failure.message or "provider error")

        if attempt + 1 >= self.max_attempts:
            return RetryDecision(
                action="fail",
                kind=kind,
                reason=f"{kind.value}: giving up after {attempt + 1} attempts",
            )

        delay: int | None = None
        if kind is FailureKind.RATE_LIMITED:
            delay = retry_after_ms(failure.headers)
        if delay is None:
            delay = self.backoff_ms(attempt)

        return RetryDecision(action="retry", kind=kind, delay_ms=delay, reason=kind.value)
