from __future__ import annotations

"""Error taxonomy shared by the branching, streaming and admission layers.

Every error carries a stable machine-readable ``code`` so clients can render a
specific remediation ("add an API key", "wait N minutes") instead of parsing
messages. The API layer turns these into JSON bodies; services raise them
directly.
"""

from typing import Any, Dict, Optional


class ChatError(Exception):
    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[str] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details
        self.suggestion = suggestion

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        if self.suggestion:
            body["suggestion"] = self.suggestion
        return body


class NotFound(ChatError):
    status_code = 404
    default_code = "NOT_FOUND"


class Unauthorized(ChatError):
    status_code = 403
    default_code = "UNAUTHORIZED"


class InvariantViolation(ChatError):
    status_code = 409
    default_code = "INVARIANT_VIOLATION"


class RateLimited(ChatError):
    status_code = 429
    default_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        *,
        retry_after_ms: int,
        limit_name: Optional[str] = None,
        code: Optional[str] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code=code,
            suggestion=suggestion or "Please wait before sending another message",
        )
        self.retry_after_ms = max(0, int(retry_after_ms))
        self.limit_name = limit_name

    @property
    def retry_after_seconds(self) -> int:
        # Round up so a client never retries early
        return max(1, -(-self.retry_after_ms // 1000))

    def to_payload(self) -> Dict[str, Any]:
        body = super().to_payload()
        body["retry_after_ms"] = self.retry_after_ms
        if self.limit_name:
            body["limit_name"] = self.limit_name
        return body


class UpstreamFailure(ChatError):
    status_code = 502
    default_code = "STREAM_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[str] = None,
        suggestion: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code=code, details=details, suggestion=suggestion)
        if status_code is not None:
            self.status_code = status_code
