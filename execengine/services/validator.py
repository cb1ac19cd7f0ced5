from __future__ import annotations

from execengine.core.config import Settings
from execengine.core.errors import ValidationError
from execengine.models.schemas import ExecuteRequest


def effective_timeout(req: ExecuteRequest, settings: Settings) -> int:
    if req.timeout_seconds is None:
        return settings.default_timeout_sec
    return req.timeout_seconds


def validate_request(req: ExecuteRequest, settings: Settings) -> None:
    """Reject malformed requests before anything is allocated for them.

    Raises ``ValidationError`` naming the first offending field.
    """
    if req.code is None or not req.code.strip():
        raise ValidationError("code", "Code cannot be empty")
    if len(req.code) > settings.max_code_chars:
        raise ValidationError(
            "code", f"Code cannot exceed {settings.max_code_chars} characters"
        )
    if req.language is None:
        raise ValidationError("language", "Programming language must be specified")
    if req.stdin is not None and len(req.stdin) > settings.max_stdin_chars:
        raise ValidationError(
            "stdin", f"Input cannot exceed {settings.max_stdin_chars} characters"
        )
    timeout = effective_timeout(req, settings)
    if not settings.min_timeout_sec <= timeout <= settings.max_timeout_sec:
        raise ValidationError(
            "timeoutSeconds",
            f"timeoutSeconds must be between {settings.min_timeout_sec} "
            f"and {settings.max_timeout_sec}",
        )
