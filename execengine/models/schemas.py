from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, model_validator
from pydantic.alias_generators import to_camel


class Language(str, Enum):
    JAVA = "JAVA"
    PYTHON = "PYTHON"
    JAVASCRIPT = "JAVASCRIPT"
    CPP = "CPP"

    @classmethod
    def _missing_(cls, value: object) -> "Language | None":
        if isinstance(value, str):
            upper = value.strip().upper()
            for member in cls:
                if member.value == upper:
                    return member
        return None

    @property
    def slug(self) -> str:
        return self.value.lower()


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    COMPILATION_ERROR = "COMPILATION_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    TIMEOUT = "TIMEOUT"
    MEMORY_LIMIT_EXCEEDED = "MEMORY_LIMIT_EXCEEDED"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteRequest(_CamelModel):
    code: StrictStr | None = Field(None, description="Source code to build and run.")
    language: Language | None = Field(None, description="One of JAVA, PYTHON, JAVASCRIPT, CPP.")
    stdin: StrictStr | None = Field(None, description="Optional stdin passed to the program.")
    timeout_seconds: StrictInt | None = Field(
        None, description="Run timeout in seconds; the configured default applies when omitted."
    )


class ExecuteResponse(_CamelModel):
    success: bool
    output: StrictStr | None = None
    error: StrictStr | None = None
    compilation_error: StrictStr | None = None
    status: ExecutionStatus
    execution_time_ms: StrictInt = 0
    memory_usage_mb: StrictInt = Field(0, alias="memoryUsageMB")
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    language: StrictStr | None = None
    hint: StrictStr | None = None

    @model_validator(mode="after")
    def _one_body_per_status(self) -> "ExecuteResponse":
        bodies = {
            "output": self.output,
            "compilation_error": self.compilation_error,
            "error": self.error,
        }
        if self.status is ExecutionStatus.SUCCESS:
            expected = "output"
        elif self.status is ExecutionStatus.COMPILATION_ERROR:
            expected = "compilation_error"
        else:
            expected = "error"
        for name, value in bodies.items():
            if name != expected and value:
                raise ValueError(f"{name} must be empty when status is {self.status.value}")
        if bodies[expected] is None:
            raise ValueError(f"{expected} is required when status is {self.status.value}")
        if self.success != (self.status is ExecutionStatus.SUCCESS):
            raise ValueError("success must be true exactly when status is SUCCESS")
        return self


class SecurityFindingOut(_CamelModel):
    rule: StrictStr
    matched: StrictStr
    severity: StrictStr


class ValidateResponse(_CamelModel):
    valid: bool
    status: ExecutionStatus | None = None
    findings: list[SecurityFindingOut] = Field(default_factory=list)


class HintResponse(_CamelModel):
    hint: StrictStr
    status: ExecutionStatus


class LanguageInfo(_CamelModel):
    name: Language
    compiled: bool
    source_file: StrictStr


class LanguagesResponse(_CamelModel):
    languages: list[LanguageInfo]


class HealthResponse(_CamelModel):
    status: StrictStr
    sandbox_runtime_available: bool
    message: StrictStr = ""
