"""Engine facade: the single ``execute`` / ``health`` surface callers depend on."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from execengine.core.config import Settings
from execengine.core.errors import SandboxUnavailableError, ToolchainMissingError, ValidationError
from execengine.models.schemas import (
    ExecuteRequest,
    ExecuteResponse,
    ExecutionStatus,
    HealthResponse,
    HintResponse,
    Language,
    LanguageInfo,
    LanguagesResponse,
    SecurityFindingOut,
    ValidateResponse,
)
from execengine.services.classifier import classify, security_violation, system_error
from execengine.services.hints import generate_hint
from execengine.services.languages import PROFILES, get_profile
from execengine.services.lifecycle import sandbox_scope
from execengine.services.pipeline import run_pipeline
from execengine.services.sandbox import NoSlotAvailableError, SandboxBackend, SandboxProvisioner
from execengine.services.scanner import scan, scan_all
from execengine.services.validator import effective_timeout, validate_request

logger = logging.getLogger(__name__)


@dataclass
class RuntimeStatus:
    """Whether the sandbox runtime can take work, refreshed by every health check."""

    available: bool = True
    message: str = "not checked yet"
    degraded: dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def update(self, available: bool, message: str, degraded: dict[str, str] | None = None) -> None:
        with self._lock:
            self.available = available
            self.message = message
            self.degraded = dict(degraded or {})

    def mark_unavailable(self, message: str) -> None:
        with self._lock:
            self.available = False
            self.message = message

    def mark_degraded(self, key: str, message: str) -> None:
        with self._lock:
            self.degraded[key] = message

    def snapshot(self) -> tuple[bool, str, dict[str, str]]:
        with self._lock:
            return self.available, self.message, dict(self.degraded)


def build_backend(settings: Settings) -> SandboxBackend:
    if settings.backend == "docker":
        from execengine.services.docker_backend import DockerBackend

        return DockerBackend(user=settings.docker_user)
    if settings.backend != "process":
        raise ValueError(f"unknown sandbox backend: {settings.backend!r}")
    from execengine.services.executor import ProcessBackend

    return ProcessBackend(scratch_root=settings.scratch_root, isolation=settings.sandbox_isolation)


class ExecutionEngine:
    def __init__(
        self,
        settings: Settings,
        *,
        backend: SandboxBackend | None = None,
        provisioner: SandboxProvisioner | None = None,
        runtime: RuntimeStatus | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend if backend is not None else build_backend(settings)
        self.provisioner = provisioner or SandboxProvisioner(
            self.backend,
            slots=settings.sandbox_slots,
            acquire_timeout_ms=settings.slot_acquire_timeout_ms,
            scratch_root=settings.scratch_root,
            max_output_bytes=settings.max_output_bytes,
        )
        self.runtime = runtime or RuntimeStatus()

    def start(self) -> None:
        self.refresh_runtime()
        available, message, degraded = self.runtime.snapshot()
        logger.info(
            "execution engine started: backend=%s slots=%s available=%s (%s)",
            self.backend.name,
            self.provisioner.slots,
            available,
            message,
        )
        for key, reason in degraded.items():
            logger.warning("sandbox degraded: %s: %s", key, reason)

    def close(self) -> None:
        self.backend.close()

    def refresh_runtime(self) -> RuntimeStatus:
        available, message = self.backend.check_available()
        degraded: dict[str, str] = {}
        if available:
            missing = self.backend.missing_toolchains(PROFILES)
            degraded = {language.value: reason for language, reason in missing.items()}
            degraded.update(self.backend.limitations())
        self.runtime.update(available, message, degraded)
        return self.runtime

    def health(self) -> HealthResponse:
        if not self.settings.execution_enabled:
            return HealthResponse(
                status="disabled", sandbox_runtime_available=False, message="Code execution is disabled"
            )
        self.refresh_runtime()
        available, message, degraded = self.runtime.snapshot()
        if not available:
            return HealthResponse(status="degraded", sandbox_runtime_available=False, message=message)
        if degraded:
            detail = "; ".join(f"{lang}: {reason}" for lang, reason in sorted(degraded.items()))
            return HealthResponse(status="degraded", sandbox_runtime_available=True, message=detail)
        return HealthResponse(
            status="ok", sandbox_runtime_available=True, message="Code execution service is ready"
        )

    def languages(self) -> LanguagesResponse:
        return LanguagesResponse(
            languages=[
                LanguageInfo(
                    name=language,
                    compiled=profile.compiled,
                    source_file=profile.source_file.format(main="Main"),
                )
                for language, profile in PROFILES.items()
            ]
        )

    def _validate(self, req: ExecuteRequest) -> None:
        try:
            validate_request(req, self.settings)
        except ValidationError as exc:
            logger.warning("rejected request: %s (field %s)", exc.message, exc.field)
            raise

    def validate(self, req: ExecuteRequest) -> ValidateResponse:
        """Validation plus security pre-scan, without running anything."""
        self._validate(req)
        assert req.code is not None and req.language is not None
        findings = scan_all(req.code, req.language)
        if not findings:
            return ValidateResponse(valid=True)
        return ValidateResponse(
            valid=False,
            status=ExecutionStatus.SECURITY_VIOLATION,
            findings=[
                SecurityFindingOut(rule=f.rule, matched=f.matched, severity=f.severity.value)
                for f in findings
            ],
        )

    def hint(self, req: ExecuteRequest) -> HintResponse:
        response = self.execute(req)
        return HintResponse(
            hint=response.hint or generate_hint(response.status, None, req.language),
            status=response.status,
        )

    def execute(self, req: ExecuteRequest) -> ExecuteResponse:
        """Validate, pre-scan, build and run one submission.

        Raises ``ValidationError`` for malformed requests. Every other outcome,
        including infrastructure trouble, comes back as a response.
        """
        self._validate(req)
        assert req.code is not None and req.language is not None
        language = req.language
        profile = get_profile(language)

        if not self.settings.execution_enabled:
            return self._with_hint(system_error("Code execution is disabled", language), language)

        finding = scan(req.code, language)
        if finding is not None:
            logger.warning(
                "security violation in %s submission: %s (%s)", language.value, finding.rule, finding.severity.value
            )
            return self._with_hint(security_violation(finding, language), language)

        available, message, _ = self.runtime.snapshot()
        if not available:
            return self._with_hint(system_error(f"Sandbox runtime is not available: {message}", language), language)

        timeout = effective_timeout(req, self.settings)
        try:
            with sandbox_scope(self.provisioner) as sandbox:
                outcome = run_pipeline(sandbox, profile, req.code, req.stdin, timeout, self.settings)
        except NoSlotAvailableError as exc:
            logger.warning("rejecting %s submission: %s", language.value, exc)
            return self._with_hint(system_error("All sandboxes are busy, try again shortly", language), language)
        except ToolchainMissingError as exc:
            logger.error("toolchain missing for %s: %s", language.value, exc)
            self.runtime.mark_degraded(language.value, str(exc))
            return self._with_hint(system_error(str(exc), language), language)
        except SandboxUnavailableError as exc:
            logger.error("sandbox backend unavailable: %s", exc)
            self.runtime.mark_unavailable(str(exc))
            return self._with_hint(system_error(str(exc), language), language)
        except Exception:
            logger.exception("unexpected failure while executing %s submission", language.value)
            return self._with_hint(system_error("Unexpected sandbox failure", language), language)

        response = self._with_hint(classify(outcome, profile), language)
        logger.info(
            "executed %s submission: status=%s time=%sms memory=%sMB",
            language.value,
            response.status.value,
            response.execution_time_ms,
            response.memory_usage_mb,
        )
        return response

    @staticmethod
    def _with_hint(response: ExecuteResponse, language: Language) -> ExecuteResponse:
        if response.status is not ExecutionStatus.SUCCESS:
            error = response.compilation_error or response.error
            response.hint = generate_hint(response.status, error, language)
        return response
