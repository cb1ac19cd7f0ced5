from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from execengine.core.config import Settings
from execengine.services.languages import LanguageProfile
from execengine.services.sandbox import ProcessOutcome, Sandbox, StepLimits

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    compile: ProcessOutcome | None
    run: ProcessOutcome | None

    @property
    def last_step(self) -> ProcessOutcome:
        step = self.run or self.compile
        if step is None:
            raise ValueError("pipeline produced no steps")
        return step

    @property
    def compile_failed(self) -> bool:
        return self.compile is not None and self.run is None

    @property
    def duration_ms(self) -> int:
        return sum(step.duration_ms for step in (self.compile, self.run) if step is not None)

    @property
    def peak_memory_mb(self) -> int:
        """Peak of the program run, or of the compiler when the build never got that far."""
        step = self.run or self.compile
        return int(math.ceil(step.peak_memory_mb)) if step is not None else 0


def compile_limits(settings: Settings) -> StepLimits:
    return StepLimits(
        memory_mb=settings.compile_memory_limit_mb,
        wall_timeout_sec=settings.compile_timeout_sec + settings.watchdog_grace_sec,
        cpu_time_sec=settings.compile_timeout_sec + 1,
        cpu_share=max(settings.cpu_share, 1.0),
        # compilers fork helpers and map large toolchain images
        cap_address_space=False,
        cap_processes=False,
    )


def run_limits(settings: Settings, profile: LanguageProfile, timeout_seconds: int) -> StepLimits:
    return StepLimits(
        memory_mb=settings.run_memory_limit_mb(profile.default_memory_mb),
        wall_timeout_sec=timeout_seconds + settings.watchdog_grace_sec,
        cpu_time_sec=timeout_seconds + 1,
        cpu_share=min(profile.cpu_share, settings.cpu_share),
        cap_address_space=not profile.managed_heap,
        cap_processes=not profile.managed_heap,
    )


def run_pipeline(
    sandbox: Sandbox,
    profile: LanguageProfile,
    code: str,
    stdin: str | None,
    timeout_seconds: int,
    settings: Settings,
) -> PipelineOutcome:
    """Build (when the language needs it) and run one submission in ``sandbox``.

    A failed, killed or over-budget compile stops the pipeline; the program
    is only run after a clean build.
    """
    sandbox.write_file(profile.source_filename(code), code)

    compiled: ProcessOutcome | None = None
    if profile.compiled:
        limits = compile_limits(settings)
        argv = profile.compile_command(code, limits.memory_mb)
        assert argv is not None
        compiled = sandbox.run(argv, stdin=None, limits=limits, image=profile.image)
        logger.debug(
            "sandbox %s compile exit=%s in %sms", sandbox.id, compiled.exit_code, compiled.duration_ms
        )
        if not compiled.succeeded:
            return PipelineOutcome(compile=compiled, run=None)

    limits = run_limits(settings, profile, timeout_seconds)
    argv = profile.run_command(code, limits.memory_mb)
    ran = sandbox.run(argv, stdin=stdin, limits=limits, image=profile.image)
    logger.debug("sandbox %s run exit=%s in %sms", sandbox.id, ran.exit_code, ran.duration_ms)
    return PipelineOutcome(compile=compiled, run=ran)
