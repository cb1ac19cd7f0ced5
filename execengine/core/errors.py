from __future__ import annotations


class EngineError(Exception):
    """Base class for errors raised by the execution engine."""


class ValidationError(EngineError):
    """The request is malformed; nothing has been allocated for it."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class SandboxUnavailableError(EngineError):
    """No sandbox could be provisioned (no free slot, backend unreachable)."""


class ToolchainMissingError(EngineError):
    """A compiler, interpreter or container image needed by a profile is absent."""


class SandboxClosedError(EngineError):
    """A command was issued to a sandbox that has already been destroyed."""
