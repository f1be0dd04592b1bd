"""Error taxonomy shared by the validator, store, mutator and hooks.

ValidationError and its TraversalOrInjectionAttempt subclass are fatal to
the operation that raised them but never to the process. StaleStateError
is caught inside the policy store (the record is deleted). AtomicityFailure
and IOFailure surface on the activation path with the failing stage.
"""

from typing import Optional


class TestGateError(Exception):
    """Base class for all testgate errors."""

    __test__ = False  # keep pytest from collecting this as a test class


class ValidationError(TestGateError):
    """Malformed, oversized or unsafe input."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class TraversalOrInjectionAttempt(ValidationError):
    """Input that looks like path traversal or shell injection."""


class StaleStateError(TestGateError):
    """A persisted record disagrees with the live project context."""

    def __init__(self, path, reason: str):
        super().__init__(f"stale record {path}: {reason}")
        self.path = path
        self.reason = reason


class AtomicityFailure(TestGateError):
    """A mutation could not be committed. The original state is untouched."""

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message
        self.cause = cause


class IOFailure(TestGateError):
    """Disk or permission problem on the activation/deactivation path."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
