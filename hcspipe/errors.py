"""
Error kinds raised by the loaders, the method catalog and the level runner.

Registration errors abort the enclosing load call. Processing errors are
caught per endpoint by the runner and reported through run statuses.
`StoreIntegrityViolation` is always fatal.
"""

from __future__ import annotations


class HcsError(Exception):
    """Base class for all hcspipe errors."""

    kind: str = "HcsError"


class RegistrationError(HcsError, ValueError):
    """Malformed input detected while registering annotations or data."""


class SchemaMismatch(RegistrationError):
    kind = "SchemaMismatch"


class DuplicateStudy(RegistrationError):
    kind = "DuplicateStudy"


class UnresolvedReference(RegistrationError):
    kind = "UnresolvedReference"


class UnknownMethod(RegistrationError):
    kind = "UnknownMethod"


class ProcessingError(HcsError):
    """A per-endpoint computation failure."""


class InsufficientControls(ProcessingError):
    kind = "InsufficientControls"


class MissingCutoff(ProcessingError):
    kind = "MissingCutoff"


class MissingInput(ProcessingError):
    kind = "MissingInput"


class TransformFailure(ProcessingError):
    kind = "TransformFailure"


class StoreIntegrityViolation(HcsError):
    kind = "StoreIntegrityViolation"


def error_kind(exc: BaseException) -> str:
    """Return the stable kind tag for an exception; foreign errors map to TransformFailure."""
    if isinstance(exc, HcsError):
        return exc.kind
    return TransformFailure.kind
