"""
Error taxonomy for the storage audit.

Per-resource errors (TransportError, ProbeTimeoutError, ParseError) are
recovered locally and turned into report rows. Only SetupError is allowed
to reach the CLI, where it ends the run with a non-zero exit code.
"""
from typing import Optional


class AuditError(Exception):
    """Base class for all audit errors."""


class TransportError(AuditError):
    """A backend call failed outright (auth, network, non-zero exit).

    The resource row is recorded with status=Error and this error's text
    as the cause.
    """
    def __init__(
        self,
        message: str,
        operation: str = "",
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        self.operation = operation
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class ApiDisabledError(TransportError):
    """Enumeration failed because the API is disabled or access was denied.

    Raised instead of returning an empty list so callers can tell
    "nothing there" apart from "could not look".
    """


class ProbeTimeoutError(TransportError):
    """A measurement attempt exceeded its allotted time."""
    def __init__(self, operation: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s", operation=operation)


class ParseError(AuditError):
    """Backend output could not be interpreted as a size."""
    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class SetupError(AuditError):
    """Unrecoverable setup failure: no projects, tooling missing, bad config."""


def describe_error(exc: BaseException) -> str:
    """Render an exception as a one-line cause for the report."""
    text = str(exc).strip() or type(exc).__name__
    first_line = text.splitlines()[0]
    if isinstance(exc, AuditError):
        return first_line
    return f"{type(exc).__name__}: {first_line}"


