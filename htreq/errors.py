"""htreq errors - exception hierarchy with CLI exit codes.

Every error raised by the interpreter derives from HtreqError. The CLI
catches HtreqError, prints the message on stderr and exits with the
error's exit_code.

    HtreqError               (exit 1)
    +-- ParseError           (exit 2)
    +-- UnknownRequestError  (exit 3)
    +-- UnresolvedVariableError (exit 4)
    +-- CommandError         (exit 5)
    +-- ExecutionTimeoutError (exit 6)
    +-- NetworkError         (exit 7)
    +-- HookError            (exit 8)
    |   +-- JsonDecodeError
    +-- RecursionDepthError  (exit 9)
    +-- ConfigError          (exit 10)
"""

from __future__ import annotations


class HtreqError(Exception):
    """Base error. Subclasses set a class-level exit_code."""

    exit_code: int = 1

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class ParseError(HtreqError):
    """Malformed request file. Carries line context."""

    exit_code = 2

    def __init__(self, message: str, line_no: int, line: str = "", source: str = "<string>"):
        self.line_no = line_no
        self.line = line
        self.source = source
        text = f"{source}:{line_no}: {message}"
        if line.strip():
            text += f"\n    {line.rstrip()}"
        super().__init__(text)


class UnknownRequestError(HtreqError):
    exit_code = 3

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown request '{name}'")


class UnresolvedVariableError(HtreqError):
    exit_code = 4

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(message or f"Unresolved variable '{name}'")


class CommandError(HtreqError):
    """Shell command exited non-zero."""

    exit_code = 5

    def __init__(self, command: str, returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command '{command}' failed with exit code {returncode}"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)


class ExecutionTimeoutError(HtreqError):
    """Network call or shell command exceeded the configured timeout."""

    exit_code = 6


class NetworkError(HtreqError):
    exit_code = 7

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class HookError(HtreqError):
    """A hook failed: unsupported construct or runtime error."""

    exit_code = 8


class JsonDecodeError(HookError):
    """response.json() called on non-JSON content."""


class RecursionDepthError(HtreqError):
    exit_code = 9


class ConfigError(HtreqError):
    exit_code = 10
