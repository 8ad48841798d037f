"""Exceptions raised by the session engine.

Every error of a query surfaces by raising from the query's event
sequence. The engine state each one leaves behind:

- ProcessSpawnError: fatal for the engine instance.
- QueryInProgressError: affects only the offending call.
- InterruptedByUserError: recoverable, the next query respawns the process.
- ProcessExitError: the process is gone; call ``Engine.recreate()`` first.
"""

from typing import Optional


class EngineError(Exception):
    """Base exception for session engine errors."""

    pass


class ProcessSpawnError(EngineError):
    """The CLI executable could not be started."""

    def __init__(self, cli_path: str, original_error: Optional[BaseException] = None):
        self.cli_path = cli_path
        self.original_error = original_error

        message = f"Failed to start CLI process: {cli_path}"
        if original_error is not None:
            message += f" ({original_error})"
        super().__init__(message)


class QueryInProgressError(EngineError):
    """A query was started while another one is still active."""

    def __init__(self, message: str = "Query already in progress"):
        super().__init__(message)


class InterruptedByUserError(EngineError):
    """The process was terminated through ``Engine.interrupt()``."""

    def __init__(self, message: str = "Interrupted by user"):
        super().__init__(message)


class ProcessExitError(EngineError):
    """The CLI process exited without being interrupted."""

    def __init__(self, exit_code: Optional[int], stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr

        message = f"CLI process exited with code {exit_code}"
        if stderr:
            message += f": {stderr.strip()[-500:]}"
        super().__init__(message)


class ProcessIOError(EngineError):
    """Writing to the CLI process failed."""

    pass


class EngineStoppedError(EngineError):
    """The engine was stopped while work was still outstanding."""

    def __init__(self, message: str = "Engine stopped"):
        super().__init__(message)


class ControlRequestError(EngineError):
    """The CLI answered a control request with an error."""

    def __init__(self, request_id: str, subtype: str, error: Optional[str] = None):
        self.request_id = request_id
        self.subtype = subtype
        self.error = error

        message = f"Control request {request_id} failed"
        if error:
            message += f": {error}"
        super().__init__(message)


class NoResultError(EngineError):
    """A query finished without a result message."""

    def __init__(self, message: str = "No result event found"):
        super().__init__(message)
