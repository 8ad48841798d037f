"""Session engine: one CLI process, one query at a time.

The engine owns exactly one ProcessHandle at a time and bridges the
process's push-style output into a pull-style async generator per query.

State transitions::

    READY --query()--> QUERYING --result--> READY
    QUERYING --interrupt()--> PENDING_RECREATION  (query raises InterruptedByUserError)
    READY --interrupt()--> PENDING_RECREATION
    PENDING_RECREATION --query()--> respawn with --resume <id> --> QUERYING

Interrupt kills the process and defers the respawn to the next query, so
the session id announced by the old process is available for the new
one's ``--resume``. An unplanned exit is not healed silently: queries keep
failing with ProcessExitError until the caller calls ``recreate()``.

Example:
    async with Engine(["--model", "sonnet"]) as engine:
        async for event in engine.query("ping"):
            print(event)
"""

import asyncio
import functools
import logging
from collections import deque
from typing import AsyncIterator, Deque, Dict, Mapping, Optional, Sequence, Union

from .decoder import LineDecoder
from .env import EngineConfig
from .errors import (
    ControlRequestError,
    EngineError,
    EngineStoppedError,
    InterruptedByUserError,
    ProcessExitError,
    ProcessIOError,
    ProcessSpawnError,
    QueryInProgressError,
)
from .supervisor import ProcessHandle, ProcessSupervisor
from .trace import trace
from .types import (
    CLIMessage,
    ControlRequest,
    ControlResponse,
    ResultMessage,
    build_user_turn,
    encode_line,
    new_request_id,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_STDERR_TAIL_LINES = 50


class _Query:
    """An in-flight query: undelivered items plus at most one waiting consumer."""

    def __init__(self, prompt: str):
        self.prompt = prompt
        self.sent = False
        self.failed = False
        self._buffer: Deque[Union[CLIMessage, EngineError]] = deque()
        self._waiter: Optional[asyncio.Future] = None

    def push(self, item: Union[CLIMessage, EngineError]) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(item)
            self._waiter = None
        else:
            self._buffer.append(item)

    def fail(self, error: EngineError) -> None:
        # The first error ends the sequence; later ones have nothing to end.
        if self.failed:
            return
        self.failed = True
        self.push(error)

    async def next(self) -> Union[CLIMessage, EngineError]:
        if self._buffer:
            return self._buffer.popleft()
        self._waiter = asyncio.get_running_loop().create_future()
        try:
            return await self._waiter
        finally:
            self._waiter = None


class Engine:
    """Drives one CLI process through the stream-json protocol.

    Args:
        args: Extra CLI arguments (the streaming flags are added automatically).
        env: Environment overrides for the child process.
        cwd: Working directory of the child process.
        continuation_id: Session to resume when the first process is spawned.
        supervisor: Process supervisor; one is built from ``config`` if omitted.
        config: Engine settings; resolved from the environment if omitted.
    """

    def __init__(
        self,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        *,
        cwd: Optional[str] = None,
        continuation_id: str = "",
        supervisor: Optional[ProcessSupervisor] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._args = tuple(args)
        self._env = dict(env) if env else {}
        self._cwd = cwd
        self._supervisor = supervisor or ProcessSupervisor(config)

        self._handle: Optional[ProcessHandle] = None
        self._io_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        self._continuation_id = continuation_id or ""
        self._active_query: Optional[_Query] = None
        self._error: Optional[EngineError] = None
        self._interrupted = False
        self._needs_recreation = False
        self._stopped = False
        self._pending_control: Dict[str, asyncio.Future] = {}

    # ==================== Properties ====================

    @property
    def args(self) -> tuple:
        return self._args

    @property
    def continuation_id(self) -> str:
        """Session id announced by the first process, or passed in to resume."""
        return self._continuation_id

    @property
    def is_running(self) -> bool:
        return self._handle is not None and self._handle.is_running

    @property
    def is_query_active(self) -> bool:
        return self._active_query is not None

    @property
    def needs_recreation(self) -> bool:
        return self._needs_recreation

    @property
    def error(self) -> Optional[EngineError]:
        """Error recorded for the current process, if any."""
        return self._error

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle is not None else None

    @property
    def last_stderr(self) -> str:
        """Most recent stderr lines of the current process."""
        return "\n".join(self._stderr_tail)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Spawn the CLI process if none is live.

        Raises:
            ProcessSpawnError: If the executable cannot be started.
        """
        await self._prepare_process()

    async def stop(self) -> None:
        """Terminate the process and fail any outstanding work. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        trace("engine", "stop")

        handle, self._handle = self._handle, None
        task, self._io_task = self._io_task, None
        self._fail_outstanding(EngineStoppedError())
        if handle is not None:
            await self._retire(handle, task)

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def interrupt(self) -> None:
        """Cancel the current query by terminating the process.

        Returns immediately. The in-flight query, if any, raises
        InterruptedByUserError; the next query respawns the process and
        resumes the session. Safe to call repeatedly and with no query active.
        """
        self._interrupted = True
        self._needs_recreation = True
        logger.info("Interrupt requested")
        trace("engine", f"interrupt pid={self.pid} query_active={self.is_query_active}")

        if self._active_query is not None:
            self._active_query.fail(InterruptedByUserError())
        if self._handle is not None:
            self._supervisor.signal_terminate(self._handle)

    def recreate(self) -> None:
        """Accept that the current process is gone and respawn it on the next query.

        Needed after ProcessExitError; interrupts schedule this themselves.

        Raises:
            ProcessSpawnError: A spawn failure is final for this engine.
            QueryInProgressError: A query is still running.
        """
        if isinstance(self._error, ProcessSpawnError):
            raise self._error
        if self._active_query is not None:
            raise QueryInProgressError("Cannot recreate the process while a query is active")
        self._needs_recreation = True
        trace("engine", f"recreate scheduled after {self._error!r}")

    # ==================== Querying ====================

    async def query(self, prompt: str) -> AsyncIterator[CLIMessage]:
        """Send one user turn and yield its events up to the result message.

        Use ``contextlib.aclosing`` when the loop may be left early, so the
        query is released deterministically.

        Raises:
            QueryInProgressError: Another query on this engine is active.
            InterruptedByUserError: ``interrupt()`` was called.
            ProcessExitError: The process exited unexpectedly (now or earlier).
            ProcessSpawnError: The process could not be (re)started.
            ProcessIOError: The prompt could not be written.
        """
        if self._active_query is not None:
            raise QueryInProgressError()

        query = _Query(prompt)
        self._active_query = query
        finished = False
        try:
            handle = await self._prepare_process()
            await self._write(handle, build_user_turn(prompt, self._continuation_id))
            query.sent = True
            logger.debug(f"Sent user turn ({len(prompt)} chars) to pid={handle.pid}")

            while True:
                item = await query.next()
                if isinstance(item, EngineError):
                    finished = True
                    raise item
                if isinstance(item, ResultMessage):
                    # A consumer may stop pulling once it has the result.
                    finished = True
                    yield item
                    break
                yield item
        finally:
            if self._active_query is query:
                self._active_query = None
            if query.sent and not finished:
                self._abandon()
            self._interrupted = False

    async def send_control_request(
        self,
        subtype: str = "interrupt",
        timeout: Optional[float] = None,
    ) -> ControlResponse:
        """Send a control request and wait for the CLI's acknowledgment.

        Raises:
            ControlRequestError: The CLI answered with an error.
            asyncio.TimeoutError: No answer within ``timeout`` seconds.
            EngineError: There is no live process to talk to.
        """
        if self._stopped:
            raise EngineStoppedError()
        if self._error is not None:
            raise self._error
        handle = self._handle
        if handle is None or self._needs_recreation:
            raise EngineError("No live CLI process for a control request")

        if subtype == "interrupt":
            request = ControlRequest.interrupt()
        else:
            request = ControlRequest(request_id=new_request_id(), subtype=subtype)
        future = asyncio.get_running_loop().create_future()
        self._pending_control[request.request_id] = future
        try:
            await self._write(handle, request.to_dict())
            response = await asyncio.wait_for(future, timeout)
        finally:
            self._pending_control.pop(request.request_id, None)

        if not response.is_success:
            raise ControlRequestError(response.request_id, response.subtype, response.error)
        return response

    # ==================== Process management ====================

    async def _prepare_process(self) -> ProcessHandle:
        if self._stopped:
            raise EngineStoppedError()
        if self._needs_recreation:
            await self._recreate()
        elif self._handle is None and self._error is None:
            await self._spawn()
        if self._error is not None:
            raise self._error
        return self._handle

    async def _spawn(self) -> None:
        try:
            handle = await self._supervisor.spawn(
                self._args,
                self._env,
                cwd=self._cwd,
                continuation_id=self._continuation_id,
            )
        except ProcessSpawnError as e:
            self._error = e
            raise

        if self._stopped:
            # stop() ran while the process was starting
            await self._supervisor.terminate(handle)
            raise EngineStoppedError()

        decoder = LineDecoder(
            self._pending_control,
            on_init=functools.partial(self._on_init, handle),
            on_message=functools.partial(self._dispatch, handle),
        )
        self._handle = handle
        self._stderr_tail.clear()
        self._io_task = asyncio.create_task(self._pump(handle, decoder))

    async def _recreate(self) -> None:
        old, self._handle = self._handle, None
        task, self._io_task = self._io_task, None

        logger.info(f"Recreating CLI process (resume={self._continuation_id or '-'})")
        trace("engine", f"recreate old_pid={old.pid if old else None} resume={self._continuation_id}")

        self._interrupted = False
        self._needs_recreation = False
        self._error = None
        if old is not None:
            await self._retire(old, task)
        await self._spawn()

    async def _retire(self, handle: ProcessHandle, task: Optional[asyncio.Task]) -> None:
        returncode = await self._supervisor.terminate(handle)
        logger.debug(f"Retired CLI pid={handle.pid} (exit {returncode})")
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _abandon(self) -> None:
        # The consumer left mid-turn; the rest of that turn must not leak
        # into the next query, so the process is replaced like on interrupt.
        logger.info("Query abandoned before its result, scheduling recreation")
        self._needs_recreation = True
        if self._handle is not None:
            self._supervisor.signal_terminate(self._handle)

    async def _write(self, handle: ProcessHandle, payload: dict) -> None:
        stdin = handle.stdin
        if stdin is None or stdin.is_closing():
            raise ProcessIOError("CLI process stdin is closed")
        try:
            stdin.write(encode_line(payload))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessIOError(f"Failed to write to CLI process: {e}") from e

    # ==================== Process output ====================

    async def _pump(self, handle: ProcessHandle, decoder: LineDecoder) -> None:
        try:
            await asyncio.gather(
                self._read_stdout(handle, decoder),
                self._read_stderr(handle),
            )
            returncode = await handle.process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Reading from CLI pid={handle.pid} failed")
            trace("engine", f"pump failed pid={handle.pid}: {e}", include_traceback=True)
            self._on_process_error(handle, e)
            return
        self._on_exit(handle, returncode)

    async def _read_stdout(self, handle: ProcessHandle, decoder: LineDecoder) -> None:
        while True:
            chunk = await handle.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            decoder.feed(chunk)
        decoder.close()

    async def _read_stderr(self, handle: ProcessHandle) -> None:
        pending = b""
        while True:
            chunk = await handle.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for raw in lines:
                self._record_stderr(handle, raw)
        if pending:
            self._record_stderr(handle, pending)

    def _record_stderr(self, handle: ProcessHandle, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip()
        if not text:
            return
        logger.debug(f"[cli pid={handle.pid}] {text}")
        if handle is self._handle:
            self._stderr_tail.append(text)

    def _is_current(self, handle: ProcessHandle) -> bool:
        # Output of a process that is being replaced belongs to no query.
        return handle is self._handle and not self._needs_recreation

    def _on_init(self, handle: ProcessHandle, session_id: str) -> None:
        if not self._is_current(handle):
            return
        if self._continuation_id:
            if session_id and session_id != self._continuation_id:
                logger.debug(
                    f"Keeping continuation id {self._continuation_id}, "
                    f"process announced {session_id}"
                )
            return
        if session_id:
            self._continuation_id = session_id
            logger.info(f"Captured continuation id {session_id}")
            trace("engine", f"continuation_id={session_id} pid={handle.pid}")

    def _dispatch(self, handle: ProcessHandle, message: CLIMessage) -> None:
        if not self._is_current(handle):
            logger.debug(f"Dropping {message.type} from retired pid={handle.pid}")
            return
        query = self._active_query
        if query is None:
            logger.debug(f"No active query, dropping {message.type}")
            return
        query.push(message)

    def _on_exit(self, handle: ProcessHandle, returncode: Optional[int]) -> None:
        if handle is not self._handle:
            return

        if self._interrupted or self._needs_recreation:
            error: EngineError = InterruptedByUserError()
            logger.info(f"CLI pid={handle.pid} exited after interrupt ({returncode})")
        else:
            error = ProcessExitError(returncode, self.last_stderr)
            logger.warning(f"CLI pid={handle.pid} exited unexpectedly with code {returncode}")
        trace("engine", f"exit pid={handle.pid} code={returncode} error={error!r}")

        self._error = error
        self._fail_outstanding(error)

    def _on_process_error(self, handle: ProcessHandle, exc: Exception) -> None:
        if handle is not self._handle:
            return
        error = ProcessIOError(f"CLI process I/O failed: {exc}")
        self._error = error
        self._supervisor.signal_terminate(handle)
        self._fail_outstanding(error)

    def _fail_outstanding(self, error: EngineError) -> None:
        if self._active_query is not None:
            self._active_query.fail(error)
        pending = list(self._pending_control.values())
        self._pending_control.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
