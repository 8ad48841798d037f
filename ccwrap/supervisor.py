"""Spawning and terminating the CLI process.

A ProcessHandle is an immutable value: recreating a process means
building a new handle, never resetting an old one.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .env import EngineConfig
from .errors import ProcessSpawnError
from .trace import trace

logger = logging.getLogger(__name__)

OUTPUT_FORMAT_FLAG = "--output-format"
INPUT_FORMAT_FLAG = "--input-format"
VERBOSE_FLAG = "--verbose"
SESSION_ID_FLAG = "--session-id"
RESUME_FLAG = "--resume"
STREAM_FORMAT = "stream-json"

# Environment variable the CLI reads its state directory from
CONFIG_DIR_ENV = "CLAUDE_CONFIG_DIR"


@dataclass(frozen=True)
class ProcessHandle:
    """A live CLI process and its stdio pipes."""

    process: asyncio.subprocess.Process
    args: Tuple[str, ...]
    cwd: Optional[str] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    @property
    def stdin(self) -> asyncio.StreamWriter:
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self.process.stderr


def _has_flag(args: Sequence[str], flag: str) -> bool:
    return any(a == flag or a.startswith(flag + "=") for a in args)


def build_args(args: Sequence[str], continuation_id: str = "") -> List[str]:
    """Build the CLI argument list (without the executable).

    Streaming input/output and verbose mode are always forced. A known
    continuation id adds ``--resume <id>`` unless the caller already chose
    a session with ``--session-id`` or ``--resume``: only one session
    directive may reach the CLI.
    """
    full: List[str] = []
    if not _has_flag(args, OUTPUT_FORMAT_FLAG):
        full.extend([OUTPUT_FORMAT_FLAG, STREAM_FORMAT])
    if not _has_flag(args, INPUT_FORMAT_FLAG):
        full.extend([INPUT_FORMAT_FLAG, STREAM_FORMAT])
    if VERBOSE_FLAG not in args:
        full.append(VERBOSE_FLAG)
    full.extend(args)

    if continuation_id and not (_has_flag(args, SESSION_ID_FLAG) or _has_flag(args, RESUME_FLAG)):
        full.extend([RESUME_FLAG, continuation_id])
    return full


def build_env(
    env: Optional[Mapping[str, str]] = None,
    config_dir: Optional[str] = None,
) -> Dict[str, str]:
    """Build the child environment: ours, then the caller's, then the state dir."""
    merged = dict(os.environ)
    if env:
        merged.update(env)
    if config_dir:
        merged[CONFIG_DIR_ENV] = config_dir
    return merged


class ProcessSupervisor:
    """Starts and stops CLI processes for one engine."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()

    async def spawn(
        self,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        continuation_id: str = "",
    ) -> ProcessHandle:
        """Start one CLI process.

        Raises:
            ProcessSpawnError: If the OS refuses to start the executable.
                Not retried; a missing binary does not fix itself.
        """
        cli_args = build_args(args, continuation_id)
        child_env = build_env(env, self.config.config_dir)
        cli_path = self.config.cli_path

        try:
            process = await asyncio.create_subprocess_exec(
                cli_path,
                *cli_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=child_env,
                cwd=cwd,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {cli_path}: {e}")
            trace("supervisor", f"spawn failed: {cli_path}: {e}")
            raise ProcessSpawnError(cli_path, e) from e

        flags = [a for a in cli_args if a.startswith("--")]
        logger.info(f"Spawned CLI pid={process.pid} flags={flags} cwd={cwd or os.getcwd()}")
        trace("supervisor", f"spawned pid={process.pid} args={cli_args}")
        return ProcessHandle(process=process, args=(cli_path, *cli_args), cwd=cwd)

    def signal_terminate(self, handle: ProcessHandle) -> None:
        """Send SIGTERM without waiting for the process to exit."""
        if not handle.is_running:
            return
        try:
            handle.process.terminate()
        except ProcessLookupError:
            return
        logger.debug(f"Sent SIGTERM to pid={handle.pid}")
        trace("supervisor", f"SIGTERM pid={handle.pid}")

    async def terminate(self, handle: ProcessHandle) -> Optional[int]:
        """Stop the process: close stdin, SIGTERM, then SIGKILL after the grace period.

        Returns:
            The exit status of the process.
        """
        stdin = handle.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        self.signal_terminate(handle)
        try:
            return await asyncio.wait_for(
                handle.process.wait(), timeout=self.config.terminate_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"CLI pid={handle.pid} ignored SIGTERM, killing")
            try:
                handle.process.kill()
            except ProcessLookupError:
                pass
            return await handle.process.wait()
