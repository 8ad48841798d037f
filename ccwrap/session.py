"""Fluent session API with engine reuse.

A builder keeps at most one Engine. Before each query it compares the
effective configuration with the one the current engine was built from;
on any difference the engine is stopped and a new one is built, resuming
the last known session unless the new configuration starts one with
``--session-id``.

Example:
    cc = ClaudeCode.create(config_dir="/tmp/state")
    print(await cc.prompt("hello").model("sonnet").text())
    print(await cc.prompt("and again").text())   # same process
    await cc.stop()
"""

import contextlib
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Mapping, Optional, Tuple

from .engine import Engine
from .env import EngineConfig, load_env_file
from .errors import EngineError, NoResultError
from .supervisor import SESSION_ID_FLAG
from .types import CLIMessage, ResultMessage

logger = logging.getLogger(__name__)

MODEL_FLAG = "--model"


@dataclass(frozen=True)
class EngineSpec:
    """Effective configuration an engine was built from."""

    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None


def needs_new_engine(current: Optional[EngineSpec], desired: EngineSpec) -> bool:
    """True when the engine built from ``current`` cannot serve ``desired``."""
    return current != desired


class ClaudeCodeBuilder:
    """Chainable configuration plus query execution over one reused engine."""

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._env: Dict[str, str] = dict(env) if env else {}
        self._config = config
        self._args: List[str] = []
        self._cwd: Optional[str] = None
        self._prompt: Optional[str] = None

        self._engine: Optional[Engine] = None
        self._engine_spec: Optional[EngineSpec] = None
        self._last_session_id: str = ""

    # ==================== Configuration ====================

    def prompt(self, text: str) -> "ClaudeCodeBuilder":
        self._prompt = text
        return self

    def session_id(self, session_id: str) -> "ClaudeCodeBuilder":
        """Start a new CLI session with an explicit id.

        The flag stays set until replaced. Every later respawn, after an
        interrupt or a configuration change, passes the same ``--session-id``
        instead of ``--resume``, and the CLI rejects an id that is already in
        use. Set a fresh id (or rebuild the builder) before continuing.
        """
        return self.option(SESSION_ID_FLAG, session_id)

    def model(self, name: str) -> "ClaudeCodeBuilder":
        return self.option(MODEL_FLAG, name)

    def working_directory(self, path: str) -> "ClaudeCodeBuilder":
        self._cwd = path
        return self

    def option(self, flag: str, value: Optional[str] = None) -> "ClaudeCodeBuilder":
        """Set a CLI flag, replacing an earlier value of the same flag."""
        self._args = _without_flag(self._args, flag)
        self._args.append(flag)
        if value is not None:
            self._args.append(value)
        return self

    @property
    def spec(self) -> EngineSpec:
        return EngineSpec(args=tuple(self._args), cwd=self._cwd)

    @property
    def engine(self) -> Optional[Engine]:
        return self._engine

    @property
    def last_session_id(self) -> str:
        """Last session id announced by the CLI, empty before the first query."""
        if self._engine is not None and self._engine.continuation_id:
            return self._engine.continuation_id
        return self._last_session_id

    # ==================== Execution ====================

    async def stream(self) -> AsyncIterator[CLIMessage]:
        """Run the configured prompt and yield its events.

        Raises:
            ValueError: No prompt was set.
            EngineError: Any failure of the underlying query.
        """
        if not self._prompt:
            raise ValueError("No prompt set. Call .prompt() first.")

        prompt = self._prompt
        try:
            engine = await self._ensure_engine()
            async with contextlib.aclosing(engine.query(prompt)) as events:
                async for event in events:
                    yield event
        finally:
            self._prompt = None
            if self._engine is not None and self._engine.continuation_id:
                self._last_session_id = self._engine.continuation_id

    async def execute(self) -> List[CLIMessage]:
        events = []
        async with contextlib.aclosing(self.stream()) as stream:
            async for event in stream:
                events.append(event)
        return events

    async def text(self) -> str:
        """Result text of a successful query, or an empty string."""
        result = _find_result(await self.execute())
        if result is not None and result.is_success:
            return result.result or ""
        return ""

    async def result(self) -> ResultMessage:
        """The terminal result message of the query.

        Raises:
            NoResultError: The query produced no result message.
        """
        result = _find_result(await self.execute())
        if result is None:
            raise NoResultError()
        return result

    # ==================== Control ====================

    def interrupt(self) -> None:
        if self._engine is None:
            raise EngineError("No active engine to interrupt")
        self._engine.interrupt()

    async def stop(self) -> None:
        engine, self._engine = self._engine, None
        self._engine_spec = None
        if engine is not None:
            if engine.continuation_id:
                self._last_session_id = engine.continuation_id
            await engine.stop()

    async def __aenter__(self) -> "ClaudeCodeBuilder":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _ensure_engine(self) -> Engine:
        desired = self.spec
        if self._engine is not None and not needs_new_engine(self._engine_spec, desired):
            return self._engine

        if self._engine is not None:
            logger.info("Configuration changed, replacing engine")
            await self.stop()

        # An explicit --session-id starts a new conversation
        resume_id = "" if SESSION_ID_FLAG in desired.args else self._last_session_id
        self._engine = Engine(
            desired.args,
            self._env,
            cwd=desired.cwd,
            continuation_id=resume_id,
            config=self._config,
        )
        self._engine_spec = desired
        return self._engine


def _without_flag(args: List[str], flag: str) -> List[str]:
    # Drops the flag and the value that follows it, if any.
    result: List[str] = []
    skip_value = False
    for arg in args:
        if skip_value:
            skip_value = False
            if not arg.startswith("--"):
                continue
        if arg == flag:
            skip_value = True
            continue
        result.append(arg)
    return result


def _find_result(events: List[CLIMessage]) -> Optional[ResultMessage]:
    for event in events:
        if isinstance(event, ResultMessage):
            return event
    return None


class ClaudeCode:
    """Entry point for the fluent API."""

    @staticmethod
    def create(
        env: Optional[Mapping[str, str]] = None,
        *,
        env_file: Optional[str] = None,
        config_dir: Optional[str] = None,
        cli_path: Optional[str] = None,
    ) -> ClaudeCodeBuilder:
        """Create a builder.

        Args:
            env: Environment overrides for the CLI process.
            env_file: ``.env`` file whose values sit below ``env``.
            config_dir: Session state directory for the CLI.
            cli_path: CLI executable.
        """
        merged: Dict[str, str] = {}
        if env_file:
            merged.update(load_env_file(env_file))
        if env:
            merged.update(env)
        config = EngineConfig.from_env(cli_path=cli_path, config_dir=config_dir)
        return ClaudeCodeBuilder(merged, config)
