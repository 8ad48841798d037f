"""Async wrapper around the Claude Code CLI.

Runs the CLI as a long-lived child process and talks to it over the
stream-json protocol, so a conversation keeps one process across queries
instead of paying start-up cost on every prompt.

Layers:
- Engine: one process, one query at a time, interrupt by kill-and-resume
- ClaudeCodeBuilder: fluent API that reuses the engine while the
  configuration is unchanged and resumes the session when it changes

Configuration:
    Environment variables:
        CCWRAP_CLI_PATH: Path to the claude CLI (default: "claude")
        CCWRAP_CONFIG_DIR: Session state directory (CLAUDE_CONFIG_DIR of the child)
        CCWRAP_TERMINATE_TIMEOUT: Seconds between SIGTERM and SIGKILL (default: 5)
        CCWRAP_TRACE: Trace file path (default: tracing off)

Example:
    from ccwrap import Engine

    async with Engine(["--model", "sonnet"]) as engine:
        async for event in engine.query("Hello!"):
            print(event)
        print(engine.continuation_id)
"""

from .engine import Engine
from .env import EngineConfig, load_env_file
from .errors import (
    ControlRequestError,
    EngineError,
    EngineStoppedError,
    InterruptedByUserError,
    NoResultError,
    ProcessExitError,
    ProcessIOError,
    ProcessSpawnError,
    QueryInProgressError,
)
from .session import ClaudeCode, ClaudeCodeBuilder, EngineSpec, needs_new_engine
from .supervisor import ProcessHandle, ProcessSupervisor, build_args
from .types import (
    AssistantMessage,
    CLIMessage,
    ControlRequest,
    ControlResponse,
    MessageType,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnknownMessage,
    Usage,
    UserMessage,
)

__all__ = [
    # Engine
    "Engine",
    "EngineConfig",
    "load_env_file",
    # Session reuse
    "ClaudeCode",
    "ClaudeCodeBuilder",
    "EngineSpec",
    "needs_new_engine",
    # Process
    "ProcessHandle",
    "ProcessSupervisor",
    "build_args",
    # Messages
    "MessageType",
    "CLIMessage",
    "SystemMessage",
    "AssistantMessage",
    "UserMessage",
    "StreamEvent",
    "ResultMessage",
    "Usage",
    "ControlRequest",
    "ControlResponse",
    "UnknownMessage",
    "TextBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    # Errors
    "EngineError",
    "ProcessSpawnError",
    "QueryInProgressError",
    "InterruptedByUserError",
    "ProcessExitError",
    "ProcessIOError",
    "EngineStoppedError",
    "ControlRequestError",
    "NoResultError",
]
