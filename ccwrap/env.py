"""Configuration resolution for the session engine.

Each setting resolves in the same order:
1. Explicit value passed by the caller
2. Environment variable
3. Default

Environment variables:
    CCWRAP_CLI_PATH: CLI executable (default: "claude", looked up on PATH)
    CCWRAP_CONFIG_DIR: Directory the CLI keeps its session state in
        (passed to the child as CLAUDE_CONFIG_DIR)
    CCWRAP_TERMINATE_TIMEOUT: Seconds to wait after SIGTERM before SIGKILL
    CCWRAP_TRACE: Trace file path (tracing is off when unset)
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

DEFAULT_CLI_PATH = "claude"
DEFAULT_TERMINATE_TIMEOUT = 5.0


def resolve_cli_path(config_path: Optional[str] = None) -> str:
    """Resolve the CLI executable.

    No existence check happens here: a missing executable surfaces as a
    ProcessSpawnError when the process is started.

    Args:
        config_path: Explicit executable path or name.

    Returns:
        Path or bare command name of the CLI executable.
    """
    # 1. Explicit config
    if config_path:
        return config_path

    # 2. Environment variable
    env_path = os.environ.get("CCWRAP_CLI_PATH")
    if env_path:
        return env_path

    # 3. Default: PATH lookup at spawn time
    return DEFAULT_CLI_PATH


def resolve_config_dir(config_dir: Optional[str] = None) -> Optional[str]:
    """Resolve the isolation directory handed to the child process.

    Args:
        config_dir: Explicit directory.

    Returns:
        Directory path, or None to let the CLI use its own default.
    """
    if config_dir:
        return config_dir

    env_dir = os.environ.get("CCWRAP_CONFIG_DIR")
    if env_dir:
        return env_dir

    return None


def resolve_terminate_timeout(config_timeout: Optional[float] = None) -> float:
    """Resolve the grace period between SIGTERM and SIGKILL.

    Raises:
        ValueError: If CCWRAP_TERMINATE_TIMEOUT is not a number.
    """
    if config_timeout is not None:
        return float(config_timeout)

    env_timeout = os.environ.get("CCWRAP_TERMINATE_TIMEOUT")
    if env_timeout:
        try:
            return float(env_timeout)
        except ValueError:
            raise ValueError(
                f"Invalid CCWRAP_TERMINATE_TIMEOUT: {env_timeout!r} (expected seconds)"
            ) from None

    return DEFAULT_TERMINATE_TIMEOUT


def load_env_file(path: str) -> Dict[str, str]:
    """Read KEY=VALUE pairs from a .env file.

    Keys without a value are skipped. A missing file yields an empty dict.
    """
    return {key: value for key, value in dotenv_values(path).items() if value is not None}


@dataclass(frozen=True)
class EngineConfig:
    """Resolved engine settings."""

    cli_path: str = DEFAULT_CLI_PATH
    config_dir: Optional[str] = None
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT

    @classmethod
    def from_env(
        cls,
        cli_path: Optional[str] = None,
        config_dir: Optional[str] = None,
        terminate_timeout: Optional[float] = None,
    ) -> "EngineConfig":
        return cls(
            cli_path=resolve_cli_path(cli_path),
            config_dir=resolve_config_dir(config_dir),
            terminate_timeout=resolve_terminate_timeout(terminate_timeout),
        )
