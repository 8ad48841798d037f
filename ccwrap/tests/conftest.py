"""Shared fixtures: a fake CLI executable and engine configs pointing at it."""

import os
import stat
import sys

import pytest

from ..env import EngineConfig

FAKE_CLI = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_cli.py")


@pytest.fixture
def cli_path(tmp_path):
    """Executable wrapper that runs fake_cli.py with the current interpreter."""
    script = tmp_path / "claude"
    script.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_CLI}" "$@"\n')
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return str(path)


@pytest.fixture
def config(cli_path, state_dir):
    return EngineConfig(cli_path=cli_path, config_dir=state_dir, terminate_timeout=2.0)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of config resolution."""
    for var in (
        "CCWRAP_CLI_PATH",
        "CCWRAP_CONFIG_DIR",
        "CCWRAP_TERMINATE_TIMEOUT",
        "CCWRAP_TRACE",
        "FAKE_CLI_FRESH_SESSION",
    ):
        monkeypatch.delenv(var, raising=False)
