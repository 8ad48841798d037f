"""Opt-in trace file for engine lifecycle events.

Complements stdlib logging with a flat, timestamped file that can be
tailed while a session runs. Tracing is off unless CCWRAP_TRACE names a
file.

Usage:
    from ccwrap.trace import trace

    trace("engine", "spawned pid=1234")
"""

import os
import traceback as _traceback_module
from datetime import datetime
from typing import Optional, Set

# Directories already created, so makedirs runs once per directory.
_ensured_dirs: Set[str] = set()


def _ensure_parent_dirs(file_path: str) -> None:
    parent = os.path.dirname(os.path.abspath(file_path))
    if parent not in _ensured_dirs:
        os.makedirs(parent, exist_ok=True)
        _ensured_dirs.add(parent)


def resolve_trace_path() -> Optional[str]:
    """Return the trace file path, or None when tracing is disabled."""
    return os.environ.get("CCWRAP_TRACE") or None


def trace_write(
    component: str,
    msg: str,
    trace_path: Optional[str],
    *,
    include_traceback: bool = False,
) -> None:
    """Append one trace line to ``trace_path``.

    Never raises: a broken trace file must not break a session.

    Args:
        component: Prefix identifying the writer (e.g. "engine").
        msg: Message to write.
        trace_path: File to append to. Does nothing if None.
        include_traceback: Append the traceback of the exception being handled.
    """
    if not trace_path:
        return
    try:
        _ensure_parent_dirs(trace_path)
        with open(trace_path, "a") as f:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            f.write(f"[{ts}] [{component}] {msg}\n")
            if include_traceback:
                tb = _traceback_module.format_exc()
                if tb and tb.strip() != "NoneType: None":
                    f.write(f"[{ts}] [{component}] Traceback:\n{tb}\n")
    except OSError:
        pass


def trace(component: str, msg: str, *, include_traceback: bool = False) -> None:
    """Write a trace line to the file named by CCWRAP_TRACE."""
    trace_write(component, msg, resolve_trace_path(), include_traceback=include_traceback)
