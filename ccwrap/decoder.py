"""Line protocol decoder for the CLI's stdout.

Turns raw stdout bytes into typed messages and routes them:

- ``control_response`` resolves the matching pending control request and
  is never forwarded;
- the first ``system``/``init`` of the process reports its session id;
- everything else is forwarded to ``on_message`` in arrival order.

Malformed lines are logged and dropped; they never stop decoding.
"""

import asyncio
import json
import logging
from typing import Callable, Dict, List

from .types import CLIMessage, ControlResponse, SystemMessage, parse_message

logger = logging.getLogger(__name__)

# How much of a rejected line to include in the warning
_LOG_PREVIEW = 200


class LineDecoder:
    """Decoder for one process lifetime.

    Args:
        pending_control: Request id -> future. Shared with the engine,
            which registers a future per control request; the decoder
            pops and resolves it.
        on_init: Called with the session id of the first init message.
        on_message: Called for every message that is not a control response.
    """

    def __init__(
        self,
        pending_control: Dict[str, asyncio.Future],
        on_init: Callable[[str], None],
        on_message: Callable[[CLIMessage], None],
    ):
        self._pending_control = pending_control
        self._on_init = on_init
        self._on_message = on_message
        self._buffer = bytearray()
        self.init_seen = False
        self.lines_decoded = 0
        self.lines_dropped = 0

    def feed(self, data: bytes) -> None:
        """Consume a chunk of stdout; decode every complete line in it."""
        self._buffer.extend(data)
        for line in self._split_lines():
            self.decode_line(line)

    def close(self) -> None:
        """Decode a trailing line that was not newline-terminated (EOF)."""
        if self._buffer:
            tail = bytes(self._buffer)
            self._buffer.clear()
            self.decode_line(tail.decode("utf-8", errors="replace"))

    def _split_lines(self) -> List[str]:
        lines = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            lines.append(raw.decode("utf-8", errors="replace"))
        return lines

    def decode_line(self, line: str) -> None:
        """Classify one line of output."""
        line = line.strip()
        if not line:
            return

        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            self.lines_dropped += 1
            logger.warning(f"Failed to parse line: {line[:_LOG_PREVIEW]}")
            return

        if not isinstance(data, dict):
            self.lines_dropped += 1
            logger.warning(f"Ignoring non-object line: {line[:_LOG_PREVIEW]}")
            return

        try:
            message = parse_message(data)
        except (AttributeError, TypeError, ValueError) as e:
            # Valid JSON in a shape the message types cannot read
            self.lines_dropped += 1
            logger.warning(f"Unexpected message shape ({e}): {line[:_LOG_PREVIEW]}")
            return
        self.lines_decoded += 1

        if isinstance(message, ControlResponse):
            future = self._pending_control.pop(message.request_id, None)
            if future is None:
                logger.debug(f"Unmatched control response: {message.request_id}")
                return
            if not future.done():
                future.set_result(message)
            return

        if isinstance(message, SystemMessage) and message.is_init and not self.init_seen:
            self.init_seen = True
            self._on_init(message.session_id)

        self._on_message(message)
