"""One-shot control channel to a Yeelight bulb.

Every command gets its own TCP connection: connect, write one JSON line,
wait for the matching reply, close. The reply wait races a deadline that
starts when the connection opens; whichever finishes first decides the
outcome and the other is cancelled.

Failures never raise out of send_command(). They come back as a
CommandResult whose ``error`` holds the typed ControlError, so the caller
decides what an unresponsive bulb means to it.
"""

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .exceptions import (
    CommandTimeoutError,
    ConnectError,
    ControlError,
    DecodeError,
    PreconditionError,
)
from .protocol import Command, is_notification, parse_location

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 5.0
CONNECT_TIMEOUT = 5.0
# Longest reply line accepted before giving up on framing.
MAX_LINE = 64 * 1024


class CommandState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_REPLY = "awaiting_reply"
    SUCCEEDED = "succeeded"
    PRECONDITION_ERROR = "precondition_error"
    CONNECT_ERROR = "connect_error"
    DECODE_ERROR = "decode_error"
    TIMED_OUT = "timed_out"


_ERROR_STATES = {
    PreconditionError: CommandState.PRECONDITION_ERROR,
    ConnectError: CommandState.CONNECT_ERROR,
    DecodeError: CommandState.DECODE_ERROR,
    CommandTimeoutError: CommandState.TIMED_OUT,
}


@dataclass(frozen=True)
class CommandResult:
    state: CommandState
    reply: Optional[Dict[str, Any]] = None
    error: Optional[ControlError] = None

    @classmethod
    def failed(cls, error: ControlError) -> "CommandResult":
        return cls(state=_ERROR_STATES[type(error)], error=error)

    @property
    def ok(self) -> bool:
        return self.state is CommandState.SUCCEEDED

    @property
    def result(self) -> List[Any]:
        """The reply's "result" list; empty when absent (e.g. an error reply)."""
        if not self.reply:
            return []
        result = self.reply.get("result")
        return result if isinstance(result, list) else []

    def raise_for_error(self) -> "CommandResult":
        if self.error is not None:
            raise self.error
        return self


def _decode(line: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(line)
    except ValueError as e:
        raise DecodeError(f"Invalid JSON reply: {line[:80]!r}") from e
    if not isinstance(message, dict):
        raise DecodeError(f"Reply is not a JSON object: {line[:80]!r}")
    return message


async def _read_reply(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """Buffer inbound data until the command reply is complete.

    Messages are CRLF terminated, but some firmware sends the reply
    without a terminator, so a pending partial line that already parses
    as a JSON object counts as complete. Unsolicited "props"
    notifications are skipped. If the bulb closes the connection, whatever
    is buffered is decoded as the reply.
    """
    buffer = b""
    while True:
        chunk = await reader.read(4096)
        if not chunk:
            if buffer.strip():
                return _decode(buffer)
            raise ConnectError("Connection closed before a reply arrived")

        logger.debug("Received: %r", chunk)
        buffer += chunk
        if len(buffer) > MAX_LINE:
            raise DecodeError(f"Reply exceeds {MAX_LINE} bytes without a line break")

        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            if not line.strip():
                continue
            message = _decode(line)
            if is_notification(message):
                logger.debug("Skipping notification: %s", message.get("method"))
                continue
            return message

        if not buffer.strip():
            continue
        if not buffer.lstrip().startswith(b"{"):
            raise DecodeError(f"Invalid JSON reply: {buffer[:80]!r}")
        try:
            message = json.loads(buffer)
        except ValueError:
            # Partial object, wait for more.
            continue
        if not isinstance(message, dict):
            raise DecodeError(f"Reply is not a JSON object: {buffer[:80]!r}")
        buffer = b""
        if is_notification(message):
            logger.debug("Skipping notification: %s", message.get("method"))
            continue
        return message


async def _exchange(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    command: Command,
) -> Dict[str, Any]:
    writer.write(command.encode())
    await writer.drain()
    return await _read_reply(reader)


async def send_command(
    location: Optional[str],
    command: Command,
    timeout: float = COMMAND_TIMEOUT,
    connect_timeout: float = CONNECT_TIMEOUT,
) -> CommandResult:
    """Send one command to the bulb at ``location`` and wait for its reply.

    ``location`` is the discovery "Location" value, "yeelight://host:port".
    ``timeout`` bounds the reply wait, counted from connection open.
    """
    address = parse_location(location)
    if address is None:
        return CommandResult.failed(
            PreconditionError(f"Unusable device location: {location!r}")
        )
    host, port = address

    logger.debug("Connecting to %s:%d for %s", host, port, command.method)
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=connect_timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Connect to %s:%d timed out after %.1fs", host, port, connect_timeout)
        return CommandResult.failed(
            CommandTimeoutError(f"Connect to {host}:{port} timed out")
        )
    except OSError as e:
        logger.warning("Connect to %s:%d failed: %s", host, port, e)
        return CommandResult.failed(ConnectError(f"Cannot connect to {host}:{port}: {e}"))

    try:
        reply = await asyncio.wait_for(_exchange(reader, writer, command), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s to %s:%d: no reply within %.1fs", command.method, host, port, timeout)
        return CommandResult.failed(
            CommandTimeoutError(f"No reply from {host}:{port} within {timeout}s")
        )
    except ControlError as e:
        logger.warning("%s to %s:%d failed: %s", command.method, host, port, e)
        return CommandResult.failed(e)
    except OSError as e:
        logger.warning("%s to %s:%d: connection error: %s", command.method, host, port, e)
        return CommandResult.failed(ConnectError(f"Connection to {host}:{port} lost: {e}"))
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    logger.debug("%s to %s:%d -> %s", command.method, host, port, reply)
    return CommandResult(state=CommandState.SUCCEEDED, reply=reply)
