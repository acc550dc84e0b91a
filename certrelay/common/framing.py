"""Header + Content-Length framing over a secure byte stream.

Wire format:

    <start-line>\\r\\n
    <Key>: <Value>\\r\\n
    ...
    \\r\\n
    <body: exactly Content-Length bytes>

The codec knows nothing about request types; the start line is either a
request line (``POST / HTTP/1.1``) or a status line (``HTTP/1.1 200 OK``).
"""

import logging
import socket
import ssl
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from certrelay.common.errors import (
    InvalidContentLengthError,
    MalformedHeaderError,
    SessionClosedError,
    SessionTimeoutError,
    TransportError,
    TruncatedStreamError,
)


logger = logging.getLogger(__name__)

HEADER_TERMINATOR = b"\r\n\r\n"
LINE_TERMINATOR = b"\r\n"
CONTENT_LENGTH = "Content-Length"

READ_CHUNK_SIZE = 4096
MAX_HEADER_BYTES = 1024 * 1024  # 1 MiB
MAX_BODY_BYTES = 16 * 1024 * 1024  # 16 MiB
MAX_READ_RETRIES = 8
MESSAGE_TIMEOUT = 60.0
RETRY_DELAY = 0.01

REQUEST_LINE = "POST / HTTP/1.1"

REASONS = {
    200: "OK",
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
    500: "Internal Server Error",
    502: "Bad Gateway",
}

_WOULD_BLOCK = (ssl.SSLWantReadError, ssl.SSLWantWriteError, BlockingIOError, InterruptedError)
# socket.timeout is only an alias of TimeoutError from 3.10 on
_TIMEOUTS = (TimeoutError, socket.timeout)


class ByteStream(Protocol):
    def recv(self, bufsize: int) -> bytes:
        ...

    def sendall(self, data: bytes) -> None:
        ...


def status_line(status: int) -> str:
    """Render ``HTTP/1.1 <code> <reason>``."""
    return f"HTTP/1.1 {status} {REASONS.get(status, 'Unknown')}"


@dataclass
class Message:
    """One framed message: start line, header fields, body."""
    start_line: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def status_code(self) -> Optional[int]:
        """
        Status code from a status line (second space-separated token).

        Returns:
            The integer code, or None if the start line is not a status line.
        """
        parts = self.start_line.split(" ", 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/"):
            return None
        try:
            return int(parts[1])
        except ValueError:
            return None


def parse_header_block(block: bytes) -> tuple:
    """
    Split a header block (without the blank-line terminator) into the start
    line and a header map.

    The key is the exact text before the first colon; lines without a colon
    are ignored. Later duplicates win.
    """
    lines = block.split(LINE_TERMINATOR)
    start_line = lines[0].decode("latin-1")
    if not start_line.strip():
        raise MalformedHeaderError("Empty start line")

    headers: Dict[str, str] = {}
    for raw in lines[1:]:
        line = raw.decode("latin-1")
        key, sep, value = line.partition(":")
        if not sep:
            continue
        headers[key] = value.strip()
    return start_line, headers


def declared_length(headers: Dict[str, str], max_body_bytes: int = MAX_BODY_BYTES) -> int:
    """Body length from the Content-Length header (0 when absent)."""
    raw = headers.get(CONTENT_LENGTH)
    if raw is None:
        return 0
    if not (raw.isascii() and raw.isdigit()):
        raise InvalidContentLengthError(f"Invalid Content-Length: {raw!r}")
    length = int(raw)
    if length > max_body_bytes:
        raise InvalidContentLengthError(
            f"Content-Length {length} exceeds limit of {max_body_bytes} bytes"
        )
    return length


class FrameCodec:
    """
    Reads and writes framed messages on one stream.

    Bytes received past the end of a message are kept for the next
    read_message() call, so one codec must be used per stream.
    """

    def __init__(
        self,
        stream: ByteStream,
        max_header_bytes: int = MAX_HEADER_BYTES,
        max_body_bytes: int = MAX_BODY_BYTES,
        max_read_retries: int = MAX_READ_RETRIES,
        message_timeout: Optional[float] = MESSAGE_TIMEOUT,
    ):
        self.stream = stream
        self.max_header_bytes = max_header_bytes
        self.max_body_bytes = max_body_bytes
        self.max_read_retries = max_read_retries
        # Wall-clock bound on one read_message(); None disables it
        self.message_timeout = message_timeout
        self._buffer = bytearray()
        self._deadline: Optional[float] = None

    def _receive_some(self) -> bytes:
        """
        One read from the stream, retrying a bounded number of times when
        the transport reports it would block.

        Returns:
            The bytes read; empty bytes mean end of stream.
        """
        for attempt in range(self.max_read_retries + 1):
            try:
                return self.stream.recv(READ_CHUNK_SIZE)
            except _WOULD_BLOCK:
                if attempt < self.max_read_retries:
                    time.sleep(RETRY_DELAY)
            except _TIMEOUTS as e:
                raise SessionTimeoutError("Read timed out") from e
            except OSError as e:
                raise TransportError(f"Read failed: {e}") from e
        raise TransportError(f"Read would block after {self.max_read_retries} retries")

    def _start_clock(self) -> None:
        # The clock runs from the first byte of a message, not from idle time before it
        if self.message_timeout is not None:
            self._deadline = time.monotonic() + self.message_timeout

    def _fill(self, at_boundary: bool) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise SessionTimeoutError(f"Message not complete within {self.message_timeout}s")
        chunk = self._receive_some()
        if not chunk:
            if at_boundary and not self._buffer:
                raise SessionClosedError("Peer closed the session")
            raise TruncatedStreamError("Stream ended in the middle of a message")
        self._buffer += chunk
        if self._deadline is None:
            self._start_clock()

    def read_message(self) -> Message:
        """
        Read one complete message.

        Raises:
            SessionClosedError: The peer closed cleanly between messages.
            TruncatedStreamError: The stream ended before the message was complete.
            MalformedHeaderError: No header terminator within max_header_bytes.
            InvalidContentLengthError: Bad or oversized Content-Length.
            SessionTimeoutError: A single read, or the whole message, took too long.
            TransportError: Any other read failure.
        """
        self._deadline = None
        if self._buffer:
            self._start_clock()
        first = True
        while True:
            end = self._buffer.find(HEADER_TERMINATOR)
            if end != -1:
                break
            if len(self._buffer) > self.max_header_bytes:
                raise MalformedHeaderError(
                    f"No header terminator within {self.max_header_bytes} bytes"
                )
            self._fill(at_boundary=first)
            first = False

        if end > self.max_header_bytes:
            raise MalformedHeaderError(f"Header block exceeds {self.max_header_bytes} bytes")

        start_line, headers = parse_header_block(bytes(self._buffer[:end]))
        length = declared_length(headers, self.max_body_bytes)
        del self._buffer[:end + len(HEADER_TERMINATOR)]

        while len(self._buffer) < length:
            self._fill(at_boundary=False)

        body = bytes(self._buffer[:length])
        del self._buffer[:length]
        return Message(start_line=start_line, headers=headers, body=body)

    def write_message(self, start_line: str, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> None:
        """
        Write one message. Content-Length is always computed from the body;
        a caller-supplied Content-Length is dropped.
        """
        head = start_line + "\r\n"
        for key, value in (headers or {}).items():
            if key == CONTENT_LENGTH:
                continue
            head += f"{key}: {value}\r\n"
        head += f"{CONTENT_LENGTH}: {len(body)}\r\n\r\n"

        try:
            self.stream.sendall(head.encode("latin-1"))
            if body:
                self.stream.sendall(body)
            flush = getattr(self.stream, "flush", None)
            if flush is not None:
                flush()
        except _TIMEOUTS as e:
            raise SessionTimeoutError("Write timed out") from e
        except OSError as e:
            raise TransportError(f"Write failed: {e}") from e

    def write_request(self, body: bytes, host: str, content_type: str = "application/octet-stream") -> None:
        """Write a request message with the standard request line."""
        self.write_message(
            REQUEST_LINE,
            body,
            {"Host": host, "Content-Type": content_type},
        )

    def write_response(self, status: int, body: bytes = b"") -> None:
        """Write a status response."""
        self.write_message(status_line(status), body)
