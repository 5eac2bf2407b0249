"""
Wire codec for the line-oriented broker protocol.

Commands are a single line, `VERB arg1 arg2\\r\\n`, optionally followed by
one payload line holding a compact JSON document.

Replies start with a type marker:
- `+text`      simple reply, e.g. `+OK`
- `-CODE msg`  error reply
- `$n`         payload reply, followed by n bytes and CRLF; `$-1` is "nothing"
"""

import asyncio
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from jobwire.errors import FramingError, ProtocolError

CRLF = b"\r\n"
_LINE_BREAKS = (b"\r", b"\n")


class ReplyKind(StrEnum):
    """Reply types distinguished by their first byte."""

    SIMPLE = "+"
    ERROR = "-"
    PAYLOAD = "$"


@dataclass(frozen=True)
class Reply:
    """
    A decoded broker reply.

    For SIMPLE and ERROR replies `data` is the text after the marker.
    For PAYLOAD replies `data` is the payload, or None for `$-1`.
    `length` is only set on a PAYLOAD header until its body is read.
    """

    kind: ReplyKind
    data: bytes | None
    length: int | None = None

    @property
    def text(self) -> str:
        # Simple and error lines are validated when parsed
        return (self.data or b"").decode("utf-8", errors="replace")

    def raise_for_error(self) -> "Reply":
        """Raise ProtocolError if this is an error reply."""
        if self.kind is ReplyKind.ERROR:
            raise error_from_text(self.text)
        return self


def error_from_text(text: str) -> ProtocolError:
    """Split an error reply into its code and message."""
    code, _, message = text.partition(" ")
    if code and code.isupper():
        return ProtocolError(message, code=code)
    return ProtocolError(text)


def _check_token(token: str) -> bytes:
    data = token.encode("utf-8")
    if not data:
        raise ValueError("Command arguments must not be empty")
    if any(ch.isspace() for ch in token):
        raise ValueError(f"Command argument contains whitespace: {token!r}")
    return data


def encode_payload(obj: Any) -> bytes:
    """
    Serialize a payload to one protocol line.

    Args:
        obj: A JSON-serializable value, a pydantic model, or pre-encoded bytes.

    Returns:
        The payload bytes, without the line terminator.

    Raises:
        ValueError: If the encoded payload contains a line break.
    """
    if isinstance(obj, bytes):
        data = obj
    elif hasattr(obj, "to_wire"):
        data = obj.to_wire()
    else:
        data = json.dumps(obj, separators=(",", ":")).encode("utf-8")

    if any(brk in data for brk in _LINE_BREAKS):
        raise ValueError("Payload must not contain raw line breaks")
    return data


def encode_command(verb: str, *args: str, payload: Any = None) -> bytes:
    """
    Encode a command line and its optional payload line.

    Args:
        verb: Command verb.
        *args: Space separated arguments.
        payload: Optional payload, see encode_payload.

    Returns:
        Bytes ready to be written to the transport.
    """
    parts = [_check_token(verb)]
    parts.extend(_check_token(arg) for arg in args)
    frame = b" ".join(parts) + CRLF
    if payload is not None:
        frame += encode_payload(payload) + CRLF
    return frame


def parse_reply_line(line: bytes) -> Reply:
    """
    Classify a single reply line.

    Args:
        line: The line, with or without its CRLF terminator.

    Returns:
        Reply: For payload replies, a header carrying the expected length.

    Raises:
        FramingError: If the line is empty, unterminated or malformed.
    """
    if not line:
        raise FramingError("Connection closed by broker")
    if not line.endswith(b"\n"):
        raise FramingError(f"Unterminated reply: {line[:64]!r}")

    body = line.rstrip(b"\r\n")
    if not body:
        raise FramingError("Empty reply line")

    marker, rest = body[:1], body[1:]
    if marker in (b"+", b"-"):
        try:
            rest.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FramingError(f"Reply line is not UTF-8: {body[:64]!r}") from e
        return Reply(ReplyKind.SIMPLE if marker == b"+" else ReplyKind.ERROR, rest)
    if marker == b"$":
        try:
            length = int(rest)
        except ValueError:
            raise FramingError(f"Bad payload length: {rest[:32]!r}") from None
        if length == -1:
            return Reply(ReplyKind.PAYLOAD, None)
        if length < 0:
            raise FramingError(f"Bad payload length: {length}")
        return Reply(ReplyKind.PAYLOAD, None, length=length)

    raise FramingError(f"Unknown reply marker: {body[:64]!r}")


async def read_reply(reader: asyncio.StreamReader) -> Reply:
    """
    Read one complete reply from the stream.

    Raises:
        FramingError: On EOF or malformed data.
    """
    try:
        line = await reader.readline()
    except ValueError as e:
        raise FramingError(f"Reply line too long: {e}") from e

    reply = parse_reply_line(line)
    if reply.length is None:
        return reply

    try:
        data = await reader.readexactly(reply.length + len(CRLF))
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"Payload truncated: expected {reply.length} bytes, got {len(e.partial)}"
        ) from e

    if not data.endswith(CRLF):
        raise FramingError("Payload not terminated by CRLF")
    return Reply(ReplyKind.PAYLOAD, data[: reply.length])


def decode_json(data: bytes) -> Any:
    """
    Parse a JSON payload.

    Raises:
        FramingError: If the payload is not valid JSON.
    """
    try:
        return json.loads(data)
    except ValueError as e:
        raise FramingError(f"Malformed payload: {e}") from e
